"""Sync mapping persistence layer.

Manages the JSON sync map that pairs local entity ids with remote ids in
the state directory (``.worksync/`` by default).  Each remote kind gets its
own file (``sync_map_{kind}.json``)::

    {
      "version": 1,
      "localToRemote": {"feature-1": "42"},
      "remoteToLocal": {"42": "feature-1"},
      "metadata": {
        "feature-1": {
          "lastSync": "...", "lastAction": "push", "remoteId": "42",
          "remoteKind": "github", "lastKnownRemoteUpdatedAt": "...",
          "lastKnownLocalUpdatedAt": "...", "state": "synced",
          "parentRemoteId": "7"
        }
      }
    }

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Serialised mutations** -- ``upsert()`` and the ``mark_*`` helpers are
  coroutines guarded by one ``asyncio.Lock``; each builds a new map, writes
  it, and only then swaps it in, so a failed write leaves memory untouched.
* **Bijection** -- a remote id can belong to at most one local id;
  violating upserts raise ``MappingConflictError``.
* **Monotonic last_sync** -- an upsert never moves ``lastSync`` backwards.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable

from ..core.async_utils import run_sync, utc_now
from ..errors import MappingConflictError, MappingStoreError
from ..models import SyncDirection, SyncRecord, SyncState

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def empty_map() -> dict:
    return {
        "version": STATE_VERSION,
        "localToRemote": {},
        "remoteToLocal": {},
        "metadata": {},
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SyncMappingStore:
    """Load, save, and query the sync map for one remote kind.

    Args:
        state_dir: Directory where map files are stored.
        remote_kind: Backend kind this map belongs to.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        state_dir: Path,
        remote_kind: str,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._state_dir = Path(state_dir)
        self.remote_kind = remote_kind
        self._clock = clock
        self._map: dict | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """The map file for this remote kind."""
        return self._state_dir / f"sync_map_{self.remote_kind}.json"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> dict:
        """Load the sync map from disk into memory.

        Returns:
            A copy of the map.  An empty map is returned when the file does
            not exist yet.

        Raises:
            MappingStoreError: If the file cannot be read or parsed.
        """
        if not self.path.exists():
            self._map = empty_map()
        else:
            try:
                with open(self.path, encoding="utf-8") as fh:
                    data = json.load(fh)
            except (OSError, json.JSONDecodeError) as exc:
                raise MappingStoreError(
                    f"Cannot read sync map {self.path}: {exc}"
                ) from exc
            self._map = {**empty_map(), **data}
            logger.debug(
                "Loaded %d mappings from %s",
                len(self._map["localToRemote"]),
                self.path,
            )
        return copy.deepcopy(self._map)

    def save(self, mapping: dict) -> None:
        """Persist *mapping* to disk atomically.

        Writes to a temporary file in the same directory then atomically
        replaces the target.  Creates ``state_dir`` if it does not exist.

        Raises:
            MappingStoreError: If the write fails.
        """
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._state_dir), suffix=".tmp"
            )
        except OSError as exc:
            raise MappingStoreError(
                f"Cannot write sync map {self.path}: {exc}"
            ) from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(mapping, fh, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except BaseException as exc:
            # Clean up temp file on any failure.
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise MappingStoreError(
                    f"Cannot write sync map {self.path}: {exc}"
                ) from exc
            raise

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def lookup_by_local(self, local_id: str) -> SyncRecord | None:
        """Return the record for *local_id*, or ``None`` if unmapped."""
        meta = self._current()["metadata"].get(local_id)
        if meta is None:
            return None
        return self._to_record(local_id, meta)

    def lookup_by_remote(self, remote_id: str) -> SyncRecord | None:
        """Return the record owning *remote_id*, or ``None`` if unmapped."""
        local_id = self._current()["remoteToLocal"].get(str(remote_id))
        if local_id is None:
            return None
        return self.lookup_by_local(local_id)

    def records(self) -> list[SyncRecord]:
        """All records, sorted by local id."""
        metadata = self._current()["metadata"]
        return [
            self._to_record(local_id, metadata[local_id])
            for local_id in sorted(metadata)
        ]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def upsert(
        self,
        local_id: str,
        remote_id: str,
        action: SyncDirection,
        remote_updated_at: datetime | None = None,
        local_updated_at: datetime | None = None,
        state: SyncState = SyncState.SYNCED,
        parent_remote_id: str | None = None,
    ) -> SyncRecord:
        """Create or update the record for *local_id* and persist it.

        The linked parent is kept from the previous record unless
        *parent_remote_id* is given.

        Raises:
            MappingConflictError: If *remote_id* is owned by another local id.
            MappingStoreError: If the write fails (memory is left unchanged).
        """
        remote_id = str(remote_id)
        async with self._lock:
            current = self._current()
            owner = current["remoteToLocal"].get(remote_id)
            if owner is not None and owner != local_id:
                raise MappingConflictError(
                    f"Remote {self.remote_kind} item {remote_id} is already "
                    f"mapped to {owner}; refusing to map it to {local_id}"
                )

            new_map = copy.deepcopy(current)
            previous_remote = new_map["localToRemote"].get(local_id)
            if previous_remote is not None and previous_remote != remote_id:
                new_map["remoteToLocal"].pop(previous_remote, None)

            now = self._clock()
            previous = new_map["metadata"].get(local_id)
            if previous and previous.get("lastSync"):
                now = max(now, datetime.fromisoformat(previous["lastSync"]))

            new_map["localToRemote"][local_id] = remote_id
            new_map["remoteToLocal"][remote_id] = local_id
            new_map["metadata"][local_id] = {
                "lastSync": now.isoformat(),
                "lastAction": SyncDirection(action).value,
                "remoteId": remote_id,
                "remoteKind": self.remote_kind,
                "lastKnownRemoteUpdatedAt": _iso(remote_updated_at),
                "lastKnownLocalUpdatedAt": _iso(local_updated_at),
                "state": SyncState(state).value,
                "parentRemoteId": (
                    str(parent_remote_id)
                    if parent_remote_id is not None
                    else (previous or {}).get("parentRemoteId")
                ),
            }
            await self._commit(new_map)
            return self._to_record(local_id, new_map["metadata"][local_id])

    async def mark_archived(self, local_id: str) -> SyncRecord | None:
        """Mark the record ``archived`` (the remote item is gone)."""
        return await self._set_state(local_id, SyncState.ARCHIVED)

    async def mark_conflicted(self, local_id: str) -> SyncRecord | None:
        """Mark the record ``conflicted`` pending a manual decision."""
        return await self._set_state(local_id, SyncState.CONFLICTED)

    async def set_parent(
        self, local_id: str, parent_remote_id: str
    ) -> SyncRecord | None:
        """Record that *local_id* is linked under *parent_remote_id*."""
        return await self._update(
            local_id, "parentRemoteId", str(parent_remote_id)
        )

    async def _set_state(
        self, local_id: str, state: SyncState
    ) -> SyncRecord | None:
        record = await self._update(local_id, "state", state.value)
        if record is not None:
            logger.info("Marked %s as %s", local_id, state.value)
        return record

    async def _update(
        self, local_id: str, key: str, value: str
    ) -> SyncRecord | None:
        async with self._lock:
            current = self._current()
            if local_id not in current["metadata"]:
                return None
            new_map = copy.deepcopy(current)
            new_map["metadata"][local_id][key] = value
            await self._commit(new_map)
            return self._to_record(local_id, new_map["metadata"][local_id])

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current(self) -> dict:
        if self._map is None:
            self.load()
        assert self._map is not None
        return self._map

    async def _commit(self, new_map: dict) -> None:
        """Write *new_map* and swap it in only if the write succeeded.

        Shielded so a cancelled caller cannot leave the file updated but
        the in-memory map stale.
        """
        await asyncio.shield(self._persist(new_map))

    async def _persist(self, new_map: dict) -> None:
        try:
            await run_sync(self.save, new_map)
        except MappingStoreError:
            logger.error(
                "Failed to persist sync map %s; in-memory map unchanged",
                self.path,
            )
            raise
        self._map = new_map

    def _to_record(self, local_id: str, meta: dict) -> SyncRecord:
        return SyncRecord(
            local_id=local_id,
            remote_id=meta["remoteId"],
            remote_kind=meta.get("remoteKind", self.remote_kind),
            last_sync=datetime.fromisoformat(meta["lastSync"]),
            last_action=SyncDirection(meta["lastAction"]),
            last_known_remote_updated_at=_parse(
                meta.get("lastKnownRemoteUpdatedAt")
            ),
            last_known_local_updated_at=_parse(
                meta.get("lastKnownLocalUpdatedAt")
            ),
            state=SyncState(meta.get("state", SyncState.SYNCED.value)),
            parent_remote_id=meta.get("parentRemoteId"),
        )
