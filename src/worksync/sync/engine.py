"""Sync orchestrator: push, pull and bidirectional sync of single items.

The ``SyncOrchestrator`` ties together one remote adapter, the sync
mapping store for that adapter's kind, a conflict resolver and the shared
rate-limit gate.  Per item it:

1. Looks up the ``SyncRecord`` (unmapped items are ``unsynced``).
2. Fetches the remote counterpart through the adapter.
3. Detects divergence on both sides against the record.
4. Pushes, pulls, skips, or resolves the conflict and acts on the decision.
5. Upserts the record once the remote call succeeded.

Every adapter call goes through ``_call()``: it waits on the rate-limit
gate, runs the synchronous adapter in a worker thread, and feeds the quota
headers of the response back into the gate.

The orchestrator never writes local storage; pulled and merged items are
returned to the caller (see ``SyncOutcome.item``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol, TypeVar

from ..core.async_utils import run_sync, utc_now
from ..core.rate_limit import RateLimitGate
from ..errors import (
    NotFoundError,
    PartialCreateError,
    RateLimitError,
    SyncError,
)
from ..models import (
    ConflictReport,
    Decision,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncOutcome,
    SyncRecord,
    SyncState,
    SyncStatusView,
    WorkItem,
)
from ..remote.base import ItemFilter, RemoteAdapter
from .resolver import (
    ConflictResolver,
    ManualResolver,
    as_utc,
    changed_fields,
    detect_conflict,
    has_diverged,
)
from .state import SyncMappingStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FRESHNESS_WINDOW = timedelta(hours=1)


class LocalStore(Protocol):
    """Local entity storage, owned by the caller."""

    def read_entity(self, local_id: str) -> WorkItem:
        ...  # pragma: no cover

    def write_entity(self, item: WorkItem) -> None:
        ...  # pragma: no cover


def order_by_hierarchy(items: list[WorkItem]) -> list[WorkItem]:
    """Sort *items* so every parent precedes its children.

    Only parents present in *items* count; the sort is stable otherwise.

    Raises:
        ValueError: If the parent links form a cycle.
    """
    by_id = {item.local_id: item for item in items}
    depths: dict[str, int] = {}

    def depth(local_id: str, seen: tuple[str, ...] = ()) -> int:
        if local_id in depths:
            return depths[local_id]
        if local_id in seen:
            chain = " -> ".join(seen + (local_id,))
            raise ValueError(f"Parent links form a cycle: {chain}")
        parent = by_id[local_id].parent_local_id
        value = 0
        if parent in by_id:
            value = depth(parent, seen + (local_id,)) + 1
        depths[local_id] = value
        return value

    return sorted(items, key=lambda item: depth(item.local_id))


class SyncOrchestrator:
    """Run the sync workflow for one remote backend.

    Args:
        adapter: Remote adapter for the active backend.
        store: Sync mapping store for ``adapter.remote_kind``.
        resolver: Conflict resolver (defaults to manual resolution).
        local_store: Optional local store, used by the batch processor to
            read items given by id and to persist pulled items.
        rate_gate: Shared rate-limit gate (one is created if omitted).
        freshness_window: How recent ``last_sync`` must be for
            ``get_sync_status`` to report the item as fresh.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        adapter: RemoteAdapter,
        store: SyncMappingStore,
        resolver: ConflictResolver | None = None,
        local_store: LocalStore | None = None,
        rate_gate: RateLimitGate | None = None,
        freshness_window: timedelta = DEFAULT_FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if store.remote_kind != adapter.remote_kind:
            raise ValueError(
                f"Mapping store is for '{store.remote_kind}' but the adapter "
                f"is '{adapter.remote_kind}'"
            )
        self.adapter = adapter
        self.store = store
        self.resolver: ConflictResolver = resolver or ManualResolver()
        self.local_store = local_store
        self.rate_gate = rate_gate or RateLimitGate()
        self.freshness_window = freshness_window
        self._clock = clock

    @property
    def remote_kind(self) -> str:
        return self.adapter.remote_kind

    # ------------------------------------------------------------------
    # Adapter calls
    # ------------------------------------------------------------------

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Invoke an adapter method behind the rate-limit gate."""
        await self.rate_gate.wait_ready()
        try:
            result = await run_sync(func, *args)
        except SyncError as exc:
            self.rate_gate.observe(self.adapter.check_rate_limit())
            rejected = (
                exc.cause if isinstance(exc, PartialCreateError) else exc
            )
            if isinstance(rejected, RateLimitError):
                self.rate_gate.observe_rejection(rejected)
            raise
        self.rate_gate.observe(self.adapter.check_rate_limit())
        return result

    async def authenticate(self) -> None:
        """Validate the adapter's credentials."""
        await self._call(self.adapter.authenticate)

    async def list_remote(
        self, filter: ItemFilter | None = None
    ) -> list[RemoteItem]:
        """List remote items (e.g. to pick ids for a pull batch)."""
        return await self._call(self.adapter.list_items, filter)

    # ------------------------------------------------------------------
    # Push / pull
    # ------------------------------------------------------------------

    async def push_to_remote(self, item: WorkItem) -> SyncRecord:
        """Create or update the remote counterpart of *item*.

        Archived records are returned unchanged without any remote call.

        Raises:
            ItemValidationError: If the item cannot be pushed (the record is
                left untouched).
            NotFoundError: If the mapped remote item was deleted; the record
                is archived before the error propagates.
        """
        record = self.store.lookup_by_local(item.local_id)
        if record is not None and record.archived:
            logger.info(
                "Skipping push of %s: remote %s is archived",
                item.local_id,
                record.remote_id,
            )
            return record

        if record is None:
            try:
                remote = await self._call(self.adapter.create_item, item)
            except PartialCreateError as exc:
                # Map the created item first so a retry updates it.
                await self.store.upsert(
                    item.local_id,
                    exc.created.remote_id,
                    SyncDirection.PUSH,
                    remote_updated_at=exc.created.updated_at,
                )
                logger.warning(
                    "Created %s item %s for %s but did not finish: %s",
                    self.remote_kind,
                    exc.created.remote_id,
                    item.local_id,
                    exc.cause.message,
                )
                raise exc.cause from None
            logger.info(
                "Created %s item %s for %s",
                self.remote_kind,
                remote.remote_id,
                item.local_id,
            )
        else:
            try:
                remote = await self._call(
                    self.adapter.update_item, record.remote_id, item
                )
            except NotFoundError:
                await self.store.mark_archived(item.local_id)
                raise
            logger.debug(
                "Updated %s item %s from %s",
                self.remote_kind,
                remote.remote_id,
                item.local_id,
            )

        saved = await self.store.upsert(
            item.local_id,
            remote.remote_id,
            SyncDirection.PUSH,
            remote_updated_at=remote.updated_at,
            local_updated_at=item.updated_at,
        )
        return await self._link_parent(item, saved)

    async def _link_parent(
        self, item: WorkItem, record: SyncRecord
    ) -> SyncRecord:
        """Link the remote item under its parent's remote counterpart.

        The link is deferred (and retried on the next push) while the
        parent has no remote counterpart yet.
        """
        if item.parent_local_id is None:
            return record
        parent = self.store.lookup_by_local(item.parent_local_id)
        if parent is None or parent.archived:
            logger.warning(
                "Parent %s of %s is not synced to %s; link deferred",
                item.parent_local_id,
                item.local_id,
                self.remote_kind,
            )
            return record
        if record.parent_remote_id == parent.remote_id:
            return record

        await self._call(
            self.adapter.link_parent, record.remote_id, parent.remote_id
        )
        logger.info(
            "Linked %s item %s under %s",
            self.remote_kind,
            record.remote_id,
            parent.remote_id,
        )
        linked = await self.store.set_parent(item.local_id, parent.remote_id)
        return linked or record

    async def push_hierarchy(self, items: list[WorkItem]) -> list[SyncRecord]:
        """Push *items* one by one, parents before their children.

        Each child is then linked under its parent as soon as it is
        created (epic, then its stories, then their tasks).
        """
        return [
            await self.push_to_remote(item)
            for item in order_by_hierarchy(items)
        ]

    def _local_parent(self, remote: RemoteItem) -> str | None:
        if remote.parent_remote_id is None:
            return None
        parent = self.store.lookup_by_remote(remote.parent_remote_id)
        return parent.local_id if parent is not None else None

    async def pull_from_remote(self, remote_id: str) -> WorkItem | None:
        """Fetch a remote item and map it onto a local ``WorkItem``.

        Unmapped items get the local id ``"{kind}-{remote_id}"``.

        Returns:
            The pulled item, or ``None`` when the remote item no longer
            exists (its record, if any, is archived).
        """
        remote_id = str(remote_id)
        record = self.store.lookup_by_remote(remote_id)
        try:
            remote = await self._call(self.adapter.get_item, remote_id)
        except NotFoundError:
            if record is not None:
                await self.store.mark_archived(record.local_id)
            logger.warning(
                "Remote %s item %s not found; %s",
                self.remote_kind,
                remote_id,
                "record archived" if record else "nothing to archive",
            )
            return None

        local_id = (
            record.local_id
            if record is not None
            else f"{self.remote_kind}-{remote.remote_id}"
        )
        item = remote.to_work_item(local_id, self._local_parent(remote))
        await self._record_pull(item, remote, SyncDirection.PULL)
        return item

    async def _record_pull(
        self, item: WorkItem, remote: RemoteItem, action: SyncDirection
    ) -> SyncRecord:
        return await self.store.upsert(
            item.local_id,
            remote.remote_id,
            action,
            remote_updated_at=remote.updated_at,
            local_updated_at=item.updated_at,
            parent_remote_id=remote.parent_remote_id,
        )

    # ------------------------------------------------------------------
    # Bidirectional
    # ------------------------------------------------------------------

    async def sync_bidirectional(self, item: WorkItem) -> SyncOutcome:
        """Bring *item* and its remote counterpart back in line.

        Unmapped items are created remotely.  Mapped items are compared
        against the record: a one-sided change is pushed or pulled, no
        change is skipped, and a conflict goes through the resolver.
        """
        record = self.store.lookup_by_local(item.local_id)
        if record is None:
            created = await self.push_to_remote(item)
            return SyncOutcome(
                local_id=item.local_id,
                remote_id=created.remote_id,
                action=SyncAction.CREATE_REMOTE,
                state=created.state,
            )

        if record.archived:
            return SyncOutcome(
                local_id=item.local_id,
                remote_id=record.remote_id,
                action=SyncAction.SKIP,
                state=SyncState.ARCHIVED,
            )

        remote = await self._fetch_or_archive(record)
        if remote is None:
            return SyncOutcome(
                local_id=item.local_id,
                remote_id=record.remote_id,
                action=SyncAction.ARCHIVE,
                state=SyncState.ARCHIVED,
            )

        report = detect_conflict(item, remote, record)
        if report.has_conflict:
            decision = self.resolver.resolve(report)
            logger.info(
                "Resolved conflict on %s with '%s': %s",
                item.local_id,
                self.resolver.strategy.value,
                decision.value,
            )
            return await self._act(item, remote, record, report, decision)

        local_changed = has_diverged(item, record.last_known_local_updated_at)
        remote_changed = has_diverged(
            remote, record.last_known_remote_updated_at
        )
        if local_changed and not remote_changed:
            return await self._act(
                item, remote, record, report, Decision.USE_LOCAL, None
            )
        if remote_changed and not local_changed:
            return await self._act(
                item, remote, record, report, Decision.USE_REMOTE, None
            )
        if local_changed and remote_changed:
            fields = changed_fields(item, remote)
            if fields:
                # Both edited with identical timestamps: no side is newer.
                logger.warning(
                    "%s and remote %s changed at the same time: fields %s",
                    item.local_id,
                    record.remote_id,
                    ", ".join(fields),
                )
                return await self._act(
                    item,
                    remote,
                    record,
                    report.model_copy(update={"conflicting_fields": fields}),
                    Decision.NEEDS_MANUAL_INPUT,
                )
            # Same content on both sides; remember the new timestamps.
            record = await self.store.upsert(
                item.local_id,
                remote.remote_id,
                SyncDirection.BIDIRECTIONAL,
                remote_updated_at=remote.updated_at,
                local_updated_at=item.updated_at,
            )

        logger.debug("No changes for %s", item.local_id)
        return SyncOutcome(
            local_id=item.local_id,
            remote_id=record.remote_id,
            action=SyncAction.SKIP,
            state=record.state,
        )

    async def apply_resolution(
        self,
        item: WorkItem,
        decision: Decision,
        merged: WorkItem | None = None,
    ) -> SyncOutcome:
        """Settle a conflicted item with the caller's *decision*.

        Args:
            item: Current local item.
            decision: ``use_local``, ``use_remote`` or ``use_merged``.
            merged: The merged item for ``use_merged``; if omitted the
                resolver's merge function is used.

        Raises:
            ValueError: If *decision* is ``needs_manual_input`` or no merged
                item is available for ``use_merged``.
        """
        if decision == Decision.NEEDS_MANUAL_INPUT:
            raise ValueError(
                "apply_resolution needs use_local, use_remote or use_merged"
            )
        record = self.store.lookup_by_local(item.local_id)
        if record is None:
            return await self.sync_bidirectional(item)
        if record.archived:
            return SyncOutcome(
                local_id=item.local_id,
                remote_id=record.remote_id,
                action=SyncAction.SKIP,
                state=SyncState.ARCHIVED,
            )

        remote = await self._fetch_or_archive(record)
        if remote is None:
            return SyncOutcome(
                local_id=item.local_id,
                remote_id=record.remote_id,
                action=SyncAction.ARCHIVE,
                state=SyncState.ARCHIVED,
            )

        report = detect_conflict(item, remote, record)
        if decision == Decision.USE_MERGED:
            merged = merged or self.resolver.merge(item, remote)
            if merged is None:
                raise ValueError(
                    f"No merged item for {item.local_id} and no merge "
                    "function configured"
                )
        return await self._act(item, remote, record, report, decision, merged)

    async def _act(
        self,
        item: WorkItem,
        remote: RemoteItem,
        record: SyncRecord,
        report: ConflictReport,
        decision: Decision,
        merged: WorkItem | None = None,
    ) -> SyncOutcome:
        conflict = report if report.has_conflict else None
        # Only report the decision when it settled a conflict.
        verdict = decision if conflict is not None else None

        match decision:
            case Decision.USE_LOCAL:
                pushed = await self.push_to_remote(item)
                return SyncOutcome(
                    local_id=item.local_id,
                    remote_id=pushed.remote_id,
                    action=SyncAction.PUSH,
                    state=pushed.state,
                    conflict=conflict,
                    decision=verdict,
                )
            case Decision.USE_REMOTE:
                pulled = remote.to_work_item(
                    item.local_id, self._local_parent(remote)
                )
                saved = await self._record_pull(
                    pulled, remote, SyncDirection.PULL
                )
                return SyncOutcome(
                    local_id=item.local_id,
                    remote_id=saved.remote_id,
                    action=SyncAction.PULL,
                    state=saved.state,
                    conflict=conflict,
                    decision=verdict,
                    item=pulled,
                )
            case Decision.USE_MERGED:
                if merged is None:
                    merged = self.resolver.merge(item, remote)
                if merged is None:
                    return await self._act(
                        item,
                        remote,
                        record,
                        report,
                        Decision.NEEDS_MANUAL_INPUT,
                    )
                updated = await self._call(
                    self.adapter.update_item, record.remote_id, merged
                )
                saved = await self.store.upsert(
                    item.local_id,
                    updated.remote_id,
                    SyncDirection.BIDIRECTIONAL,
                    remote_updated_at=updated.updated_at,
                    local_updated_at=merged.updated_at,
                )
                saved = await self._link_parent(merged, saved)
                return SyncOutcome(
                    local_id=item.local_id,
                    remote_id=saved.remote_id,
                    action=SyncAction.PUSH,
                    state=saved.state,
                    conflict=conflict,
                    decision=verdict,
                    item=merged,
                )
            case _:
                await self.store.mark_conflicted(item.local_id)
                return SyncOutcome(
                    local_id=item.local_id,
                    remote_id=record.remote_id,
                    action=SyncAction.CONFLICT,
                    state=SyncState.CONFLICTED,
                    conflict=report,
                    decision=Decision.NEEDS_MANUAL_INPUT,
                )

    async def _fetch_or_archive(self, record: SyncRecord) -> RemoteItem | None:
        try:
            return await self._call(self.adapter.get_item, record.remote_id)
        except NotFoundError:
            await self.store.mark_archived(record.local_id)
            logger.warning(
                "Remote %s item %s deleted; archived %s",
                self.remote_kind,
                record.remote_id,
                record.local_id,
            )
            return None

    # ------------------------------------------------------------------
    # Status and comments
    # ------------------------------------------------------------------

    def get_sync_status(self, local_id: str) -> SyncStatusView:
        """Read-only projection of the record plus a freshness flag."""
        record = self.store.lookup_by_local(local_id)
        if record is None:
            return SyncStatusView(local_id=local_id, state=SyncState.UNSYNCED)
        age = self._clock() - as_utc(record.last_sync)
        return SyncStatusView(
            local_id=local_id,
            state=record.state,
            record=record,
            is_fresh=timedelta(0) <= age <= self.freshness_window,
        )

    async def add_comment(self, local_id: str, text: str) -> None:
        """Comment on the remote item mapped to *local_id*.

        Raises:
            NotFoundError: If *local_id* is not mapped.
        """
        record = self.store.lookup_by_local(local_id)
        if record is None:
            raise NotFoundError(
                f"{local_id} is not mapped to a {self.remote_kind} item",
                "Push the item before commenting on it.",
            )
        await self._call(self.adapter.add_comment, record.remote_id, text)
