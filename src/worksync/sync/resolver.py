"""Conflict detection and resolution strategies for the sync engine.

``detect_conflict()`` compares a local and a remote snapshot of the same
entity against the last known synced state recorded in the ``SyncRecord``.
A change on only one side is a directional update, not a conflict.

Resolution strategies:

- ``LocalWinsResolver``: Always ``use_local``.
- ``RemoteWinsResolver``: Always ``use_remote``.
- ``NewestWinsResolver``: ``use_local`` if the local side is newer,
  otherwise ``use_remote``.
- ``ManualResolver``: Always ``needs_manual_input``; the engine surfaces
  the report and waits for the caller's instruction.
- ``MergeResolver``: ``use_merged`` through a caller-supplied merge
  function.  Without one it behaves exactly like ``ManualResolver``.

The ``create_resolver()`` factory maps config strategy names to resolver
instances.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol

from ..models import (
    ConflictReport,
    ConflictStrategy,
    Decision,
    RemoteItem,
    SyncRecord,
    WorkItem,
)

logger = logging.getLogger(__name__)

#: Fields compared when listing what differs between the two sides.
COMPARED_FIELDS = ("title", "description", "status", "assignee", "labels")

MergeFn = Callable[[WorkItem, RemoteItem], WorkItem]


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise *value* to an aware UTC datetime (naive means UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def effective_timestamp(item: WorkItem | RemoteItem) -> datetime | None:
    """``updated_at``, falling back to ``created_at``."""
    return as_utc(item.updated_at or item.created_at)


def changed_fields(local: WorkItem, remote: RemoteItem) -> list[str]:
    """Names of the compared fields whose values differ."""
    return [
        name
        for name in COMPARED_FIELDS
        if getattr(local, name) != getattr(remote, name)
    ]


def detect_conflict(
    local: WorkItem,
    remote: RemoteItem,
    record: SyncRecord | None = None,
) -> ConflictReport:
    """Compare two snapshots of the same entity.

    A side has *diverged* when its timestamp differs from the one stored in
    *record* at the last sync.  Without a record both sides count as
    diverged.  ``has_conflict`` requires the timestamps to differ and both
    sides to have diverged.

    Examples:
        Local ``T+10`` vs remote ``T`` gives ``local_newer=True,
        remote_newer=False``; equal timestamps give no conflict.
    """
    local_ts = effective_timestamp(local)
    remote_ts = effective_timestamp(remote)

    local_newer = remote_newer = False
    if local_ts is not None and remote_ts is not None:
        local_newer = local_ts > remote_ts
        remote_newer = remote_ts > local_ts
    elif local_ts is not None:
        local_newer = True
    elif remote_ts is not None:
        remote_newer = True

    if record is None:
        local_diverged = remote_diverged = True
    else:
        local_diverged = local_ts != as_utc(record.last_known_local_updated_at)
        remote_diverged = remote_ts != as_utc(
            record.last_known_remote_updated_at
        )

    has_conflict = local_ts != remote_ts and local_diverged and remote_diverged
    report = ConflictReport(
        local_id=local.local_id,
        has_conflict=has_conflict,
        local_newer=local_newer,
        remote_newer=remote_newer,
        conflicting_fields=changed_fields(local, remote) if has_conflict else [],
    )
    if has_conflict:
        logger.info(
            "Conflict on %s (remote %s): fields %s",
            local.local_id,
            remote.remote_id,
            ", ".join(report.conflicting_fields) or "none",
        )
    return report


def has_diverged(
    item: WorkItem | RemoteItem, known: datetime | None
) -> bool:
    """Return ``True`` if *item* changed since the recorded timestamp."""
    return effective_timestamp(item) != as_utc(known)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictResolver(Protocol):
    """Protocol that all conflict resolvers must satisfy."""

    strategy: ConflictStrategy

    def resolve(self, report: ConflictReport) -> Decision:
        """Decide how to settle the conflict described by *report*."""
        ...  # pragma: no cover

    def merge(self, local: WorkItem, remote: RemoteItem) -> WorkItem | None:
        """Return the merged item for ``use_merged``, or ``None``."""
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Simple resolvers
# ---------------------------------------------------------------------------


class _NoMerge:
    def merge(self, local: WorkItem, remote: RemoteItem) -> WorkItem | None:
        return None


class LocalWinsResolver(_NoMerge):
    """Always resolve conflicts in favour of the local item."""

    strategy = ConflictStrategy.LOCAL

    def resolve(self, report: ConflictReport) -> Decision:
        return Decision.USE_LOCAL


class RemoteWinsResolver(_NoMerge):
    """Always resolve conflicts in favour of the remote item."""

    strategy = ConflictStrategy.REMOTE

    def resolve(self, report: ConflictReport) -> Decision:
        return Decision.USE_REMOTE


class NewestWinsResolver(_NoMerge):
    """Pick whichever side was modified last (remote wins ties)."""

    strategy = ConflictStrategy.NEWEST

    def resolve(self, report: ConflictReport) -> Decision:
        if report.local_newer:
            return Decision.USE_LOCAL
        return Decision.USE_REMOTE


class ManualResolver(_NoMerge):
    """Never decide; leave the conflict to the caller."""

    strategy = ConflictStrategy.MANUAL

    def resolve(self, report: ConflictReport) -> Decision:
        return Decision.NEEDS_MANUAL_INPUT


# ---------------------------------------------------------------------------
# Merge resolver
# ---------------------------------------------------------------------------


class MergeResolver:
    """Delegate field-level reconciliation to a caller-supplied function.

    Args:
        merge_fn: ``(local, remote) -> WorkItem``.  When ``None`` the
            resolver falls back to manual resolution.
    """

    strategy = ConflictStrategy.MERGE

    def __init__(self, merge_fn: MergeFn | None = None) -> None:
        self.merge_fn = merge_fn

    def resolve(self, report: ConflictReport) -> Decision:
        if self.merge_fn is None:
            logger.debug(
                "No merge function configured; %s needs manual input",
                report.local_id,
            )
            return Decision.NEEDS_MANUAL_INPUT
        return Decision.USE_MERGED

    def merge(self, local: WorkItem, remote: RemoteItem) -> WorkItem | None:
        if self.merge_fn is None:
            return None
        merged = self.merge_fn(local, remote)
        # The merged item always keeps the local identity.
        if merged.local_id != local.local_id:
            merged = merged.model_copy(update={"local_id": local.local_id})
        return merged


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[ConflictStrategy, type] = {
    ConflictStrategy.LOCAL: LocalWinsResolver,
    ConflictStrategy.REMOTE: RemoteWinsResolver,
    ConflictStrategy.NEWEST: NewestWinsResolver,
    ConflictStrategy.MANUAL: ManualResolver,
}


def create_resolver(
    strategy: str | ConflictStrategy, merge_fn: MergeFn | None = None
) -> ConflictResolver:
    """Create a conflict resolver for the given strategy.

    Args:
        strategy: One of ``"local"``, ``"remote"``, ``"newest"``,
            ``"manual"``, ``"merge"``.
        merge_fn: Merge hook, only used by ``"merge"``.

    Raises:
        ValueError: If the strategy is not recognised.
    """
    try:
        key = ConflictStrategy(strategy)
    except ValueError:
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: "
            f"{sorted(s.value for s in ConflictStrategy)}"
        ) from None
    if key == ConflictStrategy.MERGE:
        return MergeResolver(merge_fn)
    return _STRATEGY_MAP[key]()  # type: ignore[return-value]


def resolve(
    report: ConflictReport,
    strategy: str | ConflictStrategy,
    merge_fn: MergeFn | None = None,
) -> Decision:
    """Apply *strategy* to *report* (shorthand for ``create_resolver``)."""
    return create_resolver(strategy, merge_fn).resolve(report)
