"""Pydantic models for the sync engine.

Defines the core data contracts shared by every sync module:

- ``WorkStatus`` / ``ItemType``: unified vocabularies.
- ``WorkItem``: a local entity as read from the local store.
- ``RemoteItem``: a remote entity normalised by a remote adapter.
- ``SyncRecord``: persisted local/remote mapping plus sync metadata.
- ``ConflictReport`` / ``Decision``: conflict detection and resolution.
- ``SyncOutcome`` / ``SyncStatusView``: per-item results and projections.
- ``RateLimitState``: last observed quota for a remote.
- ``BatchError`` / ``BatchResult``: aggregate results for a batch run.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WorkStatus(str, Enum):
    """Unified status vocabulary shared by every backend."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ItemType(str, Enum):
    """Kinds of work-tracking entities."""

    EPIC = "epic"
    FEATURE = "feature"
    STORY = "story"
    TASK = "task"


class SyncDirection(str, Enum):
    """Direction of the last successful sync of a record."""

    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class SyncState(str, Enum):
    """Lifecycle state of a single item."""

    UNSYNCED = "unsynced"
    SYNCED = "synced"
    CONFLICTED = "conflicted"
    ARCHIVED = "archived"


class SyncAction(str, Enum):
    """What a bidirectional sync actually did for one item."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    CREATE_REMOTE = "create_remote"
    CONFLICT = "conflict"
    ARCHIVE = "archive"


class ConflictStrategy(str, Enum):
    """Configured conflict resolution strategy."""

    LOCAL = "local"
    REMOTE = "remote"
    NEWEST = "newest"
    MANUAL = "manual"
    MERGE = "merge"


class Decision(str, Enum):
    """Resolution verdict for a conflict."""

    USE_LOCAL = "use_local"
    USE_REMOTE = "use_remote"
    USE_MERGED = "use_merged"
    NEEDS_MANUAL_INPUT = "needs_manual_input"


class WorkItem(BaseModel):
    """A local work-tracking entity.

    Attributes:
        local_id: Identifier in the local store (e.g. an entity file stem).
        title: One-line summary.
        description: Free-text body.
        status: Unified status.
        assignee: Login or account name of the assignee.
        labels: Free-form labels (order preserved).
        item_type: Epic, feature, story or task.
        updated_at: Last local modification time.
        created_at: Local creation time.
        parent_local_id: Local id of the parent in the hierarchy
            (story of a task, epic of a story).
    """

    local_id: str
    title: str
    description: str = ""
    status: WorkStatus = WorkStatus.OPEN
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    item_type: ItemType = ItemType.TASK
    updated_at: datetime | None = None
    created_at: datetime | None = None
    parent_local_id: str | None = None

    model_config = {"frozen": True}


class RemoteItem(BaseModel):
    """A remote entity normalised into the unified shape.

    Attributes:
        remote_id: Identifier in the remote system (issue number, work
            item id), always stored as a string.
        remote_kind: Backend kind (``"github"``, ``"azure"``).
        native_status: The backend's raw status value.
        url: Browser URL of the item, if known.
        parent_remote_id: Remote id of the parent item, when the backend
            reports one.
    """

    remote_id: str
    remote_kind: str
    title: str
    description: str = ""
    status: WorkStatus = WorkStatus.UNKNOWN
    native_status: str | None = None
    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    item_type: ItemType = ItemType.TASK
    updated_at: datetime | None = None
    created_at: datetime | None = None
    url: str | None = None
    parent_remote_id: str | None = None

    model_config = {"frozen": True}

    def to_work_item(
        self, local_id: str, parent_local_id: str | None = None
    ) -> WorkItem:
        """Project this remote item onto a local ``WorkItem``."""
        return WorkItem(
            local_id=local_id,
            title=self.title,
            description=self.description,
            status=self.status,
            assignee=self.assignee,
            labels=list(self.labels),
            item_type=self.item_type,
            updated_at=self.updated_at,
            created_at=self.created_at,
            parent_local_id=parent_local_id,
        )


class SyncRecord(BaseModel):
    """Persisted mapping between one local entity and one remote item.

    Attributes:
        local_id: Local identifier.
        remote_id: Remote identifier.
        remote_kind: Backend kind the remote id belongs to.
        last_sync: Time of the last successful sync (never decreases).
        last_action: Direction of the last successful sync.
        last_known_remote_updated_at: Remote timestamp at last sync.
        last_known_local_updated_at: Local timestamp at last sync.
        state: ``synced``, ``conflicted`` or ``archived``.
        parent_remote_id: Remote parent the item was last linked to.
    """

    local_id: str
    remote_id: str
    remote_kind: str
    last_sync: datetime
    last_action: SyncDirection
    last_known_remote_updated_at: datetime | None = None
    last_known_local_updated_at: datetime | None = None
    state: SyncState = SyncState.SYNCED
    parent_remote_id: str | None = None

    model_config = {"frozen": True}

    @property
    def archived(self) -> bool:
        return self.state == SyncState.ARCHIVED


class ConflictReport(BaseModel):
    """Comparison of a local and remote snapshot of the same entity."""

    local_id: str
    has_conflict: bool
    local_newer: bool
    remote_newer: bool
    conflicting_fields: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}


class SyncOutcome(BaseModel):
    """Result of a bidirectional sync (or a conflict resolution).

    Attributes:
        local_id: Local identifier.
        remote_id: Remote identifier, if mapped.
        action: What was done.
        state: Item state after the operation.
        conflict: The conflict report when one was detected.
        decision: The resolution decision, when a conflict was resolved.
        item: The pulled or merged local item, when the local side changed.
    """

    local_id: str
    remote_id: str | None = None
    action: SyncAction
    state: SyncState
    conflict: ConflictReport | None = None
    decision: Decision | None = None
    item: WorkItem | None = None

    model_config = {"frozen": True}


class SyncStatusView(BaseModel):
    """Read-only projection of an item's sync status."""

    local_id: str
    state: SyncState
    record: SyncRecord | None = None
    is_fresh: bool = False

    model_config = {"frozen": True}


class RateLimitState(BaseModel):
    """Quota information read from the last remote response.

    Attributes:
        remaining: Calls left in the current window (``None`` if unknown).
        reset_at: Epoch seconds when the window resets.
        limit: Total calls allowed per window, if advertised.
    """

    remaining: int | None = None
    reset_at: float | None = None
    limit: int | None = None

    model_config = {"frozen": True}


class BatchError(BaseModel):
    """A failed item in a batch run."""

    item: str
    error_type: str
    error: str

    model_config = {"frozen": True}


class BatchResult(BaseModel):
    """Aggregate report for one batch invocation.

    ``succeeded + failed + aborted == total`` always holds.
    """

    operation: str
    total: int
    succeeded: int = 0
    failed: int = 0
    aborted: int = 0
    duration_ms: float = 0.0
    estimated_duration_ms: float | None = None
    errors: list[BatchError] = Field(default_factory=list)
    rate_limit_state: RateLimitState | None = None
    dry_run: bool = False
    cancelled: bool = False

    model_config = {"frozen": True}

    @property
    def all_succeeded(self) -> bool:
        return self.succeeded == self.total

    @property
    def success_rate(self) -> float:
        """Success rate between 0.0 and 1.0."""
        if self.total == 0:
            return 1.0
        return self.succeeded / self.total

    def failed_items(self) -> list[str]:
        """Identities of every failed item."""
        return [e.item for e in self.errors]

    def summary(self) -> str:
        """Format a short multi-line summary of the run."""
        lines = [
            f"Batch '{self.operation}'"
            + (" (dry run)" if self.dry_run else "")
            + (" (cancelled)" if self.cancelled else ""),
            f"  Succeeded: {self.succeeded}",
            f"  Failed:    {self.failed}",
            f"  Aborted:   {self.aborted}",
            f"  Total:     {self.total}",
        ]
        return "\n".join(lines)


def item_identity(item: Any) -> str:
    """Stable identity string for a batch item (used in error reports)."""
    if isinstance(item, WorkItem):
        return item.local_id
    if isinstance(item, RemoteItem):
        return item.remote_id
    return str(item)
