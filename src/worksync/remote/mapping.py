"""Per-backend vocabulary tables.

Each backend describes its native status and item-type vocabulary as an
explicit ``StatusMapping`` value.  Adapters compose a mapping rather than
inheriting behaviour, so the orchestrator stays backend-agnostic and a new
backend is just a new table.

Unknown native values normalise to ``WorkStatus.UNKNOWN`` (and the default
item type) instead of raising, so taxonomy drift on the remote side never
fails a sync on its own.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from ..models import ItemType, WorkStatus


@dataclass(frozen=True)
class StatusMapping:
    """Bidirectional status and item-type vocabulary for one backend.

    Attributes:
        kind: Backend kind (``"github"``, ``"azure"``).
        to_unified: Native status (case-insensitive) -> unified status.
        from_unified: Unified status -> native status written on push.
        types_to_unified: Native item type -> unified item type.
        types_from_unified: Unified item type -> native item type.
    """

    kind: str
    to_unified: dict[str, WorkStatus]
    from_unified: dict[WorkStatus, str]
    types_to_unified: dict[str, ItemType] = field(default_factory=dict)
    types_from_unified: dict[ItemType, str] = field(default_factory=dict)

    def normalize_status(self, native: str | None) -> WorkStatus:
        """Map a native status to the unified vocabulary."""
        if not native:
            return WorkStatus.UNKNOWN
        return self._lookup(self.to_unified, native, WorkStatus.UNKNOWN)

    def native_status(self, status: WorkStatus) -> str | None:
        """Native status for *status*, or ``None`` if it must not be written."""
        if status == WorkStatus.UNKNOWN:
            return None
        return self.from_unified.get(status)

    def normalize_type(self, native: str | None) -> ItemType:
        """Map a native item type, defaulting to ``task``."""
        if not native:
            return ItemType.TASK
        return self._lookup(self.types_to_unified, native, ItemType.TASK)

    def native_type(self, item_type: ItemType) -> str:
        """Native item type for *item_type*."""
        return self.types_from_unified.get(item_type, item_type.value)

    @staticmethod
    def _lookup(table: dict, native: str, default):
        key = native.strip().lower()
        for name, value in table.items():
            if name.lower() == key:
                return value
        return default


# ---------------------------------------------------------------------------
# GitHub Issues
# ---------------------------------------------------------------------------

#: Label that marks an open issue as being worked on.
GITHUB_IN_PROGRESS_LABEL = "in-progress"

# GitHub has only open/closed; the adapter folds ``state_reason`` and the
# in-progress label into these synthetic native values.
GITHUB_MAPPING = StatusMapping(
    kind="github",
    to_unified={
        "open": WorkStatus.OPEN,
        "in_progress": WorkStatus.IN_PROGRESS,
        "closed": WorkStatus.DONE,
        "completed": WorkStatus.DONE,
        "not_planned": WorkStatus.CANCELLED,
    },
    from_unified={
        WorkStatus.OPEN: "open",
        WorkStatus.IN_PROGRESS: "in_progress",
        WorkStatus.DONE: "completed",
        WorkStatus.CANCELLED: "not_planned",
    },
    types_to_unified={
        "epic": ItemType.EPIC,
        "feature": ItemType.FEATURE,
        "user-story": ItemType.STORY,
        "story": ItemType.STORY,
        "task": ItemType.TASK,
    },
    types_from_unified={
        ItemType.EPIC: "epic",
        ItemType.FEATURE: "feature",
        ItemType.STORY: "user-story",
        ItemType.TASK: "task",
    },
)


# ---------------------------------------------------------------------------
# Azure DevOps Boards
# ---------------------------------------------------------------------------

# Covers the Agile, Scrum and Basic process templates.
AZURE_MAPPING = StatusMapping(
    kind="azure",
    to_unified={
        "New": WorkStatus.OPEN,
        "To Do": WorkStatus.OPEN,
        "Proposed": WorkStatus.OPEN,
        "Approved": WorkStatus.OPEN,
        "Active": WorkStatus.IN_PROGRESS,
        "Committed": WorkStatus.IN_PROGRESS,
        "Doing": WorkStatus.IN_PROGRESS,
        "In Progress": WorkStatus.IN_PROGRESS,
        "Resolved": WorkStatus.DONE,
        "Closed": WorkStatus.DONE,
        "Done": WorkStatus.DONE,
        "Removed": WorkStatus.CANCELLED,
    },
    from_unified={
        WorkStatus.OPEN: "New",
        WorkStatus.IN_PROGRESS: "Active",
        WorkStatus.DONE: "Closed",
        WorkStatus.CANCELLED: "Removed",
    },
    types_to_unified={
        "Epic": ItemType.EPIC,
        "Feature": ItemType.FEATURE,
        "User Story": ItemType.STORY,
        "Product Backlog Item": ItemType.STORY,
        "Issue": ItemType.STORY,
        "Task": ItemType.TASK,
    },
    types_from_unified={
        ItemType.EPIC: "Epic",
        ItemType.FEATURE: "Feature",
        ItemType.STORY: "User Story",
        ItemType.TASK: "Task",
    },
)


MAPPINGS: dict[str, StatusMapping] = {
    GITHUB_MAPPING.kind: GITHUB_MAPPING,
    AZURE_MAPPING.kind: AZURE_MAPPING,
}
