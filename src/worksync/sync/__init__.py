"""Bidirectional work item sync engine.

Public API for keeping local work items (epics, features, stories, tasks)
consistent with a remote issue tracker.

Architecture
------------
Each local item is paired with at most one remote item per remote kind in
a persisted sync map.  Divergence is detected per side against the
timestamps recorded at the last sync, so a one-sided change is a plain
push or pull and only a change on both sides is a conflict.

Modules:

- ``engine``    -- ``SyncOrchestrator``: push, pull and bidirectional sync
  of a single item.
- ``batch``     -- ``BatchProcessor`` / ``batch_run``: bounded-concurrency
  runs with rate-limit gating, retries and progress reporting.
- ``state``     -- ``SyncMappingStore``: atomic JSON sync map.
- ``resolver``  -- Conflict detection and resolution strategies (local,
  remote, newest, manual, merge).
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from worksync.remote import GitHubIssuesAdapter
    from worksync.sync import (
        BatchOptions, SyncMappingStore, SyncOrchestrator, batch_run,
        create_resolver, format_batch_result,
    )

    adapter = GitHubIssuesAdapter("acme", "roadmap", token)
    orchestrator = SyncOrchestrator(
        adapter,
        SyncMappingStore(Path(".worksync"), adapter.remote_kind),
        resolver=create_resolver("newest"),
    )

    # Dry-run first to preview the batch
    preview = await batch_run(orchestrator, items, "bidirectional",
                              BatchOptions(dry_run=True))

    result = await batch_run(orchestrator, items, "bidirectional")
    print(format_batch_result(result))
"""

from ..models import (
    BatchError,
    BatchResult,
    ConflictReport,
    ConflictStrategy,
    Decision,
    ItemType,
    RateLimitState,
    RemoteItem,
    SyncAction,
    SyncDirection,
    SyncOutcome,
    SyncRecord,
    SyncState,
    SyncStatusView,
    WorkItem,
    WorkStatus,
)
from .batch import BatchOptions, BatchProcessor, RateLimitOptions, batch_run
from .engine import LocalStore, SyncOrchestrator, order_by_hierarchy
from .reporter import (
    format_batch_result,
    format_conflict_report,
    format_dry_run_preview,
    format_outcomes,
    result_to_json,
)
from .resolver import create_resolver, detect_conflict, resolve
from .state import SyncMappingStore

__all__ = [
    "BatchError",
    "BatchOptions",
    "BatchProcessor",
    "BatchResult",
    "ConflictReport",
    "ConflictStrategy",
    "Decision",
    "ItemType",
    "LocalStore",
    "RateLimitOptions",
    "RateLimitState",
    "RemoteItem",
    "SyncAction",
    "SyncDirection",
    "SyncMappingStore",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncRecord",
    "SyncState",
    "SyncStatusView",
    "WorkItem",
    "WorkStatus",
    "batch_run",
    "create_resolver",
    "detect_conflict",
    "format_batch_result",
    "format_conflict_report",
    "format_dry_run_preview",
    "format_outcomes",
    "order_by_hierarchy",
    "resolve",
    "result_to_json",
]
