"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_batch_result`` -- full post-batch summary.
- ``format_dry_run_preview`` -- dry-run estimate for a batch.
- ``format_outcomes`` -- bidirectional outcomes grouped by action.
- ``format_conflict_report`` -- field-by-field view of one conflict.
- ``result_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

import difflib
from collections import defaultdict
from typing import TYPE_CHECKING

from ..errors import describe_reset
from ..models import SyncAction

if TYPE_CHECKING:
    from worksync.models import (
        BatchResult,
        ConflictReport,
        RemoteItem,
        SyncOutcome,
        WorkItem,
    )

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_batch_result(result: BatchResult) -> str:
    """Format a batch result as human-readable text.

    The error section is only included when at least one item failed.
    """
    lines: list[str] = []

    header = f"Batch report for '{result.operation}'"
    if result.dry_run:
        header += " (DRY RUN)"
    if result.cancelled:
        header += " (CANCELLED)"
    lines.append(header)
    lines.append("")

    lines.append(
        f"Processed {result.total} items: "
        f"{result.succeeded} succeeded, {result.failed} failed, "
        f"{result.aborted} aborted"
    )
    lines.append(
        f"Duration: {result.duration_ms:.0f}ms "
        f"(success rate {result.success_rate:.1%})"
    )
    state = result.rate_limit_state
    if state is not None and state.remaining is not None:
        lines.append(
            f"Rate limit: {state.remaining} remaining, "
            f"resets at {describe_reset(state.reset_at)}"
        )
    lines.append("")

    if result.errors:
        lines.append("Errors:")
        for e in result.errors:
            lines.append(f"  {e.item} [{e.error_type}]: {e.error}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(result: BatchResult) -> str:
    """Format the estimate produced by a dry-run batch."""
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Operation: {result.operation}")
    lines.append(f"Items: {result.total}")
    if result.estimated_duration_ms is not None:
        lines.append(
            f"Estimated duration: {result.estimated_duration_ms / 1000:.1f}s"
        )
    if result.total == 0:
        lines.append("")
        lines.append("Nothing to do.")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Outcome grouping
# ------------------------------------------------------------------


def format_outcomes(outcomes: list[SyncOutcome]) -> str:
    """Group bidirectional outcomes by action.

    Each entry is shown as ``local_id <-> remote_id`` under an
    ``[ACTION]`` heading; skipped items are summarised by count.
    """
    lines: list[str] = []

    groups: dict[SyncAction, list[SyncOutcome]] = defaultdict(list)
    for outcome in outcomes:
        groups[outcome.action].append(outcome)

    display_order = [
        SyncAction.CREATE_REMOTE,
        SyncAction.PUSH,
        SyncAction.PULL,
        SyncAction.CONFLICT,
        SyncAction.ARCHIVE,
    ]
    for action in display_order:
        if action not in groups:
            continue
        lines.append(f"[{action.value.upper().replace('_', ' ')}]")
        for o in groups[action]:
            suffix = f" ({o.decision.value})" if o.decision else ""
            lines.append(f"  {o.local_id} <-> {o.remote_id or '-'}{suffix}")
        lines.append("")

    skip_count = len(groups.get(SyncAction.SKIP, []))
    if skip_count > 0:
        lines.append(f"Skipped: {skip_count} items (unchanged)")
        lines.append("")

    if not any(a != SyncAction.SKIP for a in groups):
        lines.append("No changes needed.")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict report
# ------------------------------------------------------------------


def format_conflict_report(
    report: ConflictReport,
    local: WorkItem | None = None,
    remote: RemoteItem | None = None,
) -> str:
    """Format a conflict for manual review.

    When both snapshots are given, each conflicting field is shown; the
    description gets a unified diff.
    """
    lines: list[str] = []
    newer = "neither"
    if report.local_newer:
        newer = "local"
    elif report.remote_newer:
        newer = "remote"
    lines.append(f"Conflict: {report.local_id} (newer side: {newer})")
    lines.append(
        "Fields: " + (", ".join(report.conflicting_fields) or "(none)")
    )

    if local is None or remote is None:
        return "\n".join(lines)

    lines.append("")
    for name in report.conflicting_fields:
        if name == "description":
            diff = "".join(
                difflib.unified_diff(
                    local.description.splitlines(keepends=True),
                    remote.description.splitlines(keepends=True),
                    fromfile=f"local: {local.local_id}",
                    tofile=f"remote: {remote.remote_id}",
                )
            )
            lines.append("description:")
            lines.append(diff.rstrip() or "  (whitespace only)")
            continue
        local_value = getattr(local, name)
        remote_value = getattr(remote, name)
        if hasattr(local_value, "value"):
            local_value, remote_value = local_value.value, remote_value.value
        lines.append(f"{name}:")
        lines.append(f"  local:  {local_value}")
        lines.append(f"  remote: {remote_value}")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def result_to_json(result: BatchResult) -> dict:
    """Convert a batch result to a structured dict for JSON serialisation."""
    state = result.rate_limit_state
    return {
        "operation": result.operation,
        "dry_run": result.dry_run,
        "cancelled": result.cancelled,
        "duration_ms": round(result.duration_ms, 3),
        "estimated_duration_ms": result.estimated_duration_ms,
        "counts": {
            "total": result.total,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "aborted": result.aborted,
        },
        "errors": [e.model_dump() for e in result.errors],
        "rate_limit": state.model_dump() if state is not None else None,
    }
