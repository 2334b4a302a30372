"""Exception hierarchy for the sync engine.

Every error carries an ``error_type`` category and a corrective action so
batch summaries can tell a caller what to do next without human digging.

Retry classification:

* ``TransientError`` (and its subclasses ``RateLimitError`` and
  ``TransientNetworkError``) -- retried with backoff by the batch processor.
* ``NotFoundError``, ``ItemValidationError``, ``MappingConflictError`` --
  per-item terminal failures, never retried.
* ``AuthError``, ``MappingStoreError`` -- batch-fatal; abort the run.
* ``PartialCreateError`` -- never escapes the orchestrator; it records the
  mapping and re-raises the wrapped cause.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import BatchResult, RemoteItem


def format_error(
    error_type: str, message: str, corrective_action: str
) -> str:
    """Render an error in the ``Error (type): msg / Action: hint`` layout.

    Examples:
        >>> format_error("not_found", "Issue #12 not found", "Check the id.")
        'Error (not_found): Issue #12 not found\\n\\nAction: Check the id.'
    """
    return f"Error ({error_type}): {message}\n\nAction: {corrective_action}"


class SyncError(Exception):
    """Base class for all sync engine errors."""

    error_type = "sync_error"
    default_action = "Retry later or inspect the logs for details."

    def __init__(
        self, message: str, corrective_action: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.corrective_action = corrective_action or self.default_action

    def describe(self) -> str:
        """Return the structured, human-readable description."""
        return format_error(
            self.error_type, self.message, self.corrective_action
        )


class AuthError(SyncError):
    """Credentials were rejected; no further call can succeed."""

    error_type = "auth_error"
    default_action = (
        "Check the configured token or PAT and its scopes, then rerun."
    )


class TransientError(SyncError):
    """A retryable failure (network, server, throttling)."""

    error_type = "transient_error"
    default_action = "The call will be retried with backoff."


class TransientNetworkError(TransientError):
    """Timeout, connection failure or 5xx response."""

    error_type = "network_error"


class RateLimitError(TransientError):
    """The remote rejected a call because the quota is exhausted.

    Args:
        message: Error description.
        reset_at: Epoch seconds at which the quota window resets, if known.
        retry_after: Seconds to wait as advertised by ``Retry-After``.
    """

    error_type = "rate_limited"
    default_action = "Wait for the rate-limit window to reset."

    def __init__(
        self,
        message: str,
        reset_at: float | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.reset_at = reset_at
        self.retry_after = retry_after


class NotFoundError(SyncError):
    """The remote item does not exist (or was deleted)."""

    error_type = "not_found"
    default_action = "Verify the remote id; deleted items are archived."


class ItemValidationError(SyncError):
    """The item payload was rejected; retrying cannot succeed."""

    error_type = "validation_error"
    default_action = "Fix the item fields and push again."


class MappingConflictError(SyncError):
    """An upsert would break the local/remote id bijection."""

    error_type = "mapping_error"
    default_action = (
        "Another local item already owns this remote id; "
        "remove the duplicate mapping first."
    )


class MappingStoreError(SyncError):
    """The sync map could not be persisted."""

    error_type = "mapping_error"
    default_action = (
        "Check permissions and free space for the state directory."
    )


class PartialCreateError(SyncError):
    """A create succeeded remotely but a follow-up call failed.

    Raised when the remote item exists but a later call of the same
    create (closing it, moving it to its target state) failed.  The
    orchestrator records the mapping for ``created`` and then re-raises
    ``cause``, so a retry updates the existing item instead of creating a
    duplicate.

    Attributes:
        created: The remote item as returned by the create call.
        cause: The error raised by the follow-up call.
    """

    def __init__(self, created: RemoteItem, cause: SyncError) -> None:
        super().__init__(
            f"Created {created.remote_kind} item {created.remote_id} but "
            f"the follow-up call failed: {cause.message}",
            cause.corrective_action,
        )
        self.created = created
        self.cause = cause
        self.error_type = cause.error_type


class BatchAbortedError(SyncError):
    """A batch-fatal error stopped the run.

    Attributes:
        result: Partial ``BatchResult`` covering everything that completed
            before the abort was observed.
    """

    error_type = "batch_aborted"
    default_action = "Fix the underlying error and rerun the batch."

    def __init__(self, message: str, result: BatchResult) -> None:
        super().__init__(message)
        self.result = result


def describe_reset(reset_at: float | None) -> str:
    """Format an epoch reset time for log messages."""
    if reset_at is None:
        return "unknown"
    return datetime.fromtimestamp(reset_at).strftime("%H:%M:%S")
