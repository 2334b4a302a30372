"""Tests for the sync error hierarchy."""

import pytest

from worksync.errors import (
    AuthError,
    BatchAbortedError,
    ItemValidationError,
    MappingConflictError,
    MappingStoreError,
    NotFoundError,
    PartialCreateError,
    RateLimitError,
    SyncError,
    TransientError,
    TransientNetworkError,
    describe_reset,
    format_error,
)
from worksync.models import BatchResult, RemoteItem


def test_format_error_layout():
    assert format_error("not_found", "Issue #12 not found", "Check the id.") == (
        "Error (not_found): Issue #12 not found\n\nAction: Check the id."
    )


@pytest.mark.parametrize(
    "cls, error_type",
    [
        (AuthError, "auth_error"),
        (TransientNetworkError, "network_error"),
        (RateLimitError, "rate_limited"),
        (NotFoundError, "not_found"),
        (ItemValidationError, "validation_error"),
        (MappingConflictError, "mapping_error"),
        (MappingStoreError, "mapping_error"),
    ],
)
def test_error_types(cls, error_type):
    exc = cls("message")
    assert exc.error_type == error_type
    assert isinstance(exc, SyncError)
    assert exc.describe().startswith(f"Error ({error_type}): message")


def test_retry_classification():
    assert issubclass(RateLimitError, TransientError)
    assert issubclass(TransientNetworkError, TransientError)
    assert not issubclass(ItemValidationError, TransientError)
    assert not issubclass(AuthError, TransientError)


def test_custom_corrective_action():
    exc = AuthError("denied", "Use a token with repo scope.")
    assert exc.corrective_action == "Use a token with repo scope."
    assert exc.describe().endswith("Action: Use a token with repo scope.")


def test_default_corrective_action():
    assert "token" in AuthError("denied").corrective_action


def test_rate_limit_error_carries_timing():
    exc = RateLimitError("slow", reset_at=123.0, retry_after=30)
    assert exc.reset_at == 123.0
    assert exc.retry_after == 30


def test_batch_aborted_carries_result():
    result = BatchResult(operation="push", total=3, succeeded=1, aborted=2)
    exc = BatchAbortedError("aborted", result=result)
    assert exc.result is result
    assert exc.error_type == "batch_aborted"


def test_partial_create_takes_the_cause_category():
    created = RemoteItem(remote_id="8", remote_kind="github", title="T")
    cause = TransientNetworkError("Server error 503")
    exc = PartialCreateError(created, cause)

    assert exc.created is created
    assert exc.cause is cause
    assert exc.error_type == "network_error"
    assert "Created github item 8" in exc.message
    assert not isinstance(exc, TransientError)


def test_describe_reset():
    assert describe_reset(None) == "unknown"
    assert len(describe_reset(1_700_000_000.0)) == len("HH:MM:SS")
