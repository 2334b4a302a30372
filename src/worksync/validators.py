"""
Input validation functions for worksync.

Validates work item payloads before they are sent to a remote backend so
that obviously invalid requests fail fast, without spending quota.
"""

from .errors import ItemValidationError

#: Azure DevOps caps System.Title at 255 characters (GitHub allows 256).
MAX_TITLE_LENGTH = 255

#: GitHub rejects issue bodies above 65536 characters.
MAX_DESCRIPTION_LENGTH = 65_536


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Title")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_title(title: str) -> tuple[bool, str]:
    """
    Validate a work item title.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot exceed MAX_TITLE_LENGTH characters
        - Cannot contain line breaks
    """
    if not title or not title.strip():
        return (
            False,
            format_validation_error("Title", "cannot be empty"),
        )

    if len(title) > MAX_TITLE_LENGTH:
        return (
            False,
            format_validation_error(
                "Title",
                f"exceeds maximum length of {MAX_TITLE_LENGTH} characters",
            ),
        )

    if "\n" in title or "\r" in title:
        return (
            False,
            format_validation_error("Title", "cannot contain line breaks"),
        )

    return (True, "")


def validate_description(
    description: str, max_length: int = MAX_DESCRIPTION_LENGTH
) -> tuple[bool, str]:
    """
    Validate a work item description.

    Empty descriptions are allowed.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if description and len(description) > max_length:
        return (
            False,
            format_validation_error(
                "Description",
                f"exceeds maximum length of {max_length} characters",
            ),
        )

    return (True, "")


def validate_remote_id(remote_id: str) -> tuple[bool, str]:
    """
    Validate a remote identifier (issue number or work item id).

    Both supported backends use positive integer ids.
    """
    if not remote_id or not str(remote_id).strip():
        return (
            False,
            format_validation_error("Remote id", "cannot be empty"),
        )

    if not str(remote_id).strip().isdigit() or int(remote_id) < 1:
        return (
            False,
            format_validation_error(
                "Remote id", f"must be a positive integer, got '{remote_id}'"
            ),
        )

    return (True, "")


def ensure_pushable(title: str, description: str) -> None:
    """Raise ``ItemValidationError`` if a payload cannot be pushed."""
    for ok, reason in (
        validate_title(title),
        validate_description(description),
    ):
        if not ok:
            raise ItemValidationError(reason)


def ensure_remote_id(remote_id: str) -> None:
    """Raise ``ItemValidationError`` for a malformed remote id."""
    ok, reason = validate_remote_id(remote_id)
    if not ok:
        raise ItemValidationError(reason)
