"""Remote adapter contract.

A remote adapter wraps authenticated calls to one remote backend and
normalises its items into ``RemoteItem``.  Adapters are synchronous; the
orchestrator runs them in worker threads via ``run_sync``.

Implementations:

- ``GitHubIssuesAdapter`` (``"github"``): issue-tracker style backend.
- ``AzureBoardsAdapter`` (``"azure"``): work-item-tracker style backend.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel, Field

from ..models import (
    ItemType,
    RateLimitState,
    RemoteItem,
    WorkItem,
    WorkStatus,
)
from .mapping import StatusMapping


class ItemFilter(BaseModel):
    """Criteria for ``list_items``.

    Every field is optional; an empty filter lists everything the adapter
    can see.
    """

    status: WorkStatus | None = None
    labels: list[str] = Field(default_factory=list)
    item_type: ItemType | None = None
    assignee: str | None = None
    limit: int | None = Field(default=None, ge=1)

    model_config = {"frozen": True}

    def matches(self, item: RemoteItem) -> bool:
        """Client-side check for criteria a backend cannot query natively."""
        if self.status is not None and item.status != self.status:
            return False
        if self.item_type is not None and item.item_type != self.item_type:
            return False
        if self.assignee is not None and item.assignee != self.assignee:
            return False
        return all(label in item.labels for label in self.labels)


class RemoteAdapter(Protocol):
    """Protocol that all remote adapters must satisfy."""

    remote_kind: str
    mapping: StatusMapping

    def authenticate(self) -> None:
        """Validate credentials once per session.

        Raises:
            AuthError: If the credentials are rejected.
        """
        ...  # pragma: no cover

    def get_item(self, remote_id: str) -> RemoteItem:
        """Fetch one item.

        Raises:
            NotFoundError: If the item does not exist.
            TransientError: On retryable failures.
        """
        ...  # pragma: no cover

    def list_items(self, filter: ItemFilter | None = None) -> list[RemoteItem]:
        """List items matching *filter*."""
        ...  # pragma: no cover

    def create_item(self, item: WorkItem) -> RemoteItem:
        """Create a remote item from a local one.

        Raises:
            ItemValidationError: If the payload is rejected.
            PartialCreateError: If the item was created but a follow-up
                call of the create failed.
        """
        ...  # pragma: no cover

    def update_item(self, remote_id: str, item: WorkItem) -> RemoteItem:
        """Overwrite the remote item's fields from a local one."""
        ...  # pragma: no cover

    def link_parent(self, remote_id: str, parent_remote_id: str) -> None:
        """Make *remote_id* a child of *parent_remote_id*.

        Replaces any existing parent link of *remote_id*.
        """
        ...  # pragma: no cover

    def add_comment(self, remote_id: str, text: str) -> None:
        """Append a comment to the remote item."""
        ...  # pragma: no cover

    def check_rate_limit(self) -> RateLimitState:
        """Quota from the last response; never makes a network call."""
        ...  # pragma: no cover
