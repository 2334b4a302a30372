"""GitHub Issues adapter (issue-tracker style backend).

Maps work items onto issues in one repository:

* **Status** -- GitHub only knows ``open``/``closed``.  The adapter folds
  ``state_reason`` and an ``in-progress`` label into synthetic native
  values (``open``, ``in_progress``, ``closed``, ``not_planned``) that the
  ``GITHUB_MAPPING`` table translates.
* **Item type** -- carried as a label (``epic``, ``feature``,
  ``user-story``, ``task``).
* **Pull requests** -- the issues endpoint also returns pull requests; they
  are filtered out of listings.
* **Hierarchy** -- a child is linked under its parent through the
  sub-issues endpoint; the parent of a fetched issue comes from
  ``parent_issue_url``.
* **Rate limits** -- read from ``X-RateLimit-*`` headers on every response.
"""

from __future__ import annotations

import logging
from typing import Any

from ..errors import (
    AuthError,
    NotFoundError,
    PartialCreateError,
    SyncError,
)
from ..models import (
    RateLimitState,
    RemoteItem,
    WorkItem,
    WorkStatus,
)
from ..validators import ensure_pushable, ensure_remote_id
from .base import ItemFilter
from .http import (
    DEFAULT_TIMEOUT,
    RestSession,
    parse_timestamp,
)
from .mapping import (
    GITHUB_IN_PROGRESS_LABEL,
    GITHUB_MAPPING,
    StatusMapping,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
PAGE_SIZE = 100


class GitHubIssuesAdapter:
    """Remote adapter for GitHub Issues.

    Args:
        owner: Repository owner (user or organisation).
        repo: Repository name.
        token: Personal access token or app installation token.
        api_url: REST API root (override for GitHub Enterprise).
        timeout: ``(connect, read)`` timeout applied to every call.
        insecure: Disable TLS verification.
        mapping: Status/type vocabulary table.
        session: Pre-built ``RestSession`` (tests inject one).
    """

    remote_kind = "github"

    def __init__(
        self,
        owner: str,
        repo: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
        insecure: bool = False,
        mapping: StatusMapping = GITHUB_MAPPING,
        session: RestSession | None = None,
    ) -> None:
        self.owner = owner
        self.repo = repo
        self.mapping = mapping
        self._http = session or RestSession(
            api_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=timeout,
            insecure=insecure,
        )

    @property
    def _repo_path(self) -> str:
        return f"repos/{self.owner}/{self.repo}"

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def authenticate(self) -> None:
        """Validate the token and access to the repository."""
        user = self._http.get_json("user")
        try:
            self._http.get_json(self._repo_path)
        except NotFoundError as exc:
            raise AuthError(
                f"Repository {self.owner}/{self.repo} is not accessible "
                f"to {user.get('login', 'this token')}",
                "Check GITHUB_REPOSITORY and the token's repository access.",
            ) from exc
        logger.info(
            "Authenticated to GitHub as %s for %s/%s",
            user.get("login"),
            self.owner,
            self.repo,
        )

    def get_item(self, remote_id: str) -> RemoteItem:
        ensure_remote_id(remote_id)
        data = self._http.get_json(f"{self._repo_path}/issues/{remote_id}")
        if "pull_request" in data:
            raise NotFoundError(
                f"#{remote_id} in {self.owner}/{self.repo} is a pull request"
            )
        return self._to_remote(data)

    def list_items(self, filter: ItemFilter | None = None) -> list[RemoteItem]:
        flt = filter or ItemFilter()
        params: dict[str, Any] = {"state": "all", "per_page": PAGE_SIZE}
        if flt.status in (WorkStatus.OPEN, WorkStatus.IN_PROGRESS):
            params["state"] = "open"
        elif flt.status in (WorkStatus.DONE, WorkStatus.CANCELLED):
            params["state"] = "closed"
        labels = list(flt.labels)
        if flt.item_type is not None:
            labels.append(self.mapping.native_type(flt.item_type))
        if labels:
            params["labels"] = ",".join(labels)
        if flt.assignee:
            params["assignee"] = flt.assignee

        items: list[RemoteItem] = []
        url: str | None = f"{self._repo_path}/issues"
        while url:
            response = self._http.request("GET", url, params=params)
            for data in response.json():
                if "pull_request" in data:
                    continue
                item = self._to_remote(data)
                if flt.matches(item):
                    items.append(item)
                if flt.limit is not None and len(items) >= flt.limit:
                    return items
            url = response.links.get("next", {}).get("url")
            # The next link already carries the query string.
            params = None
        return items

    def create_item(self, item: WorkItem) -> RemoteItem:
        ensure_pushable(item.title, item.description)
        payload = self._payload(item)
        state_fields = {
            k: payload.pop(k) for k in ("state", "state_reason") if k in payload
        }
        data = self._http.post_json(
            f"{self._repo_path}/issues", json=payload
        )
        created = self._to_remote(data)
        logger.debug("Created GitHub issue #%s", created.remote_id)
        # Issues are always created open; close in a second call if needed.
        if state_fields.get("state") == "closed":
            try:
                data = self._http.patch_json(
                    f"{self._repo_path}/issues/{created.remote_id}",
                    json=state_fields,
                )
            except SyncError as exc:
                raise PartialCreateError(created, exc) from exc
            return self._to_remote(data)
        return created

    def update_item(self, remote_id: str, item: WorkItem) -> RemoteItem:
        ensure_remote_id(remote_id)
        ensure_pushable(item.title, item.description)
        data = self._http.patch_json(
            f"{self._repo_path}/issues/{remote_id}", json=self._payload(item)
        )
        return self._to_remote(data)

    def add_comment(self, remote_id: str, text: str) -> None:
        ensure_remote_id(remote_id)
        self._http.post_json(
            f"{self._repo_path}/issues/{remote_id}/comments",
            json={"body": text},
        )

    def link_parent(self, remote_id: str, parent_remote_id: str) -> None:
        """Make issue *remote_id* a sub-issue of *parent_remote_id*."""
        ensure_remote_id(remote_id)
        ensure_remote_id(parent_remote_id)
        # The sub-issues endpoint wants the issue id, not its number.
        child = self._http.get_json(f"{self._repo_path}/issues/{remote_id}")
        self._http.post_json(
            f"{self._repo_path}/issues/{parent_remote_id}/sub_issues",
            json={"sub_issue_id": child["id"], "replace_parent": True},
        )
        logger.debug(
            "Linked GitHub issue #%s under #%s", remote_id, parent_remote_id
        )

    def check_rate_limit(self) -> RateLimitState:
        return self._http.rate_limit

    # ------------------------------------------------------------------
    # Shape mapping
    # ------------------------------------------------------------------

    def _native_status(self, data: dict[str, Any], labels: list[str]) -> str:
        state = (data.get("state") or "").lower()
        if state == "closed":
            if data.get("state_reason") == "not_planned":
                return "not_planned"
            return "closed"
        if state == "open" and GITHUB_IN_PROGRESS_LABEL in labels:
            return "in_progress"
        return state

    def _to_remote(self, data: dict[str, Any]) -> RemoteItem:
        label_names = [
            lbl["name"] if isinstance(lbl, dict) else str(lbl)
            for lbl in data.get("labels") or []
        ]
        native = self._native_status(data, label_names)

        item_type = None
        labels: list[str] = []
        for name in label_names:
            if name == GITHUB_IN_PROGRESS_LABEL:
                continue
            if item_type is None and name.lower() in {
                k.lower() for k in self.mapping.types_to_unified
            }:
                item_type = name
                continue
            labels.append(name)

        parent_url = data.get("parent_issue_url")
        assignee = data.get("assignee") or {}
        return RemoteItem(
            remote_id=str(data["number"]),
            remote_kind=self.remote_kind,
            title=data.get("title") or "",
            description=data.get("body") or "",
            status=self.mapping.normalize_status(native),
            native_status=native,
            assignee=assignee.get("login"),
            labels=labels,
            item_type=self.mapping.normalize_type(item_type),
            updated_at=parse_timestamp(data.get("updated_at")),
            created_at=parse_timestamp(data.get("created_at")),
            url=data.get("html_url"),
            parent_remote_id=(
                parent_url.rstrip("/").rsplit("/", 1)[-1]
                if parent_url
                else None
            ),
        )

    def _payload(self, item: WorkItem) -> dict[str, Any]:
        labels = [
            label for label in item.labels if label != GITHUB_IN_PROGRESS_LABEL
        ]
        labels.append(self.mapping.native_type(item.item_type))
        payload: dict[str, Any] = {
            "title": item.title,
            "body": item.description,
            "assignees": [item.assignee] if item.assignee else [],
        }

        native = self.mapping.native_status(item.status)
        if native in ("open", "in_progress"):
            payload["state"] = "open"
            if native == "in_progress":
                labels.append(GITHUB_IN_PROGRESS_LABEL)
        elif native in ("completed", "not_planned"):
            payload["state"] = "closed"
            payload["state_reason"] = native

        payload["labels"] = labels
        return payload
