"""Azure DevOps Boards adapter (work-item-tracker style backend).

Work items live in one project of one organisation.  Fields are addressed
by their ``System.*`` reference names; writes are JSON Patch documents.

Listing is a two-step affair: a WIQL query returns matching ids, and the
items are then fetched in chunks of ``BATCH_SIZE`` (the REST API refuses
more ids per request).

Parent links are ``System.LinkTypes.Hierarchy-Reverse`` relations; the
parent of a fetched item is read from ``System.Parent``.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from ..errors import AuthError, PartialCreateError, SyncError
from ..models import RateLimitState, RemoteItem, WorkItem
from ..validators import ensure_pushable, ensure_remote_id
from .base import ItemFilter
from .http import (
    DEFAULT_TIMEOUT,
    RestSession,
    parse_timestamp,
)
from .mapping import AZURE_MAPPING, StatusMapping

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://dev.azure.com"
API_VERSION = "7.0"
COMMENTS_API_VERSION = "7.0-preview.3"
BATCH_SIZE = 200

JSON_PATCH = {"Content-Type": "application/json-patch+json"}

FIELD_TITLE = "System.Title"
FIELD_DESCRIPTION = "System.Description"
FIELD_STATE = "System.State"
FIELD_ASSIGNED_TO = "System.AssignedTo"
FIELD_TAGS = "System.Tags"
FIELD_TYPE = "System.WorkItemType"
FIELD_CHANGED = "System.ChangedDate"
FIELD_CREATED = "System.CreatedDate"
FIELD_PARENT = "System.Parent"

HIERARCHY_REVERSE = "System.LinkTypes.Hierarchy-Reverse"

FIELDS = [
    "System.Id",
    FIELD_TITLE,
    FIELD_DESCRIPTION,
    FIELD_STATE,
    FIELD_ASSIGNED_TO,
    FIELD_TAGS,
    FIELD_TYPE,
    FIELD_CHANGED,
    FIELD_CREATED,
    FIELD_PARENT,
]


def split_tags(tags: str | None) -> list[str]:
    """Split Azure's ``"a; b"`` tag string into a list."""
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(";") if tag.strip()]


def _wiql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _trailing_id(url: str | None) -> str | None:
    return url.rstrip("/").rsplit("/", 1)[-1] if url else None


class AzureBoardsAdapter:
    """Remote adapter for Azure DevOps Boards.

    Args:
        organization: Azure DevOps organisation name.
        project: Project name.
        pat: Personal access token (sent as basic auth password).
        base_url: Service root (override for Azure DevOps Server).
        timeout: ``(connect, read)`` timeout applied to every call.
        insecure: Disable TLS verification.
        mapping: Status/type vocabulary table.
        session: Pre-built ``RestSession`` (tests inject one).
    """

    remote_kind = "azure"

    def __init__(
        self,
        organization: str,
        project: str,
        pat: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
        insecure: bool = False,
        mapping: StatusMapping = AZURE_MAPPING,
        session: RestSession | None = None,
    ) -> None:
        self.organization = organization
        self.project = project
        self.mapping = mapping
        self._org_url = f"{base_url.rstrip('/')}/{quote(organization)}"
        self._http = session or RestSession(
            self._org_url,
            auth=("", pat),
            headers={"Accept": "application/json"},
            timeout=timeout,
            insecure=insecure,
        )

    @property
    def _project_path(self) -> str:
        return quote(self.project)

    def _wit(self, path: str) -> str:
        return f"{self._project_path}/_apis/wit/{path}"

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def authenticate(self) -> None:
        """Validate the PAT against the configured project."""
        response = self._http.request(
            "GET",
            f"_apis/projects/{self._project_path}",
            params={"api-version": API_VERSION},
        )
        # An invalid PAT yields a 203 sign-in page instead of a 401.
        if response.status_code == 203:
            raise AuthError(
                f"Azure DevOps rejected the PAT for {self.organization}"
            )
        logger.info(
            "Authenticated to Azure DevOps %s/%s",
            self.organization,
            self.project,
        )

    def get_item(self, remote_id: str) -> RemoteItem:
        ensure_remote_id(remote_id)
        data = self._http.get_json(
            self._wit(f"workitems/{remote_id}"),
            params={"api-version": API_VERSION},
        )
        return self._to_remote(data)

    def list_items(self, filter: ItemFilter | None = None) -> list[RemoteItem]:
        flt = filter or ItemFilter()
        params: dict[str, Any] = {"api-version": API_VERSION}
        if flt.limit is not None:
            params["$top"] = flt.limit
        result = self._http.post_json(
            self._wit("wiql"),
            params=params,
            json={"query": self.build_wiql(flt)},
        )
        ids = [str(ref["id"]) for ref in result.get("workItems", [])]

        items: list[RemoteItem] = []
        for start in range(0, len(ids), BATCH_SIZE):
            chunk = ids[start : start + BATCH_SIZE]
            page = self._http.get_json(
                self._wit("workitems"),
                params={
                    "ids": ",".join(chunk),
                    "fields": ",".join(FIELDS),
                    "api-version": API_VERSION,
                },
            )
            for data in page.get("value", []):
                item = self._to_remote(data)
                if flt.matches(item):
                    items.append(item)
        logger.debug(
            "WIQL matched %d work items, %d after filtering",
            len(ids),
            len(items),
        )
        return items

    def create_item(self, item: WorkItem) -> RemoteItem:
        ensure_pushable(item.title, item.description)
        work_item_type = self.mapping.native_type(item.item_type)
        # A new work item always starts in its type's initial state.
        ops = self._patch_document(item, include_state=False)
        data = self._http.post_json(
            self._wit(f"workitems/${quote(work_item_type)}"),
            params={"api-version": API_VERSION},
            json=ops,
            headers=JSON_PATCH,
        )
        created = self._to_remote(data)
        logger.debug(
            "Created Azure work item %s (%s)", created.remote_id, work_item_type
        )
        native = self.mapping.native_status(item.status)
        if native is None or native == created.native_status:
            return created
        try:
            data = self._http.patch_json(
                self._wit(f"workitems/{created.remote_id}"),
                params={"api-version": API_VERSION},
                json=[self._op(FIELD_STATE, native)],
                headers=JSON_PATCH,
            )
        except SyncError as exc:
            raise PartialCreateError(created, exc) from exc
        return self._to_remote(data)

    def update_item(self, remote_id: str, item: WorkItem) -> RemoteItem:
        ensure_remote_id(remote_id)
        ensure_pushable(item.title, item.description)
        data = self._http.patch_json(
            self._wit(f"workitems/{remote_id}"),
            params={"api-version": API_VERSION},
            json=self._patch_document(item, include_state=True),
            headers=JSON_PATCH,
        )
        return self._to_remote(data)

    def add_comment(self, remote_id: str, text: str) -> None:
        ensure_remote_id(remote_id)
        self._http.post_json(
            self._wit(f"workItems/{remote_id}/comments"),
            params={"api-version": COMMENTS_API_VERSION},
            json={"text": text},
        )

    def link_parent(self, remote_id: str, parent_remote_id: str) -> None:
        """Link work item *remote_id* under *parent_remote_id*.

        A work item has at most one parent; an existing link to another
        parent is replaced in the same patch.
        """
        ensure_remote_id(remote_id)
        ensure_remote_id(parent_remote_id)
        data = self._http.get_json(
            self._wit(f"workitems/{remote_id}"),
            params={"$expand": "relations", "api-version": API_VERSION},
        )
        ops: list[dict[str, Any]] = []
        for index, relation in enumerate(data.get("relations") or []):
            if relation.get("rel") != HIERARCHY_REVERSE:
                continue
            if _trailing_id(relation.get("url")) == str(parent_remote_id):
                return
            ops.append({"op": "remove", "path": f"/relations/{index}"})
        ops.append(
            {
                "op": "add",
                "path": "/relations/-",
                "value": {
                    "rel": HIERARCHY_REVERSE,
                    "url": f"{self._org_url}/_apis/wit/workItems/"
                    f"{parent_remote_id}",
                },
            }
        )
        self._http.patch_json(
            self._wit(f"workitems/{remote_id}"),
            params={"api-version": API_VERSION},
            json=ops,
            headers=JSON_PATCH,
        )
        logger.debug(
            "Linked Azure work item %s under %s", remote_id, parent_remote_id
        )

    def check_rate_limit(self) -> RateLimitState:
        return self._http.rate_limit

    # ------------------------------------------------------------------
    # Queries and shape mapping
    # ------------------------------------------------------------------

    def build_wiql(self, flt: ItemFilter) -> str:
        """Build the WIQL query for *flt*."""
        clauses = ["[System.TeamProject] = @project"]
        if flt.status is not None:
            states = [
                native
                for native, status in self.mapping.to_unified.items()
                if status == flt.status
            ]
            if states:
                clauses.append(
                    "[System.State] IN ("
                    + ", ".join(_wiql_literal(s) for s in states)
                    + ")"
                )
        if flt.item_type is not None:
            clauses.append(
                f"[{FIELD_TYPE}] = "
                + _wiql_literal(self.mapping.native_type(flt.item_type))
            )
        if flt.assignee:
            clauses.append(
                f"[{FIELD_ASSIGNED_TO}] = " + _wiql_literal(flt.assignee)
            )
        for label in flt.labels:
            clauses.append(f"[{FIELD_TAGS}] CONTAINS " + _wiql_literal(label))
        return (
            "SELECT [System.Id] FROM WorkItems WHERE "
            + " AND ".join(clauses)
            + f" ORDER BY [{FIELD_CHANGED}] DESC"
        )

    @staticmethod
    def _op(field: str, value: Any) -> dict[str, Any]:
        return {"op": "add", "path": f"/fields/{field}", "value": value}

    def _patch_document(
        self, item: WorkItem, include_state: bool
    ) -> list[dict[str, Any]]:
        ops = [
            self._op(FIELD_TITLE, item.title),
            self._op(FIELD_DESCRIPTION, item.description),
            self._op(FIELD_TAGS, "; ".join(item.labels)),
        ]
        if item.assignee:
            ops.append(self._op(FIELD_ASSIGNED_TO, item.assignee))
        native = self.mapping.native_status(item.status)
        if include_state and native is not None:
            ops.append(self._op(FIELD_STATE, native))
        return ops

    def _to_remote(self, data: dict[str, Any]) -> RemoteItem:
        fields = data.get("fields", {})
        native = fields.get(FIELD_STATE)

        assigned = fields.get(FIELD_ASSIGNED_TO)
        if isinstance(assigned, dict):
            assigned = assigned.get("uniqueName") or assigned.get(
                "displayName"
            )

        links = data.get("_links", {})
        url = links.get("html", {}).get("href") if links else None

        return RemoteItem(
            remote_id=str(data["id"]),
            remote_kind=self.remote_kind,
            title=fields.get(FIELD_TITLE) or "",
            description=fields.get(FIELD_DESCRIPTION) or "",
            status=self.mapping.normalize_status(native),
            native_status=native,
            assignee=assigned,
            labels=split_tags(fields.get(FIELD_TAGS)),
            item_type=self.mapping.normalize_type(fields.get(FIELD_TYPE)),
            updated_at=parse_timestamp(fields.get(FIELD_CHANGED)),
            created_at=parse_timestamp(fields.get(FIELD_CREATED)),
            url=url,
            parent_remote_id=(
                str(fields[FIELD_PARENT]) if fields.get(FIELD_PARENT) else None
            ),
        )
