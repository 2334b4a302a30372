"""Shared pytest fixtures for worksync tests."""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest
from dotenv import load_dotenv
from requests.structures import CaseInsensitiveDict

from worksync.config import Config
from worksync.core.rate_limit import RateLimitGate
from worksync.errors import (
    MappingStoreError,
    NotFoundError,
    PartialCreateError,
    TransientNetworkError,
)
from worksync.models import RateLimitState, RemoteItem, WorkItem, WorkStatus
from worksync.remote.base import ItemFilter
from worksync.remote.mapping import GITHUB_MAPPING
from worksync.sync.engine import SyncOrchestrator
from worksync.sync.state import SyncMappingStore
from worksync.validators import ensure_pushable

load_dotenv()

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a live remote backend",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live remote backend"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Simulated epoch clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += max(delay, 0.0)
        await asyncio.sleep(0)


class FakeRemoteAdapter:
    """In-memory remote backend.

    Items are keyed by remote id.  Every call is logged as
    ``(method, key, clock time)``.  ``errors`` maps a key (local id for
    create/update, remote id otherwise) to an exception raised on every
    call; ``once`` maps a key to an exception raised on the next call only;
    ``flaky`` maps a key to the number of transient failures raised before
    calls succeed.  ``partial`` maps a local id to an error raised after
    ``create_item`` already stored the item, as a failed follow-up call of a
    two-step create would.
    """

    remote_kind = "github"
    mapping = GITHUB_MAPPING

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.items: dict[str, RemoteItem] = {}
        self.calls: list[tuple[str, str, float]] = []
        self.errors: dict[str, Exception] = {}
        self.once: dict[str, Exception] = {}
        self.flaky: dict[str, int] = {}
        self.partial: dict[str, Exception] = {}
        self.comments: dict[str, list[str]] = {}
        self.rate_limit = RateLimitState()
        self.clock = clock
        self._lock = threading.Lock()
        self._next_id = 1
        self._ticks = 0

    # -- helpers -------------------------------------------------------

    def stamp(self) -> datetime:
        self._ticks += 1
        return T0 + timedelta(minutes=self._ticks)

    def seed(self, title: str = "Remote item", **fields) -> RemoteItem:
        """Add an item directly on the remote side."""
        with self._lock:
            remote_id = str(self._next_id)
            self._next_id += 1
            item = RemoteItem(
                remote_id=remote_id,
                remote_kind=self.remote_kind,
                title=title,
                status=fields.pop("status", WorkStatus.OPEN),
                updated_at=fields.pop("updated_at", self.stamp()),
                **fields,
            )
            self.items[remote_id] = item
            return item

    def touch(self, remote_id: str, **changes) -> RemoteItem:
        """Simulate an edit made by someone on the remote side."""
        with self._lock:
            item = self.items[remote_id].model_copy(
                update={**changes, "updated_at": self.stamp()}
            )
            self.items[remote_id] = item
            return item

    def calls_to(self, method: str) -> list[tuple[str, str, float]]:
        return [call for call in self.calls if call[0] == method]

    def _record(self, method: str, key: str) -> None:
        with self._lock:
            now = self.clock() if self.clock is not None else 0.0
            self.calls.append((method, key, now))
            if key in self.errors:
                raise self.errors[key]
            if key in self.once:
                raise self.once.pop(key)
            if self.flaky.get(key, 0) > 0:
                self.flaky[key] -= 1
                raise TransientNetworkError(f"flaky call for {key}")

    def _from_local(self, remote_id: str, item: WorkItem) -> RemoteItem:
        return RemoteItem(
            remote_id=remote_id,
            remote_kind=self.remote_kind,
            title=item.title,
            description=item.description,
            status=item.status,
            assignee=item.assignee,
            labels=list(item.labels),
            item_type=item.item_type,
            updated_at=self.stamp(),
        )

    # -- contract ------------------------------------------------------

    def authenticate(self) -> None:
        self._record("authenticate", "")

    def get_item(self, remote_id: str) -> RemoteItem:
        self._record("get_item", remote_id)
        with self._lock:
            if remote_id not in self.items:
                raise NotFoundError(f"Not found: {remote_id}")
            return self.items[remote_id]

    def list_items(self, filter: ItemFilter | None = None) -> list[RemoteItem]:
        self._record("list_items", "")
        flt = filter or ItemFilter()
        with self._lock:
            return [i for i in self.items.values() if flt.matches(i)]

    def create_item(self, item: WorkItem) -> RemoteItem:
        ensure_pushable(item.title, item.description)
        self._record("create_item", item.local_id)
        with self._lock:
            remote_id = str(self._next_id)
            self._next_id += 1
            created = self._from_local(remote_id, item)
            self.items[remote_id] = created
        if item.local_id in self.partial:
            raise PartialCreateError(created, self.partial[item.local_id])
        return created

    def update_item(self, remote_id: str, item: WorkItem) -> RemoteItem:
        ensure_pushable(item.title, item.description)
        self._record("update_item", item.local_id)
        with self._lock:
            if remote_id not in self.items:
                raise NotFoundError(f"Not found: {remote_id}")
            updated = self._from_local(remote_id, item).model_copy(
                update={"parent_remote_id": self.items[remote_id].parent_remote_id}
            )
            self.items[remote_id] = updated
            return updated

    def link_parent(self, remote_id: str, parent_remote_id: str) -> None:
        self._record("link_parent", remote_id)
        with self._lock:
            if parent_remote_id not in self.items:
                raise NotFoundError(f"Not found: {parent_remote_id}")
            self.items[remote_id] = self.items[remote_id].model_copy(
                update={"parent_remote_id": parent_remote_id}
            )

    def add_comment(self, remote_id: str, text: str) -> None:
        self._record("add_comment", remote_id)
        with self._lock:
            self.comments.setdefault(remote_id, []).append(text)

    def check_rate_limit(self) -> RateLimitState:
        return self.rate_limit


class MemoryMappingStore(SyncMappingStore):
    """Mapping store that keeps the map in memory only.

    ``fail_after`` makes the n-th and later writes fail.
    """

    def __init__(self, remote_kind: str = "github", **kwargs) -> None:
        super().__init__(Path("/nonexistent"), remote_kind, **kwargs)
        self.saves = 0
        self.fail_after: int | None = None
        self._map = None

    def load(self) -> dict:
        from worksync.sync.state import empty_map

        self._map = empty_map()
        return empty_map()

    def save(self, mapping: dict) -> None:
        if self.fail_after is not None and self.saves >= self.fail_after:
            raise MappingStoreError("disk full")
        self.saves += 1


class FakeLocalStore:
    """Dict-backed local store."""

    def __init__(self, items: list[WorkItem] | None = None) -> None:
        self.items = {i.local_id: i for i in items or []}
        self.writes: list[WorkItem] = []

    def read_entity(self, local_id: str) -> WorkItem:
        return self.items[local_id]

    def write_entity(self, item: WorkItem) -> None:
        self.items[item.local_id] = item
        self.writes.append(item)


def make_response(status=200, json_data=None, headers=None, links=None):
    """Build a mock ``requests.Response``."""
    response = Mock()
    response.status_code = status
    response.headers = CaseInsensitiveDict(headers or {})
    response.json.return_value = json_data
    response.content = b"{}" if json_data is not None else b""
    response.text = "" if json_data is None else str(json_data)
    response.links = links or {}
    return response


def make_item(local_id: str = "feature-1", **overrides) -> WorkItem:
    """Build a WorkItem with sensible defaults."""
    values = {
        "local_id": local_id,
        "title": f"Title of {local_id}",
        "description": "Body",
        "updated_at": T0,
    }
    values.update(overrides)
    return WorkItem(**values)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter(clock):
    return FakeRemoteAdapter(clock)


@pytest.fixture
def store():
    return MemoryMappingStore()


@pytest.fixture
def gate(clock):
    return RateLimitGate(clock=clock, sleep=clock.sleep)


@pytest.fixture
def orchestrator(adapter, store, gate):
    return SyncOrchestrator(adapter, store, rate_gate=gate)


@pytest.fixture
def mock_config():
    """A valid GitHub Config for testing."""
    return Config(
        provider="github",
        github_token="ghp_test",
        github_repository="acme/roadmap",
    )
