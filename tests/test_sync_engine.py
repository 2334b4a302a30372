"""Tests for the sync orchestrator (push, pull, bidirectional, status)."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from worksync.errors import (
    ItemValidationError,
    NotFoundError,
    RateLimitError,
    TransientNetworkError,
)
from worksync.models import (
    Decision,
    ItemType,
    RateLimitState,
    SyncAction,
    SyncDirection,
    SyncState,
    WorkStatus,
)
from worksync.remote.base import ItemFilter
from worksync.sync.engine import SyncOrchestrator, order_by_hierarchy
from worksync.sync.resolver import create_resolver

from conftest import T0, FakeRemoteAdapter, MemoryMappingStore, make_item


def later(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


async def pushed(orchestrator, local_id="feature-1", **overrides):
    """Push a fresh item and return it."""
    item = make_item(local_id, **overrides)
    await orchestrator.push_to_remote(item)
    return item


class TestConstruction:
    def test_kind_mismatch(self, adapter):
        with pytest.raises(ValueError, match="Mapping store is for 'azure'"):
            SyncOrchestrator(adapter, MemoryMappingStore("azure"))

    def test_defaults(self, adapter, store):
        orch = SyncOrchestrator(adapter, store)
        assert orch.resolver.strategy.value == "manual"
        assert orch.remote_kind == "github"


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


class TestPush:
    async def test_unmapped_item_is_created(self, orchestrator, adapter, store):
        record = await orchestrator.push_to_remote(make_item())

        assert len(adapter.calls_to("create_item")) == 1
        assert record.local_id == "feature-1"
        assert record.last_action == SyncDirection.PUSH
        assert record.last_known_local_updated_at == T0
        assert record.last_known_remote_updated_at == (
            adapter.items[record.remote_id].updated_at
        )
        assert store.lookup_by_remote(record.remote_id).local_id == "feature-1"

    async def test_mapped_item_is_updated(self, orchestrator, adapter):
        first = await orchestrator.push_to_remote(make_item())
        second = await orchestrator.push_to_remote(
            make_item(title="Renamed", updated_at=later(10))
        )

        assert second.remote_id == first.remote_id
        assert len(adapter.calls_to("create_item")) == 1
        assert len(adapter.calls_to("update_item")) == 1
        assert adapter.items[first.remote_id].title == "Renamed"

    async def test_validation_error_leaves_record_untouched(
        self, orchestrator, store
    ):
        with pytest.raises(ItemValidationError):
            await orchestrator.push_to_remote(make_item(title=""))
        assert store.lookup_by_local("feature-1") is None

    async def test_deleted_remote_is_archived(self, orchestrator, adapter, store):
        record = await orchestrator.push_to_remote(make_item())
        del adapter.items[record.remote_id]

        with pytest.raises(NotFoundError):
            await orchestrator.push_to_remote(make_item(updated_at=later(5)))

        assert store.lookup_by_local("feature-1").state == SyncState.ARCHIVED

    async def test_archived_record_makes_no_call(
        self, orchestrator, adapter, store
    ):
        await orchestrator.push_to_remote(make_item())
        await store.mark_archived("feature-1")
        calls = len(adapter.calls)

        record = await orchestrator.push_to_remote(make_item())

        assert record.archived
        assert len(adapter.calls) == calls

    async def test_transient_error_propagates(self, orchestrator, adapter, store):
        adapter.flaky["feature-1"] = 1
        with pytest.raises(TransientNetworkError):
            await orchestrator.push_to_remote(make_item())
        assert store.lookup_by_local("feature-1") is None


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


    async def test_partial_create_is_mapped_before_the_error(
        self, orchestrator, adapter, store, gate
    ):
        adapter.partial["feature-1"] = RateLimitError("slow down", retry_after=30)

        with pytest.raises(RateLimitError):
            await orchestrator.push_to_remote(make_item())

        record = store.lookup_by_local("feature-1")
        assert record.remote_id == "1"
        assert record.last_known_local_updated_at is None
        assert gate.is_throttled()

        await orchestrator.push_to_remote(make_item())
        assert len(adapter.calls_to("create_item")) == 1
        assert len(adapter.calls_to("update_item")) == 1


class TestPull:
    async def test_unmapped_remote_gets_derived_id(self, orchestrator, adapter, store):
        remote = adapter.seed("From GitHub", labels=["ui"])

        item = await orchestrator.pull_from_remote(remote.remote_id)

        assert item.local_id == f"github-{remote.remote_id}"
        assert item.title == "From GitHub"
        assert item.labels == ["ui"]
        record = store.lookup_by_remote(remote.remote_id)
        assert record.last_action == SyncDirection.PULL
        assert record.last_known_remote_updated_at == remote.updated_at

    async def test_mapped_remote_keeps_local_id(self, orchestrator, adapter):
        record = await orchestrator.push_to_remote(make_item())
        adapter.touch(record.remote_id, title="Edited remotely")

        item = await orchestrator.pull_from_remote(record.remote_id)

        assert item.local_id == "feature-1"
        assert item.title == "Edited remotely"

    async def test_missing_remote_archives_record(self, orchestrator, adapter, store):
        record = await orchestrator.push_to_remote(make_item())
        del adapter.items[record.remote_id]

        assert await orchestrator.pull_from_remote(record.remote_id) is None
        assert store.lookup_by_local("feature-1").archived

    async def test_missing_unmapped_remote(self, orchestrator, store):
        assert await orchestrator.pull_from_remote("999") is None
        assert store.records() == []

    async def test_list_remote(self, orchestrator, adapter):
        adapter.seed("a")
        adapter.seed("b", status=WorkStatus.DONE)
        done = await orchestrator.list_remote(ItemFilter(status=WorkStatus.DONE))
        assert [i.title for i in done] == ["b"]


# ---------------------------------------------------------------------------
# Bidirectional
# ---------------------------------------------------------------------------


class TestBidirectional:
    async def test_unmapped_creates_remote(self, orchestrator, adapter):
        outcome = await orchestrator.sync_bidirectional(make_item())
        assert outcome.action == SyncAction.CREATE_REMOTE
        assert outcome.state == SyncState.SYNCED
        assert outcome.remote_id in adapter.items

    async def test_nothing_changed_is_skipped(self, orchestrator, adapter):
        item = await pushed(orchestrator)
        outcome = await orchestrator.sync_bidirectional(item)
        assert outcome.action == SyncAction.SKIP
        assert outcome.conflict is None
        assert adapter.calls_to("update_item") == []

    async def test_local_change_is_pushed(self, orchestrator, adapter):
        await pushed(orchestrator)
        edited = make_item(title="Local edit", updated_at=later(10))

        outcome = await orchestrator.sync_bidirectional(edited)

        assert outcome.action == SyncAction.PUSH
        assert outcome.decision is None
        assert adapter.items[outcome.remote_id].title == "Local edit"

    async def test_remote_change_is_pulled(self, orchestrator, adapter, store):
        item = await pushed(orchestrator)
        remote_id = store.lookup_by_local("feature-1").remote_id
        adapter.touch(remote_id, status=WorkStatus.DONE)

        outcome = await orchestrator.sync_bidirectional(item)

        assert outcome.action == SyncAction.PULL
        assert outcome.item.status == WorkStatus.DONE
        assert outcome.item.local_id == "feature-1"
        assert adapter.calls_to("update_item") == []
        # A second pass sees both sides in line again.
        again = await orchestrator.sync_bidirectional(outcome.item)
        assert again.action == SyncAction.SKIP

    async def test_same_time_edits_are_flagged(self, orchestrator, adapter, store):
        await pushed(orchestrator)
        remote_id = store.lookup_by_local("feature-1").remote_id
        remote = adapter.touch(remote_id, title="Remote edit")
        edited = make_item(title="Local edit", updated_at=remote.updated_at)

        outcome = await orchestrator.sync_bidirectional(edited)

        assert outcome.action == SyncAction.CONFLICT
        assert outcome.decision == Decision.NEEDS_MANUAL_INPUT
        assert outcome.conflict.conflicting_fields == ["title"]
        assert store.lookup_by_local("feature-1").state == SyncState.CONFLICTED
        assert adapter.calls_to("update_item") == []

    async def test_same_time_identical_edits_are_recorded(
        self, orchestrator, adapter, store
    ):
        await pushed(orchestrator)
        remote_id = store.lookup_by_local("feature-1").remote_id
        remote = adapter.touch(remote_id)
        edited = make_item(updated_at=remote.updated_at)

        outcome = await orchestrator.sync_bidirectional(edited)

        assert outcome.action == SyncAction.SKIP
        record = store.lookup_by_local("feature-1")
        assert record.state == SyncState.SYNCED
        assert record.last_known_local_updated_at == remote.updated_at
        assert record.last_known_remote_updated_at == remote.updated_at

    async def _both_changed(self, orchestrator, adapter, store):
        await pushed(orchestrator)
        remote_id = store.lookup_by_local("feature-1").remote_id
        adapter.touch(remote_id, title="Remote edit")
        return make_item(title="Local edit", updated_at=later(30))

    async def test_conflict_manual(self, orchestrator, adapter, store):
        edited = await self._both_changed(orchestrator, adapter, store)

        outcome = await orchestrator.sync_bidirectional(edited)

        assert outcome.action == SyncAction.CONFLICT
        assert outcome.state == SyncState.CONFLICTED
        assert outcome.decision == Decision.NEEDS_MANUAL_INPUT
        assert outcome.conflict.has_conflict
        assert outcome.conflict.local_newer
        assert outcome.conflict.conflicting_fields == ["title"]
        assert store.lookup_by_local("feature-1").state == SyncState.CONFLICTED
        assert adapter.calls_to("update_item") == []

    async def test_conflict_local_wins(self, adapter, store, gate):
        orch = SyncOrchestrator(
            adapter, store, resolver=create_resolver("local"), rate_gate=gate
        )
        edited = await self._both_changed(orch, adapter, store)

        outcome = await orch.sync_bidirectional(edited)

        assert outcome.action == SyncAction.PUSH
        assert outcome.decision == Decision.USE_LOCAL
        assert adapter.items[outcome.remote_id].title == "Local edit"
        assert store.lookup_by_local("feature-1").state == SyncState.SYNCED

    async def test_conflict_remote_wins(self, adapter, store, gate):
        orch = SyncOrchestrator(
            adapter, store, resolver=create_resolver("remote"), rate_gate=gate
        )
        edited = await self._both_changed(orch, adapter, store)

        outcome = await orch.sync_bidirectional(edited)

        assert outcome.action == SyncAction.PULL
        assert outcome.decision == Decision.USE_REMOTE
        assert outcome.item.title == "Remote edit"

    async def test_conflict_merge(self, adapter, store, gate):
        def merge(local, remote):
            return local.model_copy(
                update={"title": f"{local.title} / {remote.title}"}
            )

        orch = SyncOrchestrator(
            adapter,
            store,
            resolver=create_resolver("merge", merge),
            rate_gate=gate,
        )
        edited = await self._both_changed(orch, adapter, store)

        outcome = await orch.sync_bidirectional(edited)

        assert outcome.decision == Decision.USE_MERGED
        assert outcome.item.title == "Local edit / Remote edit"
        assert adapter.items[outcome.remote_id].title == "Local edit / Remote edit"
        record = store.lookup_by_local("feature-1")
        assert record.last_action == SyncDirection.BIDIRECTIONAL

    async def test_merge_without_function_is_manual(self, adapter, store, gate):
        orch = SyncOrchestrator(
            adapter, store, resolver=create_resolver("merge"), rate_gate=gate
        )
        edited = await self._both_changed(orch, adapter, store)
        outcome = await orch.sync_bidirectional(edited)
        assert outcome.action == SyncAction.CONFLICT

    async def test_deleted_remote_is_archived(self, orchestrator, adapter, store):
        item = await pushed(orchestrator)
        adapter.items.clear()

        outcome = await orchestrator.sync_bidirectional(item)

        assert outcome.action == SyncAction.ARCHIVE
        assert store.lookup_by_local("feature-1").archived
        # Archived items are skipped afterwards without remote calls.
        calls = len(adapter.calls)
        skipped = await orchestrator.sync_bidirectional(item)
        assert skipped.action == SyncAction.SKIP
        assert skipped.state == SyncState.ARCHIVED
        assert len(adapter.calls) == calls


class TestHierarchy:
    async def test_child_linked_under_parent(self, orchestrator, adapter, store):
        await pushed(orchestrator, "epic-1", item_type=ItemType.EPIC)
        epic_id = store.lookup_by_local("epic-1").remote_id

        record = await orchestrator.push_to_remote(
            make_item("story-1", item_type=ItemType.STORY, parent_local_id="epic-1")
        )

        assert record.parent_remote_id == epic_id
        assert adapter.items[record.remote_id].parent_remote_id == epic_id
        assert [c[1] for c in adapter.calls_to("link_parent")] == [record.remote_id]

    async def test_existing_link_not_repeated(self, orchestrator, adapter):
        await pushed(orchestrator, "epic-1")
        story = make_item("story-1", parent_local_id="epic-1")
        await orchestrator.push_to_remote(story)
        await orchestrator.push_to_remote(story)
        assert len(adapter.calls_to("link_parent")) == 1
        assert len(adapter.calls_to("update_item")) == 1

    async def test_link_deferred_until_parent_synced(
        self, orchestrator, adapter, store
    ):
        story = make_item("story-1", parent_local_id="epic-1")
        record = await orchestrator.push_to_remote(story)
        assert record.parent_remote_id is None
        assert adapter.calls_to("link_parent") == []

        await pushed(orchestrator, "epic-1")
        record = await orchestrator.push_to_remote(story)
        assert record.parent_remote_id == store.lookup_by_local("epic-1").remote_id

    async def test_push_hierarchy_parents_first(self, orchestrator, adapter):
        batch = [
            make_item("task-1", parent_local_id="story-1"),
            make_item("story-1", parent_local_id="epic-1"),
            make_item("epic-1"),
        ]

        records = await orchestrator.push_hierarchy(batch)

        assert [c[1] for c in adapter.calls_to("create_item")] == [
            "epic-1",
            "story-1",
            "task-1",
        ]
        assert [r.parent_remote_id for r in records] == [None, "1", "2"]

    def test_order_ignores_parents_outside_the_list(self):
        batch = [make_item("b", parent_local_id="a"), make_item("c", parent_local_id="zz")]
        assert [i.local_id for i in order_by_hierarchy(batch)] == ["b", "c"]

    def test_cycle_rejected(self):
        batch = [
            make_item("a", parent_local_id="b"),
            make_item("b", parent_local_id="a"),
        ]
        with pytest.raises(ValueError, match="cycle"):
            order_by_hierarchy(batch)

    async def test_pull_maps_parent_to_local_id(self, orchestrator, adapter, store):
        await pushed(orchestrator, "epic-1")
        epic_id = store.lookup_by_local("epic-1").remote_id
        child = adapter.seed("Story from remote", parent_remote_id=epic_id)

        item = await orchestrator.pull_from_remote(child.remote_id)

        assert item.parent_local_id == "epic-1"
        record = store.lookup_by_local(item.local_id)
        assert record.parent_remote_id == epic_id


class TestApplyResolution:
    async def _conflicted(self, orchestrator, adapter, store):
        await pushed(orchestrator)
        remote_id = store.lookup_by_local("feature-1").remote_id
        adapter.touch(remote_id, title="Remote edit")
        edited = make_item(title="Local edit", updated_at=later(30))
        await orchestrator.sync_bidirectional(edited)
        return edited

    async def test_use_local(self, orchestrator, adapter, store):
        edited = await self._conflicted(orchestrator, adapter, store)
        outcome = await orchestrator.apply_resolution(edited, Decision.USE_LOCAL)
        assert outcome.action == SyncAction.PUSH
        assert store.lookup_by_local("feature-1").state == SyncState.SYNCED

    async def test_use_remote(self, orchestrator, adapter, store):
        edited = await self._conflicted(orchestrator, adapter, store)
        outcome = await orchestrator.apply_resolution(edited, Decision.USE_REMOTE)
        assert outcome.item.title == "Remote edit"
        assert store.lookup_by_local("feature-1").state == SyncState.SYNCED

    async def test_use_merged_with_explicit_item(self, orchestrator, adapter, store):
        edited = await self._conflicted(orchestrator, adapter, store)
        merged = edited.model_copy(update={"title": "Hand merged"})
        outcome = await orchestrator.apply_resolution(
            edited, Decision.USE_MERGED, merged
        )
        assert adapter.items[outcome.remote_id].title == "Hand merged"

    async def test_use_merged_without_item(self, orchestrator, adapter, store):
        edited = await self._conflicted(orchestrator, adapter, store)
        with pytest.raises(ValueError, match="No merged item"):
            await orchestrator.apply_resolution(edited, Decision.USE_MERGED)

    async def test_needs_manual_input_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.apply_resolution(
                make_item(), Decision.NEEDS_MANUAL_INPUT
            )


# ---------------------------------------------------------------------------
# Status, comments, rate limit
# ---------------------------------------------------------------------------


class TestStatus:
    def test_unsynced(self, orchestrator):
        view = orchestrator.get_sync_status("nope")
        assert view.state == SyncState.UNSYNCED
        assert view.record is None
        assert not view.is_fresh

    async def test_fresh_then_stale(self, adapter, gate):
        now = [T0]
        store = MemoryMappingStore(clock=lambda: now[0])
        orch = SyncOrchestrator(
            adapter,
            store,
            rate_gate=gate,
            freshness_window=timedelta(minutes=5),
            clock=lambda: now[0],
        )
        await orch.push_to_remote(make_item())
        view = orch.get_sync_status("feature-1")
        assert view.state == SyncState.SYNCED
        assert view.record.local_id == "feature-1"
        assert view.is_fresh

        now[0] = T0 + timedelta(minutes=10)
        assert not orch.get_sync_status("feature-1").is_fresh

    async def test_status_makes_no_remote_call(self, orchestrator, adapter):
        await orchestrator.push_to_remote(make_item())
        calls = len(adapter.calls)
        orchestrator.get_sync_status("feature-1")
        assert len(adapter.calls) == calls


class TestComments:
    async def test_comment_on_mapped_item(self, orchestrator, adapter):
        record = await orchestrator.push_to_remote(make_item())
        await orchestrator.add_comment("feature-1", "Synced by worksync")
        assert adapter.comments[record.remote_id] == ["Synced by worksync"]

    async def test_unmapped_item(self, orchestrator):
        with pytest.raises(NotFoundError, match="not mapped"):
            await orchestrator.add_comment("feature-1", "hi")


class TestRateLimitFeedback:
    async def test_quota_headers_reach_gate(self, orchestrator, adapter, gate):
        adapter.rate_limit = RateLimitState(remaining=50, reset_at=2e9)
        await orchestrator.push_to_remote(make_item())
        assert gate.state.remaining == 50

    async def test_rejection_suspends_gate(self, orchestrator, adapter, gate, clock):
        adapter.errors["feature-1"] = RateLimitError(
            "slow down", retry_after=30
        )
        with pytest.raises(RateLimitError):
            await orchestrator.push_to_remote(make_item())
        assert gate.state.remaining == 0
        assert gate.state.reset_at == clock.now + 30
        assert gate.is_throttled()


def test_fake_adapter_is_github_kind():
    assert FakeRemoteAdapter().remote_kind == "github"
