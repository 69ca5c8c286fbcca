"""
Unit tests for tiered_approvals/services/level_store.py

Tests: list ordering, create/update/delete view maintenance, optimistic
       update rollback, copy_defaults_from, clean_changes, change events.
"""

import dataclasses
from decimal import Decimal

import pytest

from tiered_approvals.services.change_feed import DELETE, INSERT, UPDATE, LevelChange
from tiered_approvals.services.errors import (
    ConflictError,
    NotFound,
    TransientBackendError,
    ValidationError,
)
from tiered_approvals.services.level_store import (
    ApprovalLevelStore,
    clean_changes,
    filter_levels,
    sort_levels,
)

PARENT_ID = "c0000000-0000-0000-0000-000000000001"
CLIENT_ID = "c0000000-0000-0000-0000-000000000002"
OTHER_ID = "c0000000-0000-0000-0000-000000000099"


def _record_events(feed, client_id):
    events = []
    feed.subscribe(client_id, events.append)
    return events


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_sorted_by_order_level(store, backend):
    backend.add(CLIENT_ID, "Three", 5000, order_level=3)
    backend.add(CLIENT_ID, "One", 0, 1000, order_level=1)
    backend.add(CLIENT_ID, "Two", 1000, 5000, order_level=2)

    levels = await store.list(CLIENT_ID)

    assert [level.name for level in levels] == ["One", "Two", "Three"]


@pytest.mark.asyncio
async def test_list_keeps_relative_order_of_equal_ranks(store, backend):
    backend.add(CLIENT_ID, "A", 0, order_level=1)
    backend.add(CLIENT_ID, "B", 0, order_level=1)
    backend.add(CLIENT_ID, "C", 0, order_level=0)

    levels = await store.list(CLIENT_ID)

    assert [level.name for level in levels] == ["C", "A", "B"]


@pytest.mark.asyncio
async def test_list_includes_inactive_levels(store, backend):
    backend.add(CLIENT_ID, "Off", 0, active=False)
    backend.add(CLIENT_ID, "On", 0, order_level=2)

    levels = await store.list(CLIENT_ID)

    assert len(levels) == 2


@pytest.mark.asyncio
async def test_list_without_client_returns_empty_and_skips_backend(store, backend):
    assert await store.list(None) == []
    assert await store.list("") == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_list_only_returns_own_tenant(store, backend):
    backend.add(CLIENT_ID, "Mine", 0)
    backend.add(OTHER_ID, "Theirs", 0)

    levels = await store.list(CLIENT_ID)

    assert [level.name for level in levels] == ["Mine"]


@pytest.mark.asyncio
async def test_list_failure_keeps_previous_view(store, backend, transient_error):
    backend.add(CLIENT_ID, "Kept", 0)
    await store.list(CLIENT_ID)
    backend.fail_next = transient_error

    with pytest.raises(TransientBackendError):
        await store.list(CLIENT_ID)

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Kept"]


def test_snapshot_is_a_copy(store):
    store._views[CLIENT_ID] = []
    store.snapshot(CLIENT_ID).append("junk")
    assert store.snapshot(CLIENT_ID) == []


def test_sort_levels_is_stable(backend):
    a = backend.add(CLIENT_ID, "a", 0, order_level=2)
    b = backend.add(CLIENT_ID, "b", 0, order_level=1)
    c = backend.add(CLIENT_ID, "c", 0, order_level=2)
    assert sort_levels([a, b, c]) == [b, a, c]


def test_filter_levels_matches_name_case_insensitively(backend):
    levels = [backend.add(CLIENT_ID, "Board Review", 0), backend.add(CLIENT_ID, "Assembly", 0)]
    assert [level.name for level in filter_levels(levels, "  board ")] == ["Board Review"]
    assert filter_levels(levels, None) == levels


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_inserts_into_loaded_view_in_order(store, backend, feed, actor):
    backend.add(CLIENT_ID, "Second", 1000, order_level=2)
    await store.list(CLIENT_ID)
    events = _record_events(feed, CLIENT_ID)

    record = await store.create(
        CLIENT_ID,
        name="  First ",
        amount_threshold=0,
        max_amount_threshold=1000,
        approvers=["u1", "u1", "u2"],
        order_level=1,
        actor=actor,
    )

    assert record.name == "First"
    assert record.approvers == ("u1", "u2")
    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["First", "Second"]
    assert backend.audit[-1]["action"] == "CREATE"
    assert backend.audit[-1]["actor"] == actor
    assert [(e.event, e.level_id) for e in events] == [(INSERT, record.id)]


@pytest.mark.asyncio
async def test_create_rejects_inverted_band_without_calling_backend(store, backend):
    with pytest.raises(ValidationError):
        await store.create(CLIENT_ID, name="Bad", amount_threshold=500, max_amount_threshold=100)
    assert "insert_levels" not in backend.calls


@pytest.mark.asyncio
async def test_create_requires_client_and_name(store):
    with pytest.raises(ValidationError):
        await store.create(None, name="x", amount_threshold=0)
    with pytest.raises(ValidationError):
        await store.create(CLIENT_ID, name="   ", amount_threshold=0)


@pytest.mark.asyncio
async def test_create_rejects_string_approvers(store):
    with pytest.raises(ValidationError):
        await store.create(CLIENT_ID, name="x", amount_threshold=0, approvers="u1")


@pytest.mark.asyncio
async def test_create_backend_failure_leaves_view_untouched(store, backend, transient_error):
    await store.list(CLIENT_ID)
    backend.fail_next = transient_error

    with pytest.raises(TransientBackendError):
        await store.create(CLIENT_ID, name="x", amount_threshold=0)

    assert store.snapshot(CLIENT_ID) == []


# ---------------------------------------------------------------------------
# update
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_unknown_id_raises_not_found_and_keeps_list(store, backend):
    backend.add(CLIENT_ID, "Only", 0, 1000)
    before = await store.list(CLIENT_ID)

    with pytest.raises(NotFound):
        await store.update("does-not-exist", {"name": "Renamed"})

    assert store.snapshot(CLIENT_ID) == before


@pytest.mark.asyncio
async def test_update_reorders_view(store, backend, feed):
    first = backend.add(CLIENT_ID, "First", 0, order_level=1)
    backend.add(CLIENT_ID, "Second", 0, order_level=2)
    await store.list(CLIENT_ID)
    events = _record_events(feed, CLIENT_ID)

    updated = await store.update(first.id, {"order_level": 3})

    assert updated.order_level == 3
    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Second", "First"]
    assert [e.event for e in events] == [UPDATE]


@pytest.mark.asyncio
async def test_update_rolls_back_on_backend_failure(store, backend, transient_error):
    level = backend.add(CLIENT_ID, "Original", 0, 1000)
    before = await store.list(CLIENT_ID)
    backend.fail_next = transient_error

    with pytest.raises(TransientBackendError):
        await store.update(level.id, {"name": "Changed"})

    assert store.snapshot(CLIENT_ID) == before
    assert backend.rows[level.id].name == "Original"


@pytest.mark.asyncio
async def test_update_rolls_back_on_unexpected_error(store, backend):
    level = backend.add(CLIENT_ID, "Original", 0, 1000)
    before = await store.list(CLIENT_ID)
    backend.fail_next = RuntimeError("driver crashed")

    with pytest.raises(RuntimeError):
        await store.update(level.id, {"name": "Changed"})

    assert store.snapshot(CLIENT_ID) == before


@pytest.mark.asyncio
async def test_update_checks_band_against_current_values(store, backend):
    level = backend.add(CLIENT_ID, "Band", 100, 1000)
    await store.list(CLIENT_ID)

    with pytest.raises(ValidationError):
        await store.update(level.id, {"max_amount_threshold": 50})

    assert "update_level" not in backend.calls


@pytest.mark.asyncio
async def test_update_can_clear_max_threshold(store, backend):
    level = backend.add(CLIENT_ID, "Band", 100, 1000)

    updated = await store.update(level.id, {"max_amount_threshold": None})

    assert updated.max_amount_threshold is None


@pytest.mark.asyncio
async def test_update_with_stale_timestamp_conflicts(store, backend):
    level = backend.add(CLIENT_ID, "Band", 0)
    await store.list(CLIENT_ID)
    await store.update(level.id, {"name": "Someone else"})

    with pytest.raises(ConflictError):
        await store.update(level.id, {"name": "Mine"}, expected_updated_at=level.updated_at)

    assert store.snapshot(CLIENT_ID)[0].name == "Someone else"


@pytest.mark.asyncio
async def test_update_with_current_timestamp_succeeds(store, backend):
    level = backend.add(CLIENT_ID, "Band", 0)

    updated = await store.update(level.id, {"name": "Mine"}, expected_updated_at=level.updated_at)

    assert updated.name == "Mine"
    assert updated.updated_at > level.updated_at


# ---------------------------------------------------------------------------
# clean_changes
# ---------------------------------------------------------------------------


def test_clean_changes_rejects_empty():
    with pytest.raises(ValidationError):
        clean_changes({})


def test_clean_changes_rejects_unknown_fields():
    with pytest.raises(ValidationError) as exc:
        clean_changes({"client_id": "x"})
    assert "client_id" in exc.value.message


def test_clean_changes_rejects_null_for_required_fields():
    with pytest.raises(ValidationError):
        clean_changes({"active": None})


def test_clean_changes_normalizes_values():
    cleaned = clean_changes({"amount_threshold": "10.50", "approvers": ["a", " a ", "b"], "name": " X "})
    assert cleaned == {"amount_threshold": Decimal("10.50"), "approvers": ("a", "b"), "name": "X"}


def test_clean_changes_rejects_bool_order_level():
    with pytest.raises(ValidationError):
        clean_changes({"order_level": True})


# ---------------------------------------------------------------------------
# delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_removes_from_view(store, backend, feed, actor):
    level = backend.add(CLIENT_ID, "Gone", 0)
    backend.add(CLIENT_ID, "Stays", 0, order_level=2)
    await store.list(CLIENT_ID)
    events = _record_events(feed, CLIENT_ID)

    assert await store.delete(level.id, actor=actor) is True

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Stays"]
    assert backend.audit[-1]["action"] == "DELETE"
    assert [(e.event, e.level_id) for e in events] == [(DELETE, level.id)]


@pytest.mark.asyncio
async def test_delete_unknown_id_raises_not_found(store):
    with pytest.raises(NotFound):
        await store.delete("missing")


@pytest.mark.asyncio
async def test_get_falls_back_to_backend(store, backend):
    level = backend.add(CLIENT_ID, "Cold", 0)
    assert (await store.get(level.id)).name == "Cold"
    with pytest.raises(NotFound):
        await store.get("missing")


# ---------------------------------------------------------------------------
# copy_defaults_from
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_copy_defaults_copies_active_levels_without_approvers(store, backend, feed, actor):
    backend.add(PARENT_ID, "Routine", 0, 1000, order_level=1, approvers=["p1"])
    backend.add(PARENT_ID, "Retired", 0, 1000, order_level=2, active=False)
    backend.add(PARENT_ID, "Board", 1000, None, order_level=3, approvers=["p2"])
    events = _record_events(feed, CLIENT_ID)

    result = await store.copy_defaults_from(PARENT_ID, CLIENT_ID, actor=actor)

    assert result.no_defaults_available is False
    assert [level.name for level in result.levels] == ["Routine", "Board"]
    for copy in result.levels:
        assert copy.client_id == CLIENT_ID
        assert copy.approvers == ()
        assert copy.active is True
    assert result.levels[1].max_amount_threshold is None
    assert result.levels[0].max_amount_threshold == Decimal("1000")
    assert {entry["action"] for entry in backend.audit} == {"COPY_DEFAULTS"}
    assert [e.event for e in events] == [INSERT, INSERT]


@pytest.mark.asyncio
async def test_copy_defaults_leaves_parent_untouched(store, backend):
    source = backend.add(PARENT_ID, "Routine", 0, 1000)

    await store.copy_defaults_from(PARENT_ID, CLIENT_ID)

    assert backend.rows[source.id] == source
    assert len([r for r in backend.rows.values() if r.client_id == PARENT_ID]) == 1


@pytest.mark.asyncio
async def test_copy_defaults_without_active_parent_levels(store, backend):
    backend.add(PARENT_ID, "Retired", 0, active=False)

    result = await store.copy_defaults_from(PARENT_ID, CLIENT_ID)

    assert result.no_defaults_available is True
    assert result.levels == []
    assert "insert_levels" not in backend.calls


@pytest.mark.asyncio
async def test_copy_defaults_merges_into_loaded_view(store, backend):
    backend.add(CLIENT_ID, "Existing", 0, order_level=5)
    await store.list(CLIENT_ID)
    backend.add(PARENT_ID, "Routine", 0, 1000, order_level=1)

    await store.copy_defaults_from(PARENT_ID, CLIENT_ID)

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Routine", "Existing"]


@pytest.mark.asyncio
@pytest.mark.parametrize("parent,target", [(None, CLIENT_ID), (PARENT_ID, None), (CLIENT_ID, CLIENT_ID)])
async def test_copy_defaults_rejects_bad_clients(store, parent, target):
    with pytest.raises(ValidationError):
        await store.copy_defaults_from(parent, target)


# ---------------------------------------------------------------------------
# level_for_amount / watch
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_level_for_amount_uses_loaded_view(store, backend):
    backend.add(CLIENT_ID, "Low", 0, 1000, order_level=1)
    backend.add(CLIENT_ID, "High", 1000, None, order_level=2)
    await store.list(CLIENT_ID)

    assert store.level_for_amount(CLIENT_ID, 1500).name == "High"
    assert store.level_for_amount(OTHER_ID, 1500) is None
    with pytest.raises(ValidationError):
        store.level_for_amount(CLIENT_ID, -1)


@pytest.mark.asyncio
async def test_watch_refetches_after_remote_change(store, backend, feed):
    await store.list(CLIENT_ID)
    watcher = store.watch(CLIENT_ID, debounce_seconds=0)
    # A row written by another process
    backend.add(CLIENT_ID, "Remote", 0)

    await feed.publish(LevelChange(event=INSERT, client_id=CLIENT_ID))
    await watcher.wait_idle()
    await watcher.stop()

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Remote"]
    assert watcher.refetch_count == 1



# ---------------------------------------------------------------------------
# equal ranks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_with_equal_rank_goes_after_existing(store, backend):
    backend.add(CLIENT_ID, "A", 0, order_level=1)
    backend.add(CLIENT_ID, "B", 0, order_level=1)
    await store.list(CLIENT_ID)

    await store.create(CLIENT_ID, name="C", amount_threshold=0, order_level=1)
    await store.create(CLIENT_ID, name="First", amount_threshold=0, order_level=0)

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["First", "A", "B", "C"]


@pytest.mark.asyncio
async def test_update_into_equal_rank_keeps_relative_order(store, backend):
    a = backend.add(CLIENT_ID, "A", 0, order_level=1)
    backend.add(CLIENT_ID, "B", 0, order_level=2)
    backend.add(CLIENT_ID, "C", 0, order_level=2)
    await store.list(CLIENT_ID)

    await store.update(a.id, {"order_level": 2})

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_update_without_rank_change_keeps_position(store, backend):
    backend.add(CLIENT_ID, "A", 0, order_level=1)
    b = backend.add(CLIENT_ID, "B", 0, order_level=1)
    backend.add(CLIENT_ID, "C", 0, order_level=1)
    await store.list(CLIENT_ID)

    await store.update(b.id, {"name": "B2"})

    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["A", "B2", "C"]


# ---------------------------------------------------------------------------
# change notifications after commit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_mutations_succeed_when_publish_fails(store, backend, feed, monkeypatch):
    level = backend.add(CLIENT_ID, "Existing", 0)
    await store.list(CLIENT_ID)

    async def broken_publish(change):
        raise RuntimeError("feed unavailable")

    monkeypatch.setattr(feed, "publish", broken_publish)

    created = await store.create(CLIENT_ID, name="New", amount_threshold=0, order_level=2)
    updated = await store.update(level.id, {"name": "Renamed"})
    deleted = await store.delete(created.id)

    assert updated.name == "Renamed"
    assert deleted is True
    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Renamed"]
    assert backend.rows[level.id].name == "Renamed"


@pytest.mark.asyncio
async def test_create_succeeds_when_subscriber_raises(store, feed):
    received = []

    def broken(change):
        raise ValueError("subscriber bug")

    feed.subscribe(CLIENT_ID, broken)
    feed.subscribe(CLIENT_ID, received.append)

    record = await store.create(CLIENT_ID, name="Level", amount_threshold=0)

    assert record.name == "Level"
    assert [(e.event, e.level_id) for e in received] == [(INSERT, record.id)]


# ---------------------------------------------------------------------------
# remote changes and view lifetime
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_remote_change_invalidates_tenant_view(store, backend, feed):
    level = backend.add(CLIENT_ID, "Local", 0)
    backend.add(OTHER_ID, "Other", 0)
    await store.list(CLIENT_ID)
    await store.list(OTHER_ID)
    store.track_remote_changes()

    # Written by another worker
    backend.rows[level.id] = dataclasses.replace(level, name="Remote")
    await feed.publish(LevelChange(UPDATE, CLIENT_ID, level.id, remote=True))

    assert not store.is_loaded(CLIENT_ID)
    assert store.is_loaded(OTHER_ID)
    assert (await store.get(level.id)).name == "Remote"
    assert [level.name for level in await store.list(CLIENT_ID)] == ["Remote"]


@pytest.mark.asyncio
async def test_local_change_keeps_tenant_view(store, feed):
    await store.list(CLIENT_ID)
    store.track_remote_changes()

    await store.create(CLIENT_ID, name="Mine", amount_threshold=0)

    assert store.is_loaded(CLIENT_ID)
    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Mine"]


@pytest.mark.asyncio
async def test_untracked_store_ignores_remote_changes(store, feed):
    await store.list(CLIENT_ID)

    await feed.publish(LevelChange(DELETE, CLIENT_ID, "l1", remote=True))

    assert store.is_loaded(CLIENT_ID)


@pytest.mark.asyncio
async def test_get_with_refresh_reads_backend_and_updates_view(store, backend):
    level = backend.add(CLIENT_ID, "Cached", 0)
    await store.list(CLIENT_ID)
    backend.rows[level.id] = dataclasses.replace(level, name="Fresh")

    assert (await store.get(level.id)).name == "Cached"
    assert (await store.get(level.id, refresh=True)).name == "Fresh"
    assert [level.name for level in store.snapshot(CLIENT_ID)] == ["Fresh"]


@pytest.mark.asyncio
async def test_get_with_refresh_raises_not_found_for_removed_row(store, backend):
    level = backend.add(CLIENT_ID, "Gone", 0)
    await store.list(CLIENT_ID)
    del backend.rows[level.id]

    with pytest.raises(NotFound):
        await store.get(level.id, refresh=True)


@pytest.mark.asyncio
async def test_views_are_bounded(backend, feed):
    store = ApprovalLevelStore(backend, feed, max_views=2)

    await store.list(PARENT_ID)
    await store.list(CLIENT_ID)
    await store.list(PARENT_ID)
    await store.list(OTHER_ID)

    assert store.is_loaded(PARENT_ID)
    assert store.is_loaded(OTHER_ID)
    assert not store.is_loaded(CLIENT_ID)
