"""Tests for the change feed patch applier."""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

from bizcache.cache import LocalStore
from bizcache.errors import FeedStateError, RemoteUnavailableError
from bizcache.models import (
    Business,
    ChangeEvent,
    ChangeOperation,
    LocalVersionRecord,
    VersionDescriptor,
)
from bizcache.sync import ChangeFeedPatchApplier, FeedState
from bizcache.view import WorkingSet

NOW = datetime(2026, 2, 3, 10, tzinfo=timezone.utc)


@pytest.fixture
def store():
    """Create an in-memory LocalStore for testing."""
    store = LocalStore(":memory:")
    store.connect()
    yield store
    store.close()


@pytest.fixture
def view():
    return WorkingSet()


@pytest.fixture
def applier(store, view):
    return ChangeFeedPatchApplier(store, view)


def insert(entity_id, name="Shop"):
    return ChangeEvent(
        ChangeOperation.INSERT, "businesses", entity_id,
        {"id": entity_id, "shop_name": name},
    )


def update(entity_id, name):
    return ChangeEvent(
        ChangeOperation.UPDATE, "businesses", entity_id,
        {"id": entity_id, "shop_name": name},
    )


def delete(entity_id):
    return ChangeEvent(ChangeOperation.DELETE, "businesses", entity_id)


def ids(entities):
    return [e.id for e in entities]


def assert_in_lockstep(store, view):
    assert sorted(ids(store.get("businesses"))) == sorted(ids(view.get("businesses")))
    for entity in view.get("businesses"):
        assert entity in store.get("businesses")


class TestInsert:
    """Tests for insert events."""

    def test_insert_new(self, applier, store, view):
        applier.apply(insert("b1", "Ganesh Kirana"))

        assert ids(store.get("businesses")) == ["b1"]
        assert view.find("businesses", "b1").shop_name == "Ganesh Kirana"

    def test_insert_prepends_to_view(self, applier, store, view):
        view.replace_all("businesses", [Business(id="b0", shop_name="Old")])
        store.set_all("businesses", view.get("businesses"))

        applier.apply(insert("b1"))

        assert ids(view.get("businesses")) == ["b1", "b0"]

    def test_duplicate_insert_is_idempotent(self, applier, store, view):
        """Test the same insert delivered twice leaves one entity."""
        applier.apply(insert("b1"))
        applier.apply(insert("b1"))

        assert ids(store.get("businesses")) == ["b1"]
        assert ids(view.get("businesses")) == ["b1"]

    def test_insert_existing_acts_as_update(self, applier, view):
        applier.apply(insert("b1", "First"))
        applier.apply(insert("b1", "Second"))

        assert view.find("businesses", "b1").shop_name == "Second"


class TestUpdate:
    """Tests for update events."""

    def test_update_replaces_in_place(self, applier, store, view):
        applier.apply_all([insert("b1"), insert("b2"), update("b1", "Renamed")])

        assert ids(view.get("businesses")) == ["b2", "b1"]
        assert view.find("businesses", "b1").shop_name == "Renamed"
        assert_in_lockstep(store, view)

    def test_update_miss_degrades_to_insert(self, applier, store, view):
        applier.apply(update("b9", "Late"))

        assert ids(store.get("businesses")) == ["b9"]
        assert view.find("businesses", "b9").shop_name == "Late"


class TestDelete:
    """Tests for delete events."""

    def test_delete_removes(self, applier, store, view):
        applier.apply_all([insert("b1"), insert("b2"), delete("b1")])

        assert ids(store.get("businesses")) == ["b2"]
        assert ids(view.get("businesses")) == ["b2"]

    def test_delete_miss_is_noop(self, applier, store, view):
        assert applier.apply(delete("nope")) is True
        assert store.get("businesses") == []
        assert view.get("businesses") == []


class TestOrdering:
    """Tests that events are applied strictly in delivery order."""

    def test_delete_then_update_reinstates(self, applier, store, view):
        applier.apply(insert("X", "Original"))

        applier.apply_all([delete("X"), update("X", "Payload")])

        assert view.find("businesses", "X").shop_name == "Payload"
        assert ids(store.get("businesses")) == ["X"]

    def test_update_then_delete_removes(self, applier, store, view):
        applier.apply(insert("X", "Original"))

        applier.apply_all([update("X", "Payload"), delete("X")])

        assert view.find("businesses", "X") is None
        assert store.get("businesses") == []

    @pytest.mark.parametrize(
        "sequence, expected",
        [
            ([insert("A"), insert("B"), delete("A")], ["B"]),
            ([insert("A"), delete("A"), insert("A", "Again")], ["A"]),
            ([delete("A"), delete("A")], []),
            ([update("A", "1"), update("A", "2"), insert("B")], ["A", "B"]),
        ],
    )
    def test_fixed_sequences_keep_store_and_view_equal(
        self, applier, store, view, sequence, expected
    ):
        applier.apply_all(sequence)

        assert sorted(ids(view.get("businesses"))) == expected
        assert_in_lockstep(store, view)


class TestIgnoredEvents:
    """Tests for events the applier cannot use."""

    def test_unknown_entity_type(self, applier, store):
        event = ChangeEvent(ChangeOperation.INSERT, "users", "u1", {"id": "u1"})

        assert applier.apply(event) is False
        assert applier.events_ignored == 1

    def test_malformed_payload(self, applier, store):
        event = ChangeEvent(ChangeOperation.INSERT, "businesses", "b1", {"id": "b1"})

        assert applier.apply(event) is False
        assert store.get("businesses") == []

    def test_category_events(self, applier, store, view):
        applier.apply(
            ChangeEvent(ChangeOperation.INSERT, "categories", "c1", {"id": "c1", "name": "Grocery"})
        )

        assert ids(store.get("categories")) == ["c1"]
        assert ids(view.get("categories")) == ["c1"]


class TestWriteFailures:
    """Tests for events the store cannot commit."""

    def test_failed_insert_leaves_view_alone(self, applier, store, view):
        with patch.object(store, "_write_many", return_value=False):
            assert applier.apply(insert("b1")) is False

        assert store.get("businesses") == []
        assert view.get("businesses") == []
        assert applier.write_failures == 1
        assert applier.events_applied == 0

    def test_failed_delete_leaves_view_alone(self, applier, store, view):
        applier.apply(insert("b1"))

        with patch.object(store, "_write_many", return_value=False):
            assert applier.apply(delete("b1")) is False

        assert ids(view.get("businesses")) == ["b1"]
        assert_in_lockstep(store, view)

    def test_malformed_stored_collection_not_patched(self, applier, store, view):
        store._conn.execute(
            "INSERT INTO cache_entries (key, value, updated_at) "
            "VALUES ('collection:businesses', '[{\"id\": 5}]', '2026-02-03T10:00:00')"
        )
        store._conn.commit()

        assert applier.apply(update("b1", "Renamed")) is False
        assert view.get("businesses") == []
        assert applier.get_stats()["write_failures"] == 1


class TestLifecycle:
    """Tests for the subscription state machine."""

    def test_starts_subscribing(self, applier):
        assert applier.state is FeedState.SUBSCRIBING

    def test_event_before_active_raises(self, applier):
        with pytest.raises(FeedStateError):
            applier.on_event(insert("b1"))

    def test_activate_twice_raises(self, applier):
        applier.activate()
        with pytest.raises(FeedStateError):
            applier.activate()

    def test_events_after_unsubscribe_are_dropped(self, applier, store):
        applier.activate()
        applier.on_event(insert("b1"))
        applier.unsubscribe()
        applier.unsubscribe()

        applier.on_event(insert("b2"))

        assert applier.state is FeedState.UNSUBSCRIBED
        assert ids(store.get("businesses")) == ["b1"]

    def test_cannot_reactivate(self, applier):
        applier.activate()
        applier.unsubscribe()
        with pytest.raises(FeedStateError):
            applier.activate()


class TestVersionRefresh:
    """Tests for the best-effort version refresh after an event."""

    @pytest.mark.asyncio
    async def test_refresh_updates_last_sync(self, store, view):
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        store.set_version(LocalVersionRecord("v1", old, old))
        fetch = AsyncMock(return_value=VersionDescriptor("v2", NOW))
        applier = ChangeFeedPatchApplier(store, view, fetch)
        applier.activate()

        await applier.handle_event(insert("b1"))

        record = store.get_version()
        assert record.version_token == "v2"
        assert record.last_sync > old
        fetch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_refresh_failure_keeps_data(self, store, view):
        store.set_version(LocalVersionRecord("v1", NOW, NOW))
        fetch = AsyncMock(side_effect=RemoteUnavailableError("offline"))
        applier = ChangeFeedPatchApplier(store, view, fetch)
        applier.activate()

        await applier.handle_event(insert("b1"))

        assert ids(store.get("businesses")) == ["b1"]
        assert store.get_version().version_token == "v1"
        assert applier.version_refresh_failures == 1

    @pytest.mark.asyncio
    async def test_no_refresh_without_full_sync(self, store, view):
        """Test deltas alone never create a version record."""
        fetch = AsyncMock(return_value=VersionDescriptor("v2", NOW))
        applier = ChangeFeedPatchApplier(store, view, fetch)
        applier.activate()

        await applier.handle_event(insert("b1"))

        assert store.get_version() is None
        fetch.assert_not_called()

    def test_stats(self, applier):
        applier.apply(insert("b1"))
        stats = applier.get_stats()

        assert stats["state"] == "subscribing"
        assert stats["events_applied"] == 1
