"""Tests for MemoryStore: copies, timestamps, change feed, transactions."""

from datetime import UTC, datetime

import pytest

from ratings.query import build_query
from ratings.store import SERVER_TIMESTAMP, MemoryStore
from ratings.tests.support import seed_restaurant
from ratings.types import DocumentRef, StorageTransactionFailed, Timestamp, restaurant_ref


class TestReadsAndWrites:
    async def test_get_returns_copy(self, store):
        ref = await seed_restaurant(store, "r1")
        data = await store.get(ref)
        data["name"] = "mutated"
        assert (await store.get(ref))["name"] == "Restaurant r1"

    async def test_get_missing(self, store):
        assert await store.get(restaurant_ref("nope")) is None

    async def test_add_assigns_id(self, store):
        doc_id = await store.add("restaurants", {"name": "New", "avg_rating": 0.0})
        assert doc_id
        assert (await store.get(restaurant_ref(doc_id)))["name"] == "New"

    async def test_update_missing_returns_false(self, store):
        assert await store.update(restaurant_ref("nope"), {"photo": "x"}) is False

    async def test_delete(self, store):
        ref = await seed_restaurant(store, "r1")
        assert await store.delete(ref) is True
        assert await store.delete(ref) is False
        assert await store.get(ref) is None

    async def test_query_uses_spec(self, store):
        await seed_restaurant(store, "a", category="Pizza", avg_rating=3.0)
        await seed_restaurant(store, "b", category="Pizza", avg_rating=4.0)
        await seed_restaurant(store, "c", category="Thai", avg_rating=5.0)

        rows = await store.query(build_query("restaurants", {"category": "Pizza"}))
        assert [doc_id for doc_id, _ in rows] == ["b", "a"]


class TestServerTimestamp:
    async def test_resolved_from_clock(self, store):
        ref = await seed_restaurant(store, "r1")
        assert (await store.get(ref))["timestamp"] == Timestamp.from_datetime(datetime(2026, 1, 1, 12, 0, tzinfo=UTC))

    async def test_strictly_increasing_with_frozen_clock(self):
        frozen = datetime(2026, 3, 1, tzinfo=UTC)
        store = MemoryStore(clock=lambda: frozen)

        for i in range(3):
            await store.set(DocumentRef("things", f"t{i}"), {"timestamp": SERVER_TIMESTAMP})

        stamps = [(await store.get(DocumentRef("things", f"t{i}")))["timestamp"] for i in range(3)]
        assert stamps[0] < stamps[1] < stamps[2]
        assert stamps[0].to_datetime() == frozen

    def test_timestamp_round_trip(self):
        value = datetime(2026, 5, 17, 8, 30, 15, 123456, tzinfo=UTC)
        assert Timestamp.from_datetime(value).to_datetime() == value


class TestChangeFeed:
    async def test_writes_published(self, store):
        changes = store.feed.open()
        ref = await seed_restaurant(store, "r1")
        await store.update(ref, {"photo": "p.jpg"})
        await store.delete(ref)

        assert [changes.get_nowait() for _ in range(3)] == [ref, ref, ref]
        assert changes.empty()

    async def test_closed_listener_not_published(self, store):
        changes = store.feed.open()
        store.feed.close(changes)
        await seed_restaurant(store, "r1")
        assert changes.empty()
        assert store.feed.listener_count == 0

    async def test_shutdown_sends_none(self, store):
        changes = store.feed.open()
        await store.close()
        assert changes.get_nowait() is None


class TestTransactions:
    async def test_commit_applies_all_writes(self, store):
        ref = await seed_restaurant(store, "r1")
        child = DocumentRef("restaurants/r1/ratings", "x")

        async def fn(tx):
            data = await tx.get(ref)
            tx.update(ref, {"num_ratings": data["num_ratings"] + 1})
            tx.set(child, {"rating": 5})
            return "done"

        assert await store.run_transaction(fn) == "done"
        assert (await store.get(ref))["num_ratings"] == 1
        assert (await store.get(child))["rating"] == 5

    async def test_update_of_missing_record_commits_nothing(self, store):
        child = DocumentRef("restaurants/ghost/ratings", "x")

        async def fn(tx):
            tx.set(child, {"rating": 5})
            tx.update(restaurant_ref("ghost"), {"num_ratings": 1})

        with pytest.raises(StorageTransactionFailed):
            await store.run_transaction(fn)
        assert await store.get(child) is None

    async def test_reads_must_precede_writes(self, store):
        ref = await seed_restaurant(store, "r1")

        async def fn(tx):
            tx.update(ref, {"photo": "x"})
            await tx.get(ref)

        with pytest.raises(StorageTransactionFailed):
            await store.run_transaction(fn)
        assert (await store.get(ref))["photo"] is None

    async def test_commit_publishes_once_per_write(self, store):
        ref = await seed_restaurant(store, "r1")
        changes = store.feed.open()

        async def fn(tx):
            await tx.get(ref)
            tx.update(ref, {"photo": "x"})

        await store.run_transaction(fn)
        assert changes.get_nowait() == ref
        assert changes.empty()
