"""
Test Suite: Key-Value Store
===========================

In-memory semantics, change notifications, aborted updates, and MongoDB
error wrapping with a mocked motor collection.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from pymongo.errors import ServerSelectionTimeoutError

from settlement.config import DATA_CHANGED_EVENT
from settlement.errors import StorageError
from settlement.store import InMemoryKeyValueStore, KeyedLocks, MongoKeyValueStore, KV_COLLECTION


class TestInMemoryStore:
    """Snapshot reads and read-modify-write updates."""

    @pytest.mark.asyncio
    async def test_get_returns_default_for_missing_key(self, store):
        assert await store.get("missing") is None
        assert await store.get("missing", []) == []

    @pytest.mark.asyncio
    async def test_values_are_copied(self, store):
        value = {"rows": [1, 2]}
        await store.set("k", value)
        value["rows"].append(3)

        loaded = await store.get("k")
        loaded["rows"].append(4)

        assert await store.get("k") == {"rows": [1, 2]}

    @pytest.mark.asyncio
    async def test_update_applies_function(self, store):
        await store.update("counter", lambda v: v + 1, default=0)
        result = await store.update("counter", lambda v: v + 1, default=0)

        assert result == 2
        assert await store.get("counter") == 2

    @pytest.mark.asyncio
    async def test_failed_update_writes_nothing(self, store):
        events = []
        store.subscribe(DATA_CHANGED_EVENT, events.append)
        await store.set("k", [1])
        events.clear()

        def boom(value):
            value.append(2)
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await store.update("k", boom, default=[])

        assert await store.get("k") == [1]
        assert events == []

    @pytest.mark.asyncio
    async def test_one_notification_per_mutation(self, store):
        events = []
        store.subscribe(DATA_CHANGED_EVENT, events.append)

        await store.set("a", 1)
        await store.update("a", lambda v: v + 1)
        await store.delete("a")

        assert len(events) == 3
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_writes(self, store):
        seen = []

        def broken(event):
            raise RuntimeError("subscriber down")

        store.subscribe(DATA_CHANGED_EVENT, broken)
        store.subscribe(DATA_CHANGED_EVENT, seen.append)

        await store.set("k", "v")

        assert await store.get("k") == "v"
        assert seen == [DATA_CHANGED_EVENT]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, store):
        events = []
        store.subscribe(DATA_CHANGED_EVENT, events.append)
        store.unsubscribe(DATA_CHANGED_EVENT, events.append)

        await store.set("k", 1)
        assert events == []

    @pytest.mark.asyncio
    async def test_initial_data(self):
        seeded = InMemoryKeyValueStore({"plan_price": 4.5})
        assert await seeded.get("plan_price") == 4.5


class TestKeyedLocks:
    """Per-key locks serialize work and are dropped once released."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLocks()
        order = []

        async def worker(name):
            async with locks.hold("k"):
                order.append(f"{name}-in")
                await asyncio.sleep(0)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_dropped_after_error(self):
        locks = KeyedLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_store_keeps_no_locks_after_writes(self, store):
        for i in range(5):
            await store.set(f"key-{i}", i)
        await store.update("key-0", lambda v: v + 1)
        await store.delete("key-1")

        assert len(store._locks) == 0


class TestMongoStore:
    """MongoKeyValueStore over a mocked collection."""

    @pytest.fixture
    def collection(self):
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.replace_one = AsyncMock()
        collection.delete_one = AsyncMock()
        return collection

    @pytest.fixture
    def mongo_store(self, collection):
        db = MagicMock()
        db.__getitem__.return_value = collection
        return MongoKeyValueStore(db)

    @pytest.mark.asyncio
    async def test_reads_value_field(self, mongo_store, collection):
        collection.find_one.return_value = {"_id": "plan_price", "value": 12.5}

        assert await mongo_store.get("plan_price") == 12.5
        collection.find_one.assert_awaited_once_with({"_id": "plan_price"})

    @pytest.mark.asyncio
    async def test_missing_document_returns_default(self, mongo_store):
        assert await mongo_store.get("payments", []) == []

    @pytest.mark.asyncio
    async def test_write_upserts_document(self, mongo_store, collection):
        await mongo_store.set("payments", [{"id": "pay-1"}])

        collection.replace_one.assert_awaited_once_with(
            {"_id": "payments"},
            {"_id": "payments", "value": [{"id": "pay-1"}]},
            upsert=True
        )

    @pytest.mark.asyncio
    async def test_read_failure_raises_storage_error(self, mongo_store, collection):
        collection.find_one.side_effect = ServerSelectionTimeoutError("no primary")

        with pytest.raises(StorageError) as exc_info:
            await mongo_store.get("users", [])
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_write_failure_sends_no_notification(self, mongo_store, collection):
        events = []
        mongo_store.subscribe(DATA_CHANGED_EVENT, events.append)
        collection.replace_one.side_effect = ServerSelectionTimeoutError("no primary")

        with pytest.raises(StorageError):
            await mongo_store.update("users", lambda rows: rows + [{}], default=[])
        assert events == []

    @pytest.mark.asyncio
    async def test_delete(self, mongo_store, collection):
        await mongo_store.delete("credits:u1")
        collection.delete_one.assert_awaited_once_with({"_id": "credits:u1"})

    def test_uses_kv_collection(self):
        db = MagicMock()
        MongoKeyValueStore(db)
        db.__getitem__.assert_called_with(KV_COLLECTION)
