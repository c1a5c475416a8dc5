"""
Key-value storage for settlement state

Every record set (users, ledger, payments, methods, per-user credits) lives
under a single key. Mutations go through a per-key asyncio.Lock so readers
always see whole snapshots, and each mutating call emits exactly one
change notification to subscribers.

Implementations:
- MongoKeyValueStore: motor collection `kv_store`, documents {_id: key, value}
- InMemoryKeyValueStore: process-local dict, used by tests and demos
"""

import asyncio
import copy
from contextlib import asynccontextmanager
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from .config import DATA_CHANGED_EVENT
from .errors import StorageError

logger = logging.getLogger(__name__)

KV_COLLECTION = "kv_store"


class KeyedLocks:
    """
    One asyncio.Lock per key, created on demand and dropped once no task
    holds or waits on it.

    Usage:
        locks = KeyedLocks()
        async with locks.hold("payment-id"):
            ...
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]


class KeyValueStore:
    """
    Base store with locking and pub/sub. Subclasses implement _read/_write/_remove.

    Usage:
        store = InMemoryKeyValueStore()
        await store.update("payments", lambda rows: rows + [row], default=[])
    """

    def __init__(self):
        self._locks = KeyedLocks()
        self._subscribers: Dict[str, List[Callable[[str], Any]]] = {}

    # ==================== BACKEND HOOKS ====================

    async def _read(self, key: str, default: Any) -> Any:
        raise NotImplementedError

    async def _write(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def _remove(self, key: str) -> None:
        raise NotImplementedError

    # ==================== PUBLIC API ====================

    async def get(self, key: str, default: Any = None) -> Any:
        return await self._read(key, default)

    async def set(self, key: str, value: Any) -> None:
        async with self._locks.hold(key):
            await self._write(key, value)
        self.notify(DATA_CHANGED_EVENT)

    async def update(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """
        Atomic read-modify-write of one key.

        `fn` receives a private copy of the current value and returns the new
        value. If `fn` raises, nothing is written and no notification is sent.
        """
        async with self._locks.hold(key):
            current = await self._read(key, default)
            new_value = fn(copy.deepcopy(current))
            await self._write(key, new_value)
        self.notify(DATA_CHANGED_EVENT)
        return new_value

    async def delete(self, key: str) -> None:
        async with self._locks.hold(key):
            await self._remove(key)
        self.notify(DATA_CHANGED_EVENT)

    def subscribe(self, event: str, callback: Callable[[str], Any]) -> None:
        self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: Callable[[str], Any]) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def notify(self, event: str) -> None:
        for callback in list(self._subscribers.get(event, [])):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber for '{event}' failed: {e}")


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Values are deep-copied on the way in and out."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._data: Dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def _read(self, key: str, default: Any) -> Any:
        if key not in self._data:
            return copy.deepcopy(default)
        return copy.deepcopy(self._data[key])

    async def _write(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def _remove(self, key: str) -> None:
        self._data.pop(key, None)


class MongoKeyValueStore(KeyValueStore):
    """Store backed by a single MongoDB collection."""

    def __init__(self, db, collection_name: str = KV_COLLECTION):
        super().__init__()
        self.db = db
        self.collection = db[collection_name]

    async def _read(self, key: str, default: Any) -> Any:
        try:
            doc = await self.collection.find_one({"_id": key})
        except PyMongoError as e:
            logger.error(f"Storage read failed for key '{key}': {e}")
            raise StorageError(f"Storage unavailable while reading '{key}'.")
        if doc is None:
            return copy.deepcopy(default)
        return doc.get("value", copy.deepcopy(default))

    async def _write(self, key: str, value: Any) -> None:
        try:
            await self.collection.replace_one(
                {"_id": key},
                {"_id": key, "value": value},
                upsert=True
            )
        except PyMongoError as e:
            logger.error(f"Storage write failed for key '{key}': {e}")
            raise StorageError(f"Storage unavailable while writing '{key}'.")

    async def _remove(self, key: str) -> None:
        try:
            await self.collection.delete_one({"_id": key})
        except PyMongoError as e:
            logger.error(f"Storage delete failed for key '{key}': {e}")
            raise StorageError(f"Storage unavailable while deleting '{key}'.")
