"""
Tests for settlement database initialization.

Uses a mocked motor database; no MongoDB connection is made.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from settlement.config import PAYMENT_METHODS_KEY, PLAN_PRICE_KEY
from settlement.db_init import (
    INIT_VERSION,
    META_COLLECTION,
    check_environment,
    initialize,
)
from settlement.store import KV_COLLECTION


def make_db(existing_collections=(), existing_keys=()):
    collections = {}
    for name in (KV_COLLECTION, META_COLLECTION):
        collection = MagicMock()
        collection.update_one = AsyncMock()
        collections[name] = collection

    async def find_one(query):
        return {"_id": query["_id"], "value": "x"} if query["_id"] in existing_keys else None

    collections[KV_COLLECTION].find_one = AsyncMock(side_effect=find_one)

    db = MagicMock()
    db.__getitem__.side_effect = lambda name: collections[name]
    db.list_collection_names = AsyncMock(return_value=list(existing_collections))
    db.create_collection = AsyncMock()
    return db, collections


class TestCheckEnvironment:
    def test_development_allowed(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        allowed, message = check_environment()
        assert allowed
        assert "development" in message

    def test_production_requires_confirmation(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.delenv("SETTLEMENT_INIT_CONFIRM", raising=False)

        allowed, message = check_environment()

        assert not allowed
        assert "SETTLEMENT_INIT_CONFIRM=YES" in message

    def test_production_confirmed(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("SETTLEMENT_INIT_CONFIRM", "YES")

        allowed, _ = check_environment()
        assert allowed


class TestInitialize:
    @pytest.mark.asyncio
    async def test_fresh_database(self):
        db, collections = make_db()

        results = await initialize(db)

        assert db.create_collection.await_count == 2
        seeded = [call.args[0]["_id"] for call in collections[KV_COLLECTION].update_one.await_args_list]
        assert seeded == [PAYMENT_METHODS_KEY, PLAN_PRICE_KEY]
        first_seed = collections[KV_COLLECTION].update_one.await_args_list[0]
        assert "$setOnInsert" in first_seed.args[1]
        assert first_seed.kwargs["upsert"] is True

        stamp = collections[META_COLLECTION].update_one.await_args
        assert stamp.args[1]["$set"]["version"] == INIT_VERSION
        assert any("[CREATE]" in line for line in results)

    @pytest.mark.asyncio
    async def test_rerun_touches_nothing(self):
        db, collections = make_db(
            existing_collections=[KV_COLLECTION, META_COLLECTION],
            existing_keys=[PAYMENT_METHODS_KEY, PLAN_PRICE_KEY],
        )

        results = await initialize(db)

        db.create_collection.assert_not_awaited()
        collections[KV_COLLECTION].update_one.assert_not_awaited()
        assert sum("[SKIP]" in line for line in results) == 4

    @pytest.mark.asyncio
    async def test_dry_run(self):
        db, collections = make_db()

        results = await initialize(db, dry_run=True)

        db.create_collection.assert_not_awaited()
        collections[KV_COLLECTION].update_one.assert_not_awaited()
        collections[META_COLLECTION].update_one.assert_not_awaited()
        assert all("[DRY-RUN]" in line for line in results)
