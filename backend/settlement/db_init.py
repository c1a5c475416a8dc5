"""
Settlement Database Initialization Script

RULES:
1. Environment Guard - production requires SETTLEMENT_INIT_CONFIRM=YES
2. Idempotent - running multiple times must not duplicate or overwrite anything
3. No destructive operations - no dropping, deleting, truncation
4. Seeds only missing keys (default payment methods, plan price)
5. Dry-run mode - --dry-run prints what it would do
6. Version stamp - tracks init version

Usage:
    CLI one-off: python -m settlement.db_init
    With dry-run: python -m settlement.db_init --dry-run
    In production: ENVIRONMENT=production SETTLEMENT_INIT_CONFIRM=YES python -m settlement.db_init
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Tuple

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid

from .config import (
    DEFAULT_PAYMENT_METHODS,
    DEFAULT_PLAN_PRICE_USD,
    PAYMENT_METHODS_KEY,
    PLAN_PRICE_KEY,
)
from .store import KV_COLLECTION

logger = logging.getLogger(__name__)

# Version tracking
INIT_VERSION = "v1.0.0"

META_COLLECTION = "settlement_meta"

REQUIRED_COLLECTIONS = [
    KV_COLLECTION,
    META_COLLECTION,
]

# Keys seeded when absent: (key, value)
SEED_KEYS: List[Tuple[str, Any]] = [
    (PAYMENT_METHODS_KEY, DEFAULT_PAYMENT_METHODS),
    (PLAN_PRICE_KEY, DEFAULT_PLAN_PRICE_USD),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    env = os.environ.get("ENVIRONMENT", "development")

    if env.lower() == "production":
        confirm = os.environ.get("SETTLEMENT_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: SETTLEMENT_INIT_CONFIRM=YES\n"
                f"Current value: SETTLEMENT_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {env}"


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
    """Create a collection if it doesn't exist."""
    existing = await db.list_collection_names()

    if collection_name in existing:
        return f"  [SKIP] Collection '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create collection '{collection_name}'"

    try:
        await db.create_collection(collection_name)
        return f"  [CREATE] Created collection '{collection_name}'"
    except CollectionInvalid:
        return f"  [SKIP] Collection '{collection_name}' already exists (race)"


async def seed_key_if_missing(db, key: str, value: Any, dry_run: bool = False) -> str:
    """Insert a store key only if no document holds it yet."""
    collection = db[KV_COLLECTION]

    if await collection.find_one({"_id": key}) is not None:
        return f"  [SKIP] Key '{key}' already present"

    if dry_run:
        return f"  [DRY-RUN] Would seed key '{key}'"

    await collection.update_one(
        {"_id": key},
        {"$setOnInsert": {"value": value}},
        upsert=True
    )
    return f"  [CREATE] Seeded key '{key}'"


async def update_version_stamp(db, dry_run: bool = False) -> str:
    """Update or create version stamp document."""
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "settlement_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def initialize(db, dry_run: bool = False) -> List[str]:
    """Run every init step against an open database handle."""
    results = []
    for collection_name in REQUIRED_COLLECTIONS:
        results.append(await create_collection_if_not_exists(db, collection_name, dry_run))
    for key, value in SEED_KEYS:
        results.append(await seed_key_if_missing(db, key, value, dry_run))
    results.append(await update_version_stamp(db, dry_run))
    return results


async def run_init(dry_run: bool = False):
    """Run the database initialization."""
    from dotenv import load_dotenv

    env_path = Path(__file__).parent.parent / '.env'
    load_dotenv(env_path)

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        sys.exit(1)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        sys.exit(1)

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except Exception as e:
        logger.error(f"MongoDB connection failed: {e}")
        sys.exit(1)

    for line in await initialize(db, dry_run):
        logger.info(line)

    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Settlement DB init completed")
    logger.info("=" * 50)


def main():
    """Main entry point."""
    import argparse

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description="Settlement Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m settlement.db_init

    # Dry run (no changes)
    python -m settlement.db_init --dry-run

    # Production
    ENVIRONMENT=production SETTLEMENT_INIT_CONFIRM=YES python -m settlement.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )

    args = parser.parse_args()

    asyncio.run(run_init(dry_run=args.dry_run))


if __name__ == "__main__":
    main()
