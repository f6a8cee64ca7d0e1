"""
Points Ledger Database Initialization Script

RULES:
1. Environment Guard - production requires APP_ENV and LEDGER_INIT_CONFIRM=YES
2. Idempotent - running multiple times must not duplicate anything
3. No destructive operations - no dropping, deleting, truncation
4. Safe index creation - handles "index already exists" gracefully
5. Dry-run mode - --dry-run prints what it would do
6. Version stamp - tracks init version

The unique indexes are load-bearing: out_trade_no uniqueness and the
(profile_id, reference_id, transaction_type) ledger key are what make
order creation and ledger writes idempotent.

Usage:
    CLI one-off: python -m points_ledger.db_init
    With dry-run: python -m points_ledger.db_init --dry-run
    In production: APP_ENV=production LEDGER_INIT_CONFIRM=YES python -m points_ledger.db_init
"""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure, PyMongoError

logger = logging.getLogger(__name__)

INIT_VERSION = "v1.0.0"

REQUIRED_COLLECTIONS = [
    "profiles",
    "points_transactions",
    "payment_orders",
    "external_credentials",
    "task_submission_attempts",
    "ledger_outbox",
    "ledger_meta"  # For version tracking
]

# Index definitions: (collection, index_spec, options)
REQUIRED_INDEXES = [
    # profiles
    ("profiles", [("id", 1)], {"unique": True, "name": "idx_profile_id_unique"}),
    ("profiles", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
    ("profiles", [("invited_by", 1)], {"name": "idx_invited_by"}),

    # points_transactions: one row per economic event
    ("points_transactions", [("id", 1)], {"unique": True, "name": "idx_transaction_id_unique"}),
    (
        "points_transactions",
        [("profile_id", 1), ("reference_id", 1), ("transaction_type", 1)],
        {"unique": True, "name": "idx_profile_reference_type_unique"}
    ),
    ("points_transactions", [("profile_id", 1), ("created_at", -1)], {"name": "idx_profile_created"}),
    ("points_transactions", [("transaction_type", 1), ("created_at", -1)], {"name": "idx_type_created"}),

    # payment_orders
    ("payment_orders", [("out_trade_no", 1)], {"unique": True, "name": "idx_out_trade_no_unique"}),
    ("payment_orders", [("profile_id", 1), ("created_at", -1)], {"name": "idx_order_profile_created"}),

    # external_credentials
    ("external_credentials", [("key", 1)], {"unique": True, "name": "idx_credential_key_unique"}),

    # task_submission_attempts
    ("task_submission_attempts", [("profile_id", 1), ("created_at", -1)], {"name": "idx_attempt_profile_created"}),
    ("task_submission_attempts", [("profile_id", 1), ("reference", 1)], {"name": "idx_attempt_profile_reference"}),

    # ledger_outbox
    ("ledger_outbox", [("outbox_id", 1)], {"unique": True, "name": "idx_outbox_id_unique"}),
    ("ledger_outbox", [("status", 1), ("created_at", 1)], {"name": "idx_outbox_status_created"}),
]


def check_environment() -> Tuple[bool, str]:
    """
    Check environment and confirm if production execution is allowed.

    Returns:
        Tuple of (allowed, message)
    """
    app_env = os.environ.get("APP_ENV", "development")

    if app_env.lower() == "production":
        confirm = os.environ.get("LEDGER_INIT_CONFIRM", "")
        if confirm != "YES":
            return False, (
                "PRODUCTION ENVIRONMENT DETECTED!\n"
                "To run init in production, set: LEDGER_INIT_CONFIRM=YES\n"
                f"Current value: LEDGER_INIT_CONFIRM='{confirm}'"
            )

    return True, f"Environment: {app_env}"


async def ensure_indexes(db) -> None:
    """Create every required index. Safe to call on each startup."""
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        await db[collection_name].create_index(index_spec, **options)


async def create_collection_if_not_exists(db, collection_name: str, dry_run: bool = False) -> str:
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


async def create_index_if_not_exists(
    db,
    collection_name: str,
    index_spec: List[Tuple],
    options: dict,
    dry_run: bool = False
) -> str:
    collection = db[collection_name]
    index_name = options["name"]

    existing_indexes = await collection.index_information()

    if index_name in existing_indexes:
        return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists"

    if dry_run:
        return f"  [DRY-RUN] Would create index '{index_name}' on '{collection_name}'"

    try:
        await collection.create_index(index_spec, **options)
        return f"  [CREATE] Created index '{index_name}' on '{collection_name}'"
    except OperationFailure as e:
        if "already exists" in str(e).lower():
            return f"  [SKIP] Index '{index_name}' on '{collection_name}' already exists (race)"
        raise


async def update_version_stamp(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] Would update version stamp to {INIT_VERSION}"

    await db.ledger_meta.update_one(
        {"_id": "points_ledger_init"},
        {
            "$set": {
                "version": INIT_VERSION,
                "applied_at": datetime.now(timezone.utc).isoformat()
            }
        },
        upsert=True
    )
    return f"  [UPDATE] Version stamp updated to {INIT_VERSION}"


async def run_init(dry_run: bool = False) -> int:
    """Run the database initialization. Returns a process exit code."""
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, env_message = check_environment()
    logger.info(env_message)

    if not allowed:
        logger.error("Init blocked due to environment guard")
        return 1

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')

    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    logger.info(f"Database: {db_name}")
    logger.info(f"Dry Run: {dry_run}")
    logger.info("-" * 50)

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        await client.admin.command('ping')
        logger.info("MongoDB connection: OK")
    except PyMongoError as e:
        logger.error(f"MongoDB connection failed: {e}")
        client.close()
        return 1

    logger.info("=== Collections ===")
    for collection_name in REQUIRED_COLLECTIONS:
        logger.info(await create_collection_if_not_exists(db, collection_name, dry_run))

    logger.info("=== Indexes ===")
    for collection_name, index_spec, options in REQUIRED_INDEXES:
        logger.info(await create_index_if_not_exists(db, collection_name, index_spec, options, dry_run))

    logger.info("=== Version Stamp ===")
    logger.info(await update_version_stamp(db, dry_run))

    client.close()

    logger.info("=" * 50)
    logger.info("SUCCESS: Points ledger DB init completed")
    logger.info("=" * 50)
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Points Ledger Database Initialization",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Development (default)
    python -m points_ledger.db_init

    # Dry run (no changes)
    python -m points_ledger.db_init --dry-run

    # Production
    APP_ENV=production LEDGER_INIT_CONFIRM=YES python -m points_ledger.db_init
        """
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Print what would be done without making changes'
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
