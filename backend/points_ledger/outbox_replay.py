"""
Ledger outbox replay.

Re-applies ledger rows whose write failed after the balance already
changed (LEDGER_INTEGRITY_WARNING in the logs). Safe to run repeatedly:
a row that reached the ledger by another path is marked applied.

Usage:
    python -m points_ledger.outbox_replay
    python -m points_ledger.outbox_replay --limit 500
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

from points_ledger.ledger_service import LedgerService

logger = logging.getLogger(__name__)


async def run_replay(limit: int) -> int:
    load_dotenv(Path(__file__).parent.parent / '.env')

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("Missing MONGO_URL or DB_NAME environment variables")
        return 1

    client = AsyncIOMotorClient(mongo_url)
    try:
        result = await LedgerService(client[db_name]).replay_outbox(limit=limit)
    finally:
        client.close()

    logger.info(f"Applied {result['applied']}, failed {result['failed']}, still pending {result['remaining']}")
    return 0 if result["failed"] == 0 else 2


def main():
    parser = argparse.ArgumentParser(description="Replay pending ledger outbox rows")
    parser.add_argument('--limit', type=int, default=100, help='Maximum rows to replay in this run')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    sys.exit(asyncio.run(run_replay(args.limit)))


if __name__ == "__main__":
    main()
