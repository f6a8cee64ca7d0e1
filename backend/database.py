"""
MongoDB handle shared by the points ledger API and its maintenance scripts.

Balances, ledger rows, payment orders and vendor credentials all live in
one database. The process refuses to start without MONGO_URL and DB_NAME
so it never falls back to a default (possibly shared) database.
"""
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from typing import List, Optional, Tuple
from dotenv import load_dotenv
from pymongo.errors import ConfigurationError, PyMongoError

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

REQUIRED_ENV_VARS = {
    "MONGO_URL": "MongoDB connection string holding the ledger (e.g., mongodb://localhost:27017)",
    "DB_NAME": "Ledger database name (e.g., points_ledger)"
}

CLIENT_OPTIONS = {
    "maxPoolSize": 50,
    "minPoolSize": 5,
    "connectTimeoutMS": 5000,
    "serverSelectionTimeoutMS": 5000,
    "retryWrites": True
}


def missing_env_vars() -> List[str]:
    return [name for name in REQUIRED_ENV_VARS if not os.environ.get(name)]


def validate_required_env_vars():
    """
    Raise ValueError listing every missing database variable.
    """
    missing = missing_env_vars()
    if not missing:
        return

    lines = "\n".join(f"  - {name}: {REQUIRED_ENV_VARS[name]}" for name in missing)
    raise ValueError(
        "\n" + "=" * 60 + "\n"
        "Points ledger cannot start: database settings are missing\n"
        + "=" * 60 + "\n"
        + lines + "\n\n"
        "Set them in backend/.env (see backend/.env.example) or the environment.\n"
        + "=" * 60
    )


def build_client(mongo_url: str) -> AsyncIOMotorClient:
    try:
        return AsyncIOMotorClient(mongo_url, **CLIENT_OPTIONS)
    except (ConfigurationError, ValueError, TypeError) as e:
        raise ValueError(f"Invalid MONGO_URL for the points ledger: {e}")


validate_required_env_vars()

client = build_client(os.environ['MONGO_URL'])
db = client[os.environ['DB_NAME']]


async def check_db_connection() -> Tuple[bool, Optional[str]]:
    """
    Ping the server and list the ledger database's collections.

    Returns:
        (True, None) when reachable, otherwise (False, error message)
    """
    try:
        await client.admin.command('ping')
        collections = await db.list_collection_names()
    except PyMongoError as e:
        error_msg = f"Ledger database {os.environ['DB_NAME']} unreachable: {e}"
        logger.error(error_msg)
        return False, error_msg

    logger.info(f"Ledger database {os.environ['DB_NAME']} reachable ({len(collections)} collections)")
    return True, None
