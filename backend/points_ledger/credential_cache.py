"""
External credential cache.

Vendor bearer tokens live in the external_credentials collection as
{token, expires_at}. A token is used while now < expires_at; the first
caller to see it missing or expired logs in and stores a fresh token valid
for CREDENTIAL_LIFETIME. Concurrent callers may each log in; the last write
wins and every token obtained is valid.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .config import CREDENTIAL_KEY_PREFIX, CREDENTIAL_LIFETIME
from .exceptions import UpstreamError
from .vendor_clients import VendorClient

logger = logging.getLogger(__name__)


def credential_key(vendor: str) -> str:
    return f"{CREDENTIAL_KEY_PREFIX}{vendor}"


def parse_credential(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stored document -> {token, expires_at: datetime}, or None if unusable."""
    if not doc or not doc.get("token") or not doc.get("expires_at"):
        return None

    expires_at = doc["expires_at"]
    if isinstance(expires_at, str):
        try:
            expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparsable expiry for {doc.get('key')}, treating as missing")
            return None
    if not isinstance(expires_at, datetime):
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)

    return {"token": doc["token"], "expires_at": expires_at}


class CredentialCache:
    """Lazily refreshed vendor tokens shared through MongoDB."""

    def __init__(self, db, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_token(self, client: VendorClient) -> str:
        """
        Return a usable token for the client's vendor, logging in if needed.

        Raises:
            UpstreamError if the vendor login fails; the cached entry is left as is
        """
        key = credential_key(client.name)
        now = self.clock()

        cached = parse_credential(await self.db.external_credentials.find_one({"key": key}, {"_id": 0}))
        if cached and now < cached["expires_at"]:
            return cached["token"]

        try:
            token = await client.login()
        except UpstreamError as e:
            logger.error(f"Failed to refresh credential for {client.name}: {e.message}")
            raise UpstreamError(
                "External service login failed, please try again later",
                details={"service": client.name}
            )

        expires_at = now + CREDENTIAL_LIFETIME
        await self.db.external_credentials.update_one(
            {"key": key},
            {"$set": {
                "token": token,
                "expires_at": expires_at.isoformat(),
                "updated_at": now.isoformat()
            }},
            upsert=True
        )

        logger.info(f"Refreshed credential for {client.name}, valid until {expires_at.isoformat()}")
        return token
