"""
External credential cache tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from points_ledger.credential_cache import CredentialCache, credential_key, parse_credential
from points_ledger.exceptions import UpstreamError

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeVendor:
    """Counts logins; fails when told to."""

    name = "reduceai"

    def __init__(self, token="fresh-token", fail=False):
        self.token = token
        self.fail = fail
        self.logins = 0

    async def login(self):
        self.logins += 1
        if self.fail:
            raise UpstreamError("reduceai login failed: HTTP 500")
        return self.token


async def store(db, token, expires_at):
    await db.external_credentials.insert_one({
        "key": credential_key("reduceai"),
        "token": token,
        "expires_at": expires_at,
    })


class TestParseCredential:

    def test_iso_string(self):
        parsed = parse_credential({"token": "t", "expires_at": "2025-03-01T20:00:00+00:00"})
        assert parsed == {"token": "t", "expires_at": datetime(2025, 3, 1, 20, tzinfo=timezone.utc)}

    def test_naive_datetime_is_utc(self):
        parsed = parse_credential({"token": "t", "expires_at": datetime(2025, 3, 1, 20)})
        assert parsed["expires_at"].tzinfo == timezone.utc

    @pytest.mark.parametrize("doc", [
        None,
        {},
        {"token": "t"},
        {"expires_at": "2025-03-01T20:00:00+00:00"},
        {"token": "t", "expires_at": "next tuesday"},
        {"token": "t", "expires_at": 12345},
    ])
    def test_unusable_documents(self, doc):
        assert parse_credential(doc) is None


class TestGetToken:

    @pytest.fixture
    def cache(self, db):
        return CredentialCache(db, clock=lambda: NOW)

    @pytest.mark.asyncio
    async def test_miss_logs_in_and_stores(self, db, cache):
        vendor = FakeVendor()

        token = await cache.get_token(vendor)

        assert token == "fresh-token"
        assert vendor.logins == 1
        stored = await db.external_credentials.find_one({"key": "external-token:reduceai"})
        assert stored["token"] == "fresh-token"
        assert stored["expires_at"] == (NOW + timedelta(hours=8)).isoformat()

    @pytest.mark.asyncio
    async def test_hit_skips_login(self, db, cache):
        await store(db, "cached-token", (NOW + timedelta(minutes=5)).isoformat())
        vendor = FakeVendor()

        assert await cache.get_token(vendor) == "cached-token"
        assert vendor.logins == 0

    @pytest.mark.asyncio
    async def test_expired_entry_is_refreshed(self, db, cache):
        await store(db, "old-token", NOW.isoformat())
        vendor = FakeVendor()

        assert await cache.get_token(vendor) == "fresh-token"
        assert vendor.logins == 1
        assert await db.external_credentials.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_unparsable_entry_is_refreshed(self, db, cache):
        await store(db, "old-token", "garbage")
        vendor = FakeVendor()

        assert await cache.get_token(vendor) == "fresh-token"

    @pytest.mark.asyncio
    async def test_second_call_uses_stored_token(self, db, cache):
        vendor = FakeVendor()

        await cache.get_token(vendor)
        await cache.get_token(vendor)

        assert vendor.logins == 1

    @pytest.mark.asyncio
    async def test_login_failure_leaves_entry(self, db, cache):
        expired = (NOW - timedelta(hours=1)).isoformat()
        await store(db, "old-token", expired)

        with pytest.raises(UpstreamError) as exc:
            await cache.get_token(FakeVendor(fail=True))

        assert exc.value.message == "External service login failed, please try again later"
        assert exc.value.details == {"service": "reduceai"}
        stored = await db.external_credentials.find_one({"key": "external-token:reduceai"})
        assert stored["token"] == "old-token"
        assert stored["expires_at"] == expired
