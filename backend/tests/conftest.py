"""
Shared fixtures for points ledger tests.

Every test gets a fresh in-memory MongoDB (mongomock-motor) with the
production indexes, so unique-key idempotency behaves as in production.
"""

import os

# database.py validates these on import
os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "points_ledger_test")
os.environ.setdefault("JWT_SECRET", "points-ledger-test-secret-0123456789abcdef")

import base64
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from mongomock_motor import AsyncMongoMockClient

from points_ledger.alipay_service import build_verify_string
from points_ledger.db_init import ensure_indexes

ALIPAY_ENV_VARS = (
    "ALIPAY_ENV",
    "ALIPAY_APP_ID",
    "ALIPAY_PRIVATE_KEY",
    "ALIPAY_PUBLIC_KEY",
    "ALIPAY_ASYNC_PUBLIC_KEY",
    "ALIPAY_GATEWAY",
    "ALIPAY_NOTIFY_URL",
    "ALIPAY_RETURN_URL",
    "ALIPAY_DOWNLINE_RETURN_URL",
)

TEST_APP_ID = "2021000000000001"
TEST_GATEWAY = "https://openapi-sandbox.dl.alipaydev.com/gateway.do"


async def insert_profile(db, user_id, balance_milli=0, rate=1.0, role="user", invited_by=None, username=None):
    now = datetime.now(timezone.utc).isoformat()
    profile = {
        "id": f"profile-{user_id}",
        "user_id": user_id,
        "username": username or user_id,
        "email": f"{user_id}@example.com",
        "role": role,
        "rate": rate,
        "invited_by": invited_by,
        "points_balance_milli": balance_milli,
        "created_at": now,
        "updated_at": now
    }
    await db.profiles.insert_one(dict(profile))
    return profile


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database with production indexes."""
    client = AsyncMongoMockClient()
    database = client[f"points_ledger_test_{uuid.uuid4().hex[:8]}"]
    await ensure_indexes(database)
    yield database


@pytest.fixture
def make_profile(db):
    """Factory: await make_profile("alice", balance_milli=100000, rate=1.5)"""
    async def _make(user_id, **kwargs):
        return await insert_profile(db, user_id, **kwargs)
    return _make


@pytest.fixture(scope="session")
def rsa_keys():
    """An RSA-2048 key pair shared by merchant signing and gateway notifications."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")

    def bare(pem):
        return "".join(line for line in pem.splitlines() if not line.startswith("-----"))

    return {
        "private_key": private_key,
        "private_pem": private_pem,
        "public_pem": public_pem,
        "private_bare": bare(private_pem),
        "public_bare": bare(public_pem),
    }


@pytest.fixture
def gateway_sign(rsa_keys):
    """Sign notification params the way the gateway does (sign/sign_type excluded)."""
    def _sign(params):
        content = build_verify_string(params).encode("utf-8")
        signature = rsa_keys["private_key"].sign(content, padding.PKCS1v15(), hashes.SHA256())
        signed = dict(params)
        signed["sign"] = base64.b64encode(signature).decode("ascii")
        return signed
    return _sign


@pytest.fixture
def alipay_env(monkeypatch, rsa_keys):
    """Gateway configured through the environment."""
    for name in ALIPAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ALIPAY_ENV", "sandbox")
    monkeypatch.setenv("ALIPAY_APP_ID", TEST_APP_ID)
    monkeypatch.setenv("ALIPAY_PRIVATE_KEY", rsa_keys["private_pem"])
    monkeypatch.setenv("ALIPAY_PUBLIC_KEY", rsa_keys["public_pem"])
    monkeypatch.setenv("ALIPAY_NOTIFY_URL", "https://api.example.com/api/alipay/notify")
    monkeypatch.setenv("ALIPAY_RETURN_URL", "https://app.example.com/recharge")
    monkeypatch.setenv("ALIPAY_DOWNLINE_RETURN_URL", "https://app.example.com/proxy")


@pytest.fixture
def no_alipay_env(monkeypatch):
    for name in ALIPAY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
