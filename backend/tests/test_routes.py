"""
API route tests.

The app runs against an in-memory database; startup hooks are not run.
Most tests override get_current_user; TestAuth exercises real bearer tokens.
"""

import asyncio
import uuid
from unittest.mock import AsyncMock

import jwt
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import PyMongoError

import database
import points_ledger.routes as routes
from points_ledger.db_init import ensure_indexes
from points_ledger.order_service import OrderService
from server import app
from utils.auth import get_current_user

from conftest import insert_profile

JWT_SECRET = "points-ledger-test-secret-0123456789abcdef"


@pytest.fixture
def api_db(monkeypatch):
    database_ = AsyncMongoMockClient()[f"points_ledger_api_{uuid.uuid4().hex[:8]}"]
    asyncio.run(ensure_indexes(database_))
    monkeypatch.setattr(routes, "db", database_)
    monkeypatch.setattr(database, "db", database_)
    return database_


@pytest.fixture
def seed(api_db):
    def _seed(user_id, **kwargs):
        return asyncio.run(insert_profile(api_db, user_id, **kwargs))
    return _seed


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def login_as(profile):
    app.dependency_overrides[get_current_user] = lambda: {
        "user_id": profile["user_id"],
        "profile_id": profile["id"],
        "username": profile["username"],
        "email": profile["email"],
        "role": profile["role"],
    }


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuth:

    @pytest.fixture(autouse=True)
    def jwt_env(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
        monkeypatch.delenv("JWT_AUDIENCE", raising=False)

    def test_missing_token(self, client, api_db):
        assert client.get("/api/points/balance").status_code == 401

    def test_bad_token(self, client, api_db):
        response = client.get("/api/points/balance", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_wrong_secret(self, client, api_db, seed):
        seed("alice")
        token = jwt.encode({"sub": "alice"}, "another-secret-0123456789abcdef-0123", algorithm="HS256")

        response = client.get("/api/points/balance", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401

    def test_valid_token(self, client, api_db, seed):
        seed("alice", balance_milli=94500)
        token = jwt.encode({"sub": "alice"}, JWT_SECRET, algorithm="HS256")

        response = client.get("/api/points/balance", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        assert response.json() == {"points_balance": 94.5}

    def test_unknown_subject(self, client, api_db):
        token = jwt.encode({"sub": "ghost"}, JWT_SECRET, algorithm="HS256")
        response = client.get("/api/points/balance", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401


class TestPointsRoutes:

    def test_transactions_empty(self, client, seed):
        login_as(seed("alice"))

        response = client.get("/api/points/transactions?page=1&limit=10")

        assert response.status_code == 200
        body = response.json()
        assert body["transactions"] == []
        assert body["pagination"]["total"] == 0
        assert body["pagination"]["has_next_page"] is False

    def test_transactions_limit_bounds(self, client, seed):
        login_as(seed("alice"))
        assert client.get("/api/points/transactions?limit=101").status_code == 422

    def test_refund_unknown_transaction(self, client, seed):
        login_as(seed("alice"))

        response = client.post("/api/points/refund", json={"transaction_id": "nope"})

        assert response.status_code == 404
        assert response.json()["detail"]["error_code"] == "NOT_FOUND"

    def test_recharges_refused_for_users(self, client, seed):
        login_as(seed("alice"))

        response = client.get("/api/points/recharges")

        assert response.status_code == 403
        assert response.json()["detail"]["error_code"] == "PERMISSION_DENIED"

    def test_recharges_for_admin(self, client, seed):
        login_as(seed("root", role="admin"))

        response = client.get("/api/points/recharges")

        assert response.status_code == 200
        assert response.json()["scope"] == "all"


class TestTaskRoutes:

    def test_empty_text_is_400(self, client, seed):
        login_as(seed("alice", balance_milli=100000))

        response = client.post("/api/ai/reduce-task", json={"text": "", "platform": "zhiwang", "type": "reduce-ai-rate"})

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    def test_insufficient_points_is_402(self, client, seed):
        login_as(seed("alice", balance_milli=0))

        response = client.post(
            "/api/ai/reduce-task",
            json={"text": "x" * 2000, "platform": "zhiwang", "type": "reduce-ai-rate"}
        )

        assert response.status_code == 402
        assert response.json()["detail"]["details"] == {"points_balance": 0.0, "required": 6.0}

    def test_points_summary(self, client, seed):
        login_as(seed("alice", balance_milli=12345))

        response = client.post("/api/ai/points")

        assert response.status_code == 200
        assert response.json() == {"points_balance": 12.345, "task_cost": 3, "cost_per_1000_chars": 3}

    def test_result_requires_service(self, client, seed):
        login_as(seed("alice"))
        response = client.post("/api/ai/result", json={"taskId": "t-1", "service": "nobody"})
        assert response.status_code == 400


class TestAlipayRoutes:

    def test_pay_returns_form(self, client, seed, api_db, alipay_env):
        login_as(seed("alice", rate=1.5))

        response = client.post("/api/alipay/pay", json={"total_amount": 100})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "alipaysubmit" in response.text

        out_trade_no = response.headers["X-Out-Trade-No"]
        order = asyncio.run(api_db.payment_orders.find_one({"out_trade_no": out_trade_no}))
        assert order["points_amount_milli"] == 150000

    def test_pay_invalid_amount(self, client, seed, alipay_env):
        login_as(seed("alice"))
        response = client.post("/api/alipay/pay", json={"total_amount": 1.5})
        assert response.status_code == 400

    def test_pay_without_configuration(self, client, seed, no_alipay_env):
        login_as(seed("alice"))

        response = client.post("/api/alipay/pay", json={"total_amount": 10})

        assert response.status_code == 500
        assert response.json()["detail"]["error_code"] == "CONFIGURATION_ERROR"

    def test_pay_for_downline_refused_for_users(self, client, seed, alipay_env):
        alice = seed("alice")
        seed("bob", invited_by=alice["id"])
        login_as(alice)

        response = client.post("/api/alipay/pay-for-downline", json={"target_user_id": "bob", "total_amount": 10})

        assert response.status_code == 403

    def test_notify_bad_signature(self, client, api_db, alipay_env):
        response = client.post("/api/alipay/notify", data={
            "out_trade_no": "PAY1",
            "trade_status": "TRADE_SUCCESS",
            "total_amount": "10.00",
            "sign": "AAAA",
        })

        assert response.status_code == 200
        assert response.text == "fail"

    def test_notify_store_failure_asks_for_retry(self, client, api_db, alipay_env, monkeypatch):
        apply = AsyncMock(side_effect=PyMongoError("primary stepped down"))
        monkeypatch.setattr(routes.ReconciliationService, "apply_notification", apply)

        response = client.post("/api/alipay/notify", data={"out_trade_no": "PAY1", "trade_status": "TRADE_SUCCESS"})

        assert response.text == "fail"
        apply.assert_awaited_once()

    def test_notify_credits_order(self, client, seed, api_db, alipay_env, gateway_sign):
        alice = seed("alice")
        order = asyncio.run(OrderService(api_db).create_order(alice["id"], 10, 15000, 1.5))
        params = gateway_sign({
            "out_trade_no": order["out_trade_no"],
            "trade_status": "TRADE_SUCCESS",
            "total_amount": "10.00",
            "sign_type": "RSA2",
        })

        first = client.post("/api/alipay/notify", data=params)
        second = client.post("/api/alipay/notify", data=params)

        assert first.text == "success"
        assert second.text == "success"
        profile = asyncio.run(api_db.profiles.find_one({"id": alice["id"]}))
        assert profile["points_balance_milli"] == 15000

    def test_order_visible_to_owner_only(self, client, seed, api_db):
        alice = seed("alice")
        mallory = seed("mallory")
        order = asyncio.run(OrderService(api_db).create_order(alice["id"], 10, 10000, 1.0))

        login_as(alice)
        response = client.get(f"/api/alipay/orders/{order['out_trade_no']}")
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["points_amount"] == 10.0

        login_as(mallory)
        response = client.get(f"/api/alipay/orders/{order['out_trade_no']}")
        assert response.status_code == 404

    def test_gateway_query_is_admin_only(self, client, seed, api_db):
        alice = seed("alice")
        order = asyncio.run(OrderService(api_db).create_order(alice["id"], 10, 10000, 1.0))
        login_as(alice)

        response = client.get(f"/api/alipay/orders/{order['out_trade_no']}?gateway=true")

        assert response.status_code == 403

    def test_list_orders(self, client, seed, api_db):
        alice = seed("alice")
        asyncio.run(OrderService(api_db).create_order(alice["id"], 10, 10000, 1.0))
        login_as(alice)

        response = client.get("/api/alipay/orders")

        assert response.status_code == 200
        body = response.json()
        assert len(body["orders"]) == 1
        assert body["pagination"]["total"] == 1
