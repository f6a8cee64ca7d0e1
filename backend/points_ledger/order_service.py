"""
Payment order store.

One row per checkout attempt, keyed by out_trade_no. An order moves
pending -> paid exactly once; mark_paid is a compare-and-set on status.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from .config import DEFAULT_PAGE_SIZE
from .exceptions import ConflictError, NotFoundError
from .ledger_service import build_pagination, validate_pagination
from .money import milli_to_float

logger = logging.getLogger(__name__)

MAX_TRADE_NO_ATTEMPTS = 3


def generate_out_trade_no(now: Optional[datetime] = None) -> str:
    """PAY + UTC timestamp + 4 random digits, e.g. PAY202401011200001234."""
    now = now or datetime.now(timezone.utc)
    return f"PAY{now.strftime('%Y%m%d%H%M%S')}{secrets.randbelow(10000):04d}"


def serialize_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "out_trade_no": order["out_trade_no"],
        "profile_id": order["profile_id"],
        "amount": order["amount"],
        "points_amount": milli_to_float(order.get("points_amount_milli", 0)),
        "rate": order.get("rate"),
        "status": order.get("status"),
        "metadata": order.get("metadata") or {},
        "created_at": order.get("created_at"),
        "paid_at": order.get("paid_at"),
    }


class OrderService:
    """Service for payment orders."""

    def __init__(self, db):
        self.db = db

    async def create_order(
        self,
        profile_id: str,
        amount: int,
        points_amount_milli: int,
        rate: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Persist a pending order under a fresh out_trade_no.

        The unique index on out_trade_no rejects collisions; a new number is
        drawn up to MAX_TRADE_NO_ATTEMPTS times.
        """
        now = datetime.now(timezone.utc).isoformat()

        for attempt in range(1, MAX_TRADE_NO_ATTEMPTS + 1):
            order = {
                "out_trade_no": generate_out_trade_no(),
                "profile_id": profile_id,
                "amount": amount,
                "points_amount_milli": points_amount_milli,
                "rate": rate,
                "status": "pending",
                "metadata": metadata or {},
                "created_at": now,
                "updated_at": now,
                "paid_at": None
            }
            try:
                await self.db.payment_orders.insert_one(dict(order))
            except DuplicateKeyError:
                logger.warning(f"out_trade_no collision on attempt {attempt}: {order['out_trade_no']}")
                continue

            logger.info(f"Created order {order['out_trade_no']} for profile {profile_id}: amount={amount}")
            return order

        raise ConflictError("Could not allocate a unique order number")

    async def find_order(self, out_trade_no: str) -> Optional[Dict[str, Any]]:
        return await self.db.payment_orders.find_one({"out_trade_no": out_trade_no}, {"_id": 0})

    async def get_order(self, out_trade_no: str) -> Dict[str, Any]:
        order = await self.find_order(out_trade_no)
        if not order:
            raise NotFoundError(f"Order not found: {out_trade_no}")
        return order

    async def mark_paid(self, out_trade_no: str, notification: Dict[str, Any]) -> bool:
        """
        Move an order from pending to paid.

        Returns:
            True if this call made the transition, False if the order was no
            longer pending (another delivery won).
        """
        now = datetime.now(timezone.utc).isoformat()
        result = await self.db.payment_orders.update_one(
            {"out_trade_no": out_trade_no, "status": "pending"},
            {
                "$set": {
                    "status": "paid",
                    "paid_at": now,
                    "updated_at": now,
                    "metadata.notification": notification
                }
            }
        )
        return result.modified_count == 1

    async def list_orders_for_profile(
        self,
        profile_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """Paginated orders for one profile, newest first."""
        validate_pagination(page, limit)

        query = {"profile_id": profile_id}
        total = await self.db.payment_orders.count_documents(query)
        cursor = self.db.payment_orders.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        orders = await cursor.to_list(length=limit)

        return {
            "orders": [serialize_order(order) for order in orders],
            "pagination": build_pagination(page, limit, total)
        }
