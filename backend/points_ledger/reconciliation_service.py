"""
Reconciliation of asynchronous gateway notifications.

The gateway delivers each notification at least once and may deliver
copies concurrently. The order's pending -> paid compare-and-set decides
which delivery credits the balance; every other delivery is a no-op.

Steps before the compare-and-set fail closed (no money appears). Steps
after it fail open: the credit or ledger row that could not be written
is logged as an integrity warning for reconciliation.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from pymongo.errors import PyMongoError

from .alipay_service import AlipayGateway, load_alipay_settings
from .config import ACCEPTED_TRADE_STATUSES, PAYMENT_TYPE_PAY_FOR_DOWNLINE
from .exceptions import IntegrityWarning, LedgerError
from .ledger_service import LedgerService
from .models import NotificationOutcome
from .order_service import OrderService

logger = logging.getLogger(__name__)

DOWNLINE_METADATA_KEYS = (
    "payer_profile_id",
    "payer_user_id",
    "payer_username",
    "beneficiary_profile_id",
    "beneficiary_user_id",
    "beneficiary_username",
    "payer_rate",
    "beneficiary_rate",
    "rate_profit",
)


def recharge_description(order: Dict[str, Any]) -> str:
    metadata = order.get("metadata") or {}
    out_trade_no = order["out_trade_no"]

    if metadata.get("payment_type") == PAYMENT_TYPE_PAY_FOR_DOWNLINE:
        payer = metadata.get("payer_username") or metadata.get("payer_user_id") or "agent"
        beneficiary = metadata.get("beneficiary_username") or metadata.get("beneficiary_user_id") or "downline user"
        return f"Agent top-up - {payer} for {beneficiary} (order: {out_trade_no})"

    return f"Alipay top-up (order: {out_trade_no})"


def recharge_metadata(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    metadata = order.get("metadata") or {}
    if metadata.get("payment_type") != PAYMENT_TYPE_PAY_FOR_DOWNLINE:
        return None

    audit = {"payment_type": PAYMENT_TYPE_PAY_FOR_DOWNLINE}
    for key in DOWNLINE_METADATA_KEYS:
        audit[key] = metadata.get(key)
    return audit


class ReconciliationService:
    """Applies verified gateway notifications to orders and balances."""

    def __init__(self, db, gateway: Optional[AlipayGateway] = None):
        self.db = db
        self.gateway = gateway
        self.ledger = LedgerService(db)
        self.orders = OrderService(db)

    async def _verifier(self) -> Optional[AlipayGateway]:
        if self.gateway is not None:
            return self.gateway
        return AlipayGateway.for_notifications(await load_alipay_settings(self.db))

    async def apply_notification(self, params: Dict[str, Any]) -> NotificationOutcome:
        """
        Apply one notification delivery.

        Returns:
            The outcome; its gateway_reply is the body to answer with
        """
        gateway = await self._verifier()
        if gateway is None:
            logger.error("Alipay public key is not configured, cannot verify notification")
            return NotificationOutcome.REJECTED

        out_trade_no = params.get("out_trade_no")

        if not gateway.verify_notification(params):
            logger.error(f"Alipay notification signature invalid (out_trade_no={out_trade_no})")
            return NotificationOutcome.REJECTED

        trade_status = params.get("trade_status")
        if trade_status not in ACCEPTED_TRADE_STATUSES:
            logger.info(f"Ignoring notification for {out_trade_no} with trade_status={trade_status}")
            return NotificationOutcome.IGNORED

        if not out_trade_no:
            logger.error("Alipay notification without out_trade_no")
            return NotificationOutcome.REJECTED

        order = await self.orders.find_order(out_trade_no)
        if not order:
            logger.warning(f"Order {out_trade_no} not found, asking gateway to retry")
            return NotificationOutcome.RETRY

        if order.get("status") == "paid":
            logger.info(f"Order {out_trade_no} already paid, duplicate notification")
            return NotificationOutcome.DUPLICATE

        try:
            paid_amount = Decimal(str(params.get("total_amount")))
        except InvalidOperation:
            paid_amount = None

        if paid_amount is None or not paid_amount.is_finite() or paid_amount != Decimal(order["amount"]):
            logger.error(
                f"PAYMENT_AMOUNT_MISMATCH | out_trade_no={out_trade_no} "
                f"| expected={order['amount']} | received={params.get('total_amount')}"
            )
            return NotificationOutcome.REJECTED

        won = await self.orders.mark_paid(out_trade_no, dict(params))
        if not won:
            logger.info(f"Order {out_trade_no} settled by a concurrent notification")
            return NotificationOutcome.DUPLICATE

        logger.info(f"Order {out_trade_no} marked paid")
        await self._credit_order(order)
        return NotificationOutcome.ACCEPTED

    async def _credit_order(self, order: Dict[str, Any]) -> None:
        """Phase 2: credit the beneficiary and write the recharge row."""
        profile_id = order["profile_id"]
        out_trade_no = order["out_trade_no"]
        points_milli = order["points_amount_milli"]

        try:
            new_balance = await self.ledger.credit_points(profile_id, points_milli)
        except (LedgerError, PyMongoError) as e:
            await self.ledger.flag_integrity_warning(
                IntegrityWarning(
                    "credit_failed",
                    f"order paid but {points_milli} milli-points not credited: {e}",
                    {"profile_id": profile_id, "reference_id": out_trade_no}
                ),
                queue=False
            )
            return

        entry = self.ledger.build_entry(
            profile_id=profile_id,
            transaction_type="recharge",
            amount_milli=points_milli,
            balance_after_milli=new_balance,
            description=recharge_description(order),
            reference_id=out_trade_no,
            metadata=recharge_metadata(order)
        )
        await self.ledger.record_transaction(entry)

        logger.info(f"Order {out_trade_no}: credited {points_milli} milli-points to profile {profile_id}")
