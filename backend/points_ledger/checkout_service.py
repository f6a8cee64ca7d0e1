"""
Checkout: turn a top-up request into a pending order and a signed page-pay form.

Two flows:
- self top-up, points at the payer's own rate
- pay-for-downline, an agent or admin pays for another profile; points use
  the PAYER's rate and the rate difference is recorded as profit metadata
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .alipay_service import AlipayGateway, load_alipay_settings
from .config import (
    ALIPAY_PRODUCT_CODE,
    DEFAULT_RATE,
    DEFAULT_SUBJECT,
    MAX_TOPUP_AMOUNT,
    PAY_FOR_OTHERS_ROLES,
    PAYMENT_TYPE_PAY_FOR_DOWNLINE,
)
from .exceptions import NotFoundError, PermissionDeniedError, ValidationError
from .ledger_service import LedgerService
from .money import milli_to_float, points_for_payment, rate_difference, to_decimal, to_milli
from .order_service import OrderService

logger = logging.getLogger(__name__)

AMOUNT_ERROR = "Top-up amount must be a whole number of at least 1"
NO_POINTS_ERROR = "Top-up amount is too small to buy any points at this rate"


def parse_amount(value: Any) -> int:
    """
    Accept a positive whole number of currency units.

    Integers, integral floats and numeric strings are accepted; booleans,
    fractions, anything below 1 and anything above MAX_TOPUP_AMOUNT are not.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(AMOUNT_ERROR)

    if isinstance(value, int):
        amount = value
    elif isinstance(value, (float, str, Decimal)):
        try:
            parsed = to_decimal(value.strip() if isinstance(value, str) else value)
        except (TypeError, ValueError):
            raise ValidationError(AMOUNT_ERROR)
        if not parsed.is_finite() or parsed != parsed.to_integral_value():
            raise ValidationError(AMOUNT_ERROR)
        amount = int(parsed)
    else:
        raise ValidationError(AMOUNT_ERROR)

    if amount < 1:
        raise ValidationError(AMOUNT_ERROR)
    if amount > MAX_TOPUP_AMOUNT:
        raise ValidationError(f"Top-up amount cannot exceed {MAX_TOPUP_AMOUNT}")
    return amount


def format_amount(amount: int) -> str:
    return f"{amount}.00"


def points_milli_for_order(amount: int, rate: float) -> int:
    """Points an order will credit, refusing orders that would credit nothing."""
    milli = to_milli(points_for_payment(amount, rate))
    if milli <= 0:
        raise ValidationError(NO_POINTS_ERROR, details={"amount": amount, "rate": rate})
    return milli


def profile_rate(profile: Dict[str, Any]) -> float:
    rate = profile.get("rate")
    return float(rate) if rate is not None else DEFAULT_RATE


class CheckoutService:
    """Builds checkouts for self top-ups and pay-for-downline top-ups."""

    def __init__(self, db, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.db = db
        self.ledger = LedgerService(db)
        self.orders = OrderService(db)
        self.transport = transport

    async def _gateway(self, return_url_key: str = "return_url"):
        settings = await load_alipay_settings(self.db)
        gateway = AlipayGateway.for_checkout(settings, transport=self.transport)
        return gateway, settings.get(return_url_key) or settings.get("return_url")

    async def create_checkout(
        self,
        user: Dict[str, Any],
        total_amount: Any,
        subject: Optional[str] = None,
        return_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Self top-up.

        Gateway settings are resolved before the order is written, so a
        misconfigured gateway leaves no pending order behind.
        """
        amount = parse_amount(total_amount)
        profile = await self.ledger.get_profile_by_user(user["user_id"])

        gateway, default_return_url = await self._gateway()

        rate = profile_rate(profile)
        points_milli = points_milli_for_order(amount, rate)

        order = await self.orders.create_order(
            profile_id=profile["id"],
            amount=amount,
            points_amount_milli=points_milli,
            rate=rate,
            metadata={"subject": subject}
        )

        html_form = gateway.page_pay(
            {
                "out_trade_no": order["out_trade_no"],
                "product_code": ALIPAY_PRODUCT_CODE,
                "total_amount": format_amount(amount),
                "subject": subject or DEFAULT_SUBJECT,
            },
            return_url=return_url or default_return_url
        )

        logger.info(f"Checkout {order['out_trade_no']}: profile={profile['id']} amount={amount} points_milli={points_milli}")
        return {
            "out_trade_no": order["out_trade_no"],
            "profile_id": profile["id"],
            "amount": amount,
            "points_amount": milli_to_float(order["points_amount_milli"]),
            "html": html_form
        }

    async def create_downline_checkout(
        self,
        user: Dict[str, Any],
        target_user_id: Optional[str],
        total_amount: Any,
        subject: Optional[str] = None,
        return_url: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Agent/admin pays for another user's top-up.

        Agents may only pay for profiles they invited; admins for anyone.
        """
        role = (user.get("role") or "").lower()
        if role not in PAY_FOR_OTHERS_ROLES:
            raise PermissionDeniedError("Only agents and admins can top up other users")

        amount = parse_amount(total_amount)

        if not target_user_id or not isinstance(target_user_id, str):
            raise ValidationError("target_user_id is required")

        payer = await self.ledger.get_profile_by_user(user["user_id"])

        target = await self.db.profiles.find_one({"user_id": target_user_id}, {"_id": 0})
        if not target:
            raise NotFoundError("Target user not found")

        if role == "agent" and target.get("invited_by") != payer["id"]:
            raise PermissionDeniedError("Target user is not in your downline")

        gateway, default_return_url = await self._gateway("downline_return_url")

        payer_rate = profile_rate(payer)
        beneficiary_rate = profile_rate(target)
        points_milli = points_milli_for_order(amount, payer_rate)

        metadata = {
            "subject": subject,
            "payment_type": PAYMENT_TYPE_PAY_FOR_DOWNLINE,
            "payer_profile_id": payer["id"],
            "payer_user_id": user["user_id"],
            "payer_username": payer.get("username"),
            "payer_rate": payer_rate,
            "beneficiary_profile_id": target["id"],
            "beneficiary_user_id": target_user_id,
            "beneficiary_username": target.get("username"),
            "beneficiary_rate": beneficiary_rate,
            "rate_profit": float(rate_difference(payer_rate, beneficiary_rate)),
        }

        order = await self.orders.create_order(
            profile_id=target["id"],
            amount=amount,
            points_amount_milli=points_milli,
            rate=payer_rate,
            metadata=metadata
        )

        beneficiary_name = target.get("username") or target_user_id
        html_form = gateway.page_pay(
            {
                "out_trade_no": order["out_trade_no"],
                "product_code": ALIPAY_PRODUCT_CODE,
                "total_amount": format_amount(amount),
                "subject": subject or f"{DEFAULT_SUBJECT} for {beneficiary_name}",
            },
            return_url=return_url or default_return_url
        )

        logger.info(
            f"Downline checkout {order['out_trade_no']}: payer={payer['id']} "
            f"beneficiary={target['id']} amount={amount} points_milli={points_milli}"
        )
        return {
            "out_trade_no": order["out_trade_no"],
            "profile_id": target["id"],
            "amount": amount,
            "points_amount": milli_to_float(order["points_amount_milli"]),
            "html": html_form
        }
