"""
Points Ledger API Routes

Endpoints:
- GET /api/points/balance - Current points balance
- GET /api/points/transactions - Ledger history (paginated)
- GET /api/points/recharges - Recharge records (admin: all, agent: downline)
- POST /api/points/refund - Refund a failed task spend
- POST /api/ai/reduce-task - Submit a rewriting task
- POST /api/ai/result - Poll a task
- POST /api/ai/points - Balance and task pricing
- POST /api/alipay/pay - Self top-up checkout (HTML form)
- POST /api/alipay/pay-for-downline - Agent/admin top-up for a downline user
- POST /api/alipay/notify - Alipay asynchronous notification
- GET /api/alipay/orders - Caller's orders
- GET /api/alipay/orders/{out_trade_no} - Order status
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, PlainTextResponse
from pymongo.errors import PyMongoError

from database import db
from utils.auth import get_current_user
from points_ledger.alipay_service import AlipayGateway, load_alipay_settings
from points_ledger.checkout_service import CheckoutService
from points_ledger.config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from points_ledger.exceptions import LedgerError, NotFoundError, PermissionDeniedError
from points_ledger.ledger_service import LedgerService
from points_ledger.models import (
    BalanceResponse,
    CheckoutRequest,
    DownlineCheckoutRequest,
    NotificationOutcome,
    OrderListResponse,
    PointsSummaryResponse,
    RechargeListResponse,
    RefundRequest,
    RefundResponse,
    TaskResult,
    TaskResultRequest,
    TaskSubmitReceipt,
    TaskSubmitRequest,
    TransactionListResponse,
)
from points_ledger.money import milli_to_float
from points_ledger.order_service import OrderService, serialize_order
from points_ledger.reconciliation_service import ReconciliationService
from points_ledger.task_service import TaskService

logger = logging.getLogger(__name__)

points_router = APIRouter(prefix="/points", tags=["Points"])
ai_router = APIRouter(prefix="/ai", tags=["AI Tasks"])
alipay_router = APIRouter(prefix="/alipay", tags=["Alipay"])


def http_error(e: LedgerError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_dict())


# ==================== POINTS ENDPOINTS ====================

@points_router.get("/balance", response_model=BalanceResponse)
async def get_balance(user: dict = Depends(get_current_user)):
    """Get current user's points balance."""
    ledger = LedgerService(db)
    try:
        balance = await ledger.get_balance_milli(user["user_id"])
    except LedgerError as e:
        raise http_error(e)
    return {"points_balance": milli_to_float(balance)}


@points_router.get("/transactions", response_model=TransactionListResponse)
async def get_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    transaction_type: Optional[str] = Query(None, description="recharge, spend or transfer"),
    user: dict = Depends(get_current_user)
):
    """
    Get the caller's ledger rows, newest first.
    """
    ledger = LedgerService(db)
    try:
        return await ledger.list_transactions(user["profile_id"], page, limit, transaction_type)
    except LedgerError as e:
        raise http_error(e)


@points_router.get("/recharges", response_model=RechargeListResponse)
async def get_recharges(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_current_user)
):
    """
    Get recharge records.

    Admins see every recharge; agents see recharges of users they invited.
    """
    ledger = LedgerService(db)
    try:
        return await ledger.list_recharges(user, page, limit)
    except LedgerError as e:
        raise http_error(e)


@points_router.post("/refund", response_model=RefundResponse)
async def refund_transaction(body: RefundRequest, user: dict = Depends(get_current_user)):
    """
    Refund a spend the vendor reported as failed.

    Each transaction can be refunded once; a second call answers 409.
    """
    ledger = LedgerService(db)
    try:
        return await ledger.refund(user["user_id"], body.transaction_id)
    except LedgerError as e:
        raise http_error(e)


# ==================== TASK ENDPOINTS ====================

@ai_router.post("/reduce-task", response_model=TaskSubmitReceipt)
async def submit_reduce_task(body: TaskSubmitRequest, user: dict = Depends(get_current_user)):
    """
    Submit a rewriting task.

    Points are debited only after the vendor accepted the task.
    """
    service = TaskService(db)
    try:
        return await service.submit(user, body.text, body.platform, body.type)
    except LedgerError as e:
        raise http_error(e)


@ai_router.post("/result", response_model=TaskResult)
async def get_task_result(body: TaskResultRequest, user: dict = Depends(get_current_user)):
    """Poll a task. Failed tasks become refundable."""
    service = TaskService(db)
    try:
        return await service.poll_result(user, body.taskId, body.service)
    except LedgerError as e:
        raise http_error(e)


@ai_router.post("/points", response_model=PointsSummaryResponse)
async def get_points_summary(user: dict = Depends(get_current_user)):
    service = TaskService(db)
    try:
        return await service.points_summary(user)
    except LedgerError as e:
        raise http_error(e)


# ==================== ALIPAY ENDPOINTS ====================

@alipay_router.post("/pay", response_class=HTMLResponse)
async def alipay_pay(body: CheckoutRequest, user: dict = Depends(get_current_user)):
    """
    Create a top-up order and return the auto-submitting Alipay form.
    """
    service = CheckoutService(db)
    try:
        result = await service.create_checkout(user, body.total_amount, body.subject, body.return_url)
    except LedgerError as e:
        raise http_error(e)

    return HTMLResponse(content=result["html"], headers={"X-Out-Trade-No": result["out_trade_no"]})


@alipay_router.post("/pay-for-downline", response_class=HTMLResponse)
async def alipay_pay_for_downline(body: DownlineCheckoutRequest, user: dict = Depends(get_current_user)):
    """
    Agent/admin pays for a downline user's top-up.

    Points are computed with the payer's rate and credited to the target user.
    """
    service = CheckoutService(db)
    try:
        result = await service.create_downline_checkout(
            user, body.target_user_id, body.total_amount, body.subject, body.return_url
        )
    except LedgerError as e:
        raise http_error(e)

    return HTMLResponse(content=result["html"], headers={"X-Out-Trade-No": result["out_trade_no"]})


@alipay_router.post("/notify", response_class=PlainTextResponse)
async def alipay_notify(request: Request):
    """
    Handle Alipay asynchronous notifications.

    Called by Alipay, not by users. The body is form-encoded and the reply
    must be the plain text "success" (stop retrying) or "fail" (retry later).
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    logger.info(
        f"Received Alipay notification: out_trade_no={params.get('out_trade_no')} "
        f"trade_status={params.get('trade_status')}"
    )

    service = ReconciliationService(db)
    try:
        outcome = await service.apply_notification(params)
    except (LedgerError, PyMongoError) as e:
        logger.error(f"Alipay notification for {params.get('out_trade_no')} not applied: {e}")
        outcome = NotificationOutcome.RETRY

    logger.info(f"Alipay notification {params.get('out_trade_no')}: {outcome.value}")
    return PlainTextResponse(outcome.gateway_reply)


@alipay_router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    user: dict = Depends(get_current_user)
):
    """Get the caller's payment orders, newest first."""
    orders = OrderService(db)
    try:
        return await orders.list_orders_for_profile(user["profile_id"], page, limit)
    except LedgerError as e:
        raise http_error(e)


@alipay_router.get("/orders/{out_trade_no}")
async def get_order_status(
    out_trade_no: str,
    gateway: bool = Query(False, description="Admin only: include the gateway's trade query answer"),
    user: dict = Depends(get_current_user)
):
    """
    Get status of a payment order.

    Visible to the order's beneficiary, the paying agent and admins.
    """
    orders = OrderService(db)
    is_admin = user.get("role") == "admin"

    try:
        order = await orders.get_order(out_trade_no)

        payer_profile_id = (order.get("metadata") or {}).get("payer_profile_id")
        if not is_admin and user["profile_id"] not in (order["profile_id"], payer_profile_id):
            raise NotFoundError(f"Order not found: {out_trade_no}")

        response = serialize_order(order)
        response["metadata"].pop("notification", None)

        if gateway:
            if not is_admin:
                raise PermissionDeniedError("Admin access required")
            settings = await load_alipay_settings(db)
            response["gateway"] = await AlipayGateway.for_checkout(settings).query(out_trade_no)
    except LedgerError as e:
        raise http_error(e)

    return response
