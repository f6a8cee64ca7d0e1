"""
Points Ledger Data Models

Pydantic models for ledger API payloads.
Stored documents keep points as integer thousandths (*_milli fields);
API responses expose them as 3-decimal numbers.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Literal
from enum import Enum


# ==================== BALANCE MODELS ====================

class BalanceResponse(BaseModel):
    points_balance: float


class PointsSummaryResponse(BaseModel):
    points_balance: float
    task_cost: int
    cost_per_1000_chars: int


# ==================== LEDGER MODELS ====================

class PointsTransaction(BaseModel):
    """Ledger row. Amounts are never rewritten; only is_successful flips once."""
    id: str
    profile_id: str
    transaction_type: Literal["recharge", "spend", "transfer"]
    amount: float
    balance_after: float
    description: str = ""
    reference_id: Optional[str] = None
    is_successful: bool = True
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None


class Pagination(BaseModel):
    current_page: int
    per_page: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class TransactionListResponse(BaseModel):
    transactions: List[PointsTransaction]
    pagination: Pagination


class RefundRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, description="ID of the failed spend transaction")


class RefundResponse(BaseModel):
    success: bool
    points_balance: float
    refund_transaction_id: str


# ==================== RECHARGE LISTING ====================

class ProfileSummary(BaseModel):
    id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    role: str = "user"
    invited_by: Optional[str] = None
    invited_by_username: Optional[str] = None


class RechargeRecord(BaseModel):
    id: str
    profile_id: str
    amount: float
    balance_after: float
    description: str = ""
    reference_id: Optional[str] = None
    is_successful: bool = True
    created_at: Optional[str] = None
    profile: Optional[ProfileSummary] = None


class RechargeListResponse(BaseModel):
    records: List[RechargeRecord]
    pagination: Pagination
    scope: Literal["all", "downline"]


# ==================== ORDER MODELS ====================

class PaymentOrder(BaseModel):
    """One row per gateway checkout attempt"""
    out_trade_no: str
    profile_id: str
    amount: int
    points_amount: float
    rate: Optional[float] = None
    status: Literal["pending", "paid"] = "pending"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[str] = None
    paid_at: Optional[str] = None


class OrderListResponse(BaseModel):
    orders: List[PaymentOrder]
    pagination: Pagination


class CheckoutRequest(BaseModel):
    total_amount: Any = Field(None, description="Whole currency units, at least 1")
    subject: Optional[str] = None
    return_url: Optional[str] = None


class DownlineCheckoutRequest(CheckoutRequest):
    target_user_id: Optional[str] = Field(None, description="Beneficiary user ID")


class NotificationOutcome(str, Enum):
    """Result of applying a gateway notification"""
    ACCEPTED = "accepted"      # credited by this delivery
    DUPLICATE = "duplicate"    # already paid, or another delivery won the lock
    IGNORED = "ignored"        # trade status that does not settle the order
    RETRY = "retry"            # order not visible yet; gateway should re-deliver
    REJECTED = "rejected"      # bad signature or amount mismatch

    @property
    def gateway_reply(self) -> str:
        if self in (NotificationOutcome.RETRY, NotificationOutcome.REJECTED):
            return "fail"
        return "success"


# ==================== TASK MODELS ====================

class TaskSubmitRequest(BaseModel):
    text: Optional[str] = None
    platform: Optional[str] = None
    type: Optional[str] = None


class TaskSubmitReceipt(BaseModel):
    taskId: str
    service: str
    cost: float
    newBalance: float


class TaskResultRequest(BaseModel):
    taskId: Optional[str] = None
    service: Optional[str] = None


class TaskResult(BaseModel):
    status: Literal["processing", "completed", "failed"]
    progress: int = 0
    result: Optional[str] = None
    queuePosition: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class VendorTaskStatus(BaseModel):
    """Vendor status normalized to processing/completed/failed"""
    status: Literal["processing", "completed", "failed"]
    progress: int = 0
    result_text: Optional[str] = None
    queue_position: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
