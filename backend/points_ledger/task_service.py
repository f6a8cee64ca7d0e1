"""
Task Dispatch Service

Submits rewriting jobs to the vendors and charges for them.

CRITICAL ordering:
1. Validate and price the job
2. Check the balance (no vendor call if it does not cover the cost)
3. Submit to the vendor
4. Debit only after the vendor accepted the job and returned a task id

Every submission leaves one row in task_submission_attempts. Failed
submissions carry a sentinel reference there and never touch the ledger.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pymongo.errors import PyMongoError

from .config import JOB_TYPES, MAX_TEXT_LENGTH, PLATFORMS, POINTS_PER_1000_CHARS, TASK_LABELS, VENDORS
from .credential_cache import CredentialCache
from .exceptions import (
    InsufficientBalanceError,
    IntegrityWarning,
    NotFoundError,
    ValidationError,
    VendorRejectedError,
    VendorTimeoutError,
)
from .ledger_service import LedgerService
from .money import milli_to_float, task_cost, to_milli
from .vendor_clients import VendorClient, build_vendor_client, route_vendor

logger = logging.getLogger(__name__)

# attempts the vendor accepted; a debit_failed task still runs at the vendor
POLLABLE_OUTCOMES = ("accepted", "debit_failed")


def validate_task_request(text: Any, platform: Any, job_type: Any) -> None:
    if not text or not isinstance(text, str):
        raise ValidationError("Text content is required")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"Text content cannot exceed {MAX_TEXT_LENGTH} characters")
    if platform not in PLATFORMS:
        raise ValidationError(f"platform must be one of: {', '.join(PLATFORMS)}")
    if job_type not in JOB_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(JOB_TYPES)}")


class TaskService:
    """Service for submitting and polling vendor tasks."""

    def __init__(
        self,
        db,
        credentials: Optional[CredentialCache] = None,
        client_factory: Optional[Callable[[str], VendorClient]] = None
    ):
        self.db = db
        self.ledger = LedgerService(db)
        self.credentials = credentials or CredentialCache(db)
        self.client_factory = client_factory or build_vendor_client

    async def _record_attempt(
        self,
        profile_id: str,
        service: str,
        platform: str,
        job_type: str,
        text_length: int,
        cost_milli: int,
        outcome: str,
        reference: str,
        error: Optional[str] = None
    ) -> None:
        try:
            await self.db.task_submission_attempts.insert_one({
                "attempt_id": uuid.uuid4().hex,
                "profile_id": profile_id,
                "service": service,
                "platform": platform,
                "job_type": job_type,
                "text_length": text_length,
                "cost_milli": cost_milli,
                "outcome": outcome,
                "reference": reference,
                "error": error,
                "created_at": datetime.now(timezone.utc).isoformat()
            })
        except PyMongoError as e:
            logger.warning(f"Failed to log submission attempt {reference} for profile {profile_id}: {e}")

    async def submit(
        self,
        user: Dict[str, Any],
        text: Any,
        platform: Any,
        job_type: Any
    ) -> Dict[str, Any]:
        """
        Submit a rewriting job.

        Returns:
            Receipt {taskId, service, cost, newBalance}

        Raises:
            ValidationError, InsufficientBalanceError, ConfigurationError,
            UpstreamError (VendorRejectedError / VendorTimeoutError)
        """
        validate_task_request(text, platform, job_type)

        profile = await self.ledger.get_profile_by_user(user["user_id"])
        profile_id = profile["id"]

        text_length = len(text)
        cost = task_cost(text_length)
        cost_milli = to_milli(cost)

        balance_milli = profile.get("points_balance_milli", 0)
        if balance_milli < cost_milli:
            raise InsufficientBalanceError(
                f"Not enough points: balance {milli_to_float(balance_milli)}, required {float(cost)}",
                details={"points_balance": milli_to_float(balance_milli), "required": float(cost)}
            )

        service = route_vendor(platform, job_type)
        client = self.client_factory(service)
        token = await self.credentials.get_token(client)

        try:
            task_id = await client.submit(token, text, platform, job_type)
        except VendorTimeoutError as e:
            await self._record_attempt(
                profile_id, service, platform, job_type, text_length, cost_milli,
                "vendor_timeout", e.details.get("reference", f"{service}-timeout"), e.message
            )
            raise
        except VendorRejectedError as e:
            await self._record_attempt(
                profile_id, service, platform, job_type, text_length, cost_milli,
                "vendor_rejected", e.details.get("reference", f"{service}-request-failed"), e.message
            )
            raise

        logger.info(f"Task {task_id} accepted by {service} for profile {profile_id} ({text_length} chars)")

        try:
            new_balance = await self.ledger.debit_points(profile_id, cost_milli)
        except InsufficientBalanceError as e:
            await self._record_attempt(
                profile_id, service, platform, job_type, text_length, cost_milli,
                "debit_failed", task_id, e.message
            )
            await self.ledger.flag_integrity_warning(
                IntegrityWarning(
                    "debit_failed",
                    f"vendor accepted task but {cost_milli} milli-points could not be debited",
                    {"profile_id": profile_id, "reference_id": task_id}
                ),
                queue=False
            )
            raise

        await self._record_attempt(
            profile_id, service, platform, job_type, text_length, cost_milli, "accepted", task_id
        )

        label = TASK_LABELS[(platform, job_type)]
        entry = self.ledger.build_entry(
            profile_id=profile_id,
            transaction_type="spend",
            amount_milli=-cost_milli,
            balance_after_milli=new_balance,
            description=f"{label} ({text_length} chars)",
            reference_id=task_id,
            is_successful=True,
            metadata={"service": service, "platform": platform, "job_type": job_type, "text_length": text_length}
        )
        await self.ledger.record_transaction(entry)

        return {
            "taskId": task_id,
            "service": service,
            "cost": float(cost),
            "newBalance": milli_to_float(new_balance)
        }

    async def poll_result(self, user: Dict[str, Any], task_id: Any, service: Any) -> Dict[str, Any]:
        """
        Ask the vendor for a task's status.

        Only tasks the caller submitted, and the vendor accepted, can be polled.
        A failed task flips the caller's spend row to is_successful=false.
        Nothing is refunded here; the caller claims the refund separately.
        """
        if not task_id or not isinstance(task_id, str):
            raise ValidationError("taskId is required")
        if service not in VENDORS:
            raise ValidationError(f"service must be one of: {', '.join(VENDORS)}")

        profile = await self.ledger.get_profile_by_user(user["user_id"])
        owned = await self.db.task_submission_attempts.find_one({
            "profile_id": profile["id"],
            "service": service,
            "reference": task_id,
            "outcome": {"$in": list(POLLABLE_OUTCOMES)}
        })
        if not owned:
            raise NotFoundError("Task not found")

        client = self.client_factory(service)
        token = await self.credentials.get_token(client)
        status = await client.status(token, task_id)

        if status.status == "failed":
            await self.ledger.mark_spend_failed(profile["id"], task_id)

        return {
            "status": status.status,
            "progress": status.progress,
            "result": status.result_text,
            "queuePosition": status.queue_position,
            "created_at": status.created_at,
            "updated_at": status.updated_at
        }

    async def points_summary(self, user: Dict[str, Any]) -> Dict[str, Any]:
        profile = await self.ledger.get_profile_by_user(user["user_id"])
        return {
            "points_balance": milli_to_float(profile.get("points_balance_milli", 0)),
            "task_cost": POINTS_PER_1000_CHARS,
            "cost_per_1000_chars": POINTS_PER_1000_CHARS
        }
