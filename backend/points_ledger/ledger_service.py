"""
Points Ledger Service

Core balance operations including:
- Profile lookups
- Atomic credits and non-negative debits
- Ledger rows keyed by (profile_id, reference_id, transaction_type)
- Failed-spend marking and at-most-once refunds
- Outbox for ledger rows that could not be written

CRITICAL: Balances only change through single conditional updates.
A debit matches only while points_balance_milli >= cost, so a negative
balance is impossible under any interleaving of requests.
"""

import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .config import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, PAY_FOR_OTHERS_ROLES
from .exceptions import (
    AlreadyRefundedError,
    InsufficientBalanceError,
    IntegrityWarning,
    LedgerError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .money import milli_to_float

logger = logging.getLogger(__name__)

REFUND_MARKER = "(points refunded)"


def refund_reference(transaction_id: str) -> str:
    """Reserved reference of the refund row for a spend transaction."""
    return f"refund:{transaction_id}"


def validate_pagination(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("page must be at least 1")
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")


def build_pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if total > 0 else 0
    return {
        "current_page": page,
        "per_page": limit,
        "total": total,
        "total_pages": total_pages,
        "has_next_page": total_pages > 0 and page < total_pages,
        "has_prev_page": page > 1,
    }


def serialize_transaction(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Stored ledger row -> API shape with 3-decimal amounts."""
    return {
        "id": doc["id"],
        "profile_id": doc["profile_id"],
        "transaction_type": doc["transaction_type"],
        "amount": milli_to_float(doc.get("amount_milli", 0)),
        "balance_after": milli_to_float(doc.get("balance_after_milli", 0)),
        "description": doc.get("description", ""),
        "reference_id": doc.get("reference_id"),
        "is_successful": doc.get("is_successful", True),
        "metadata": doc.get("metadata"),
        "created_at": doc.get("created_at"),
    }


class LedgerService:
    """Service for points balances and the transaction ledger."""

    def __init__(self, db):
        self.db = db

    # ==================== PROFILES ====================

    async def get_profile(self, profile_id: str) -> Dict[str, Any]:
        profile = await self.db.profiles.find_one({"id": profile_id}, {"_id": 0})
        if not profile:
            raise NotFoundError(f"Profile not found: {profile_id}")
        return profile

    async def get_profile_by_user(self, user_id: str) -> Dict[str, Any]:
        profile = await self.db.profiles.find_one({"user_id": user_id}, {"_id": 0})
        if not profile:
            raise NotFoundError("User profile not found")
        return profile

    # ==================== BALANCE CHANGES ====================

    async def credit_points(self, profile_id: str, milli: int) -> int:
        """
        Atomically add points to a profile.

        Returns:
            The balance (thousandths) written by this increment
        """
        if milli <= 0:
            raise ValidationError("Credit amount must be positive")

        updated = await self.db.profiles.find_one_and_update(
            {"id": profile_id},
            {
                "$inc": {"points_balance_milli": milli},
                "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
            },
            projection={"_id": 0, "points_balance_milli": 1},
            return_document=ReturnDocument.AFTER
        )

        if not updated:
            raise NotFoundError(f"Profile not found: {profile_id}")

        logger.info(f"Credited {milli} milli-points to profile {profile_id}")
        return updated["points_balance_milli"]

    async def debit_points(self, profile_id: str, milli: int) -> int:
        """
        Atomically remove points from a profile.

        The filter only matches while the balance covers the debit, which is
        the whole concurrency guard: two racing debits cannot both succeed
        against a balance that only covers one.

        Returns:
            The balance (thousandths) written by this decrement

        Raises:
            InsufficientBalanceError if the balance does not cover the debit
        """
        if milli < 0:
            raise ValidationError("Debit amount must not be negative")

        before = await self.db.profiles.find_one_and_update(
            {"id": profile_id, "points_balance_milli": {"$gte": milli}},
            {
                "$inc": {"points_balance_milli": -milli},
                "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
            },
            projection={"_id": 0, "points_balance_milli": 1},
            return_document=ReturnDocument.BEFORE
        )

        if before:
            logger.info(f"Debited {milli} milli-points from profile {profile_id}")
            return before["points_balance_milli"] - milli

        profile = await self.get_profile(profile_id)
        balance = profile.get("points_balance_milli", 0)
        raise InsufficientBalanceError(
            f"Not enough points: balance {milli_to_float(balance)}, required {milli_to_float(milli)}",
            details={"points_balance": milli_to_float(balance), "required": milli_to_float(milli)}
        )

    async def _rollback_credit(self, profile_id: str, milli: int, reason: str) -> None:
        """Compensate a credit whose ledger row could not be written."""
        try:
            result = await self.db.profiles.update_one(
                {"id": profile_id, "points_balance_milli": {"$gte": milli}},
                {
                    "$inc": {"points_balance_milli": -milli},
                    "$set": {"updated_at": datetime.now(timezone.utc).isoformat()}
                }
            )
        except PyMongoError as e:
            logger.error(
                f"LEDGER_INTEGRITY_WARNING | kind=rollback_failed | profile_id={profile_id} "
                f"| milli={milli} | reason={reason} | error={e}"
            )
            return

        if result.modified_count == 0:
            logger.error(
                f"LEDGER_INTEGRITY_WARNING | kind=rollback_skipped | profile_id={profile_id} "
                f"| milli={milli} | reason={reason} | balance no longer covers rollback"
            )
        else:
            logger.warning(f"Rolled back credit of {milli} milli-points for profile {profile_id}: {reason}")

    # ==================== LEDGER ROWS ====================

    def build_entry(
        self,
        profile_id: str,
        transaction_type: str,
        amount_milli: int,
        balance_after_milli: int,
        description: str,
        reference_id: Optional[str],
        is_successful: bool = True,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return {
            "id": uuid.uuid4().hex,
            "profile_id": profile_id,
            "transaction_type": transaction_type,
            "amount_milli": amount_milli,
            "balance_after_milli": balance_after_milli,
            "description": description,
            "reference_id": reference_id,
            "is_successful": is_successful,
            "metadata": metadata,
            "created_at": datetime.now(timezone.utc).isoformat()
        }

    async def insert_transaction(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a ledger row. Raises on any store error."""
        await self.db.points_transactions.insert_one(dict(entry))
        return entry

    async def record_transaction(self, entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Write a ledger row after money already moved.

        The balance change stands whatever happens here. A duplicate on the
        idempotency index means the row exists already; any other failure is
        an integrity warning and the row goes to the outbox.
        """
        try:
            return await self.insert_transaction(entry)
        except DuplicateKeyError:
            logger.info(
                f"Ledger row already present for profile {entry['profile_id']} "
                f"reference {entry['reference_id']} ({entry['transaction_type']})"
            )
            return None
        except PyMongoError as e:
            await self.flag_integrity_warning(IntegrityWarning("ledger_insert_failed", str(e), entry))
            return None

    async def flag_integrity_warning(self, warning: IntegrityWarning, queue: bool = True) -> None:
        """
        Log a post-commit write failure.

        With queue=True the warning's entry is a complete ledger row and is
        queued in the outbox for re-application.
        """
        info = warning.to_dict()
        logger.error(
            f"LEDGER_INTEGRITY_WARNING | kind={info['kind']} | profile_id={info['profile_id']} "
            f"| reference_id={info['reference_id']} | reason={info['reason']}"
        )

        if not queue or not warning.entry:
            return

        now = datetime.now(timezone.utc).isoformat()
        try:
            await self.db.ledger_outbox.insert_one({
                "outbox_id": uuid.uuid4().hex,
                "kind": warning.kind,
                "entry": dict(warning.entry),
                "reason": warning.reason,
                "status": "pending",
                "attempts": 0,
                "created_at": now,
                "applied_at": None
            })
        except PyMongoError as e:
            logger.critical(
                f"LEDGER_OUTBOX_WRITE_FAILED | profile_id={info['profile_id']} "
                f"| reference_id={info['reference_id']} | error={e}"
            )

    async def replay_outbox(self, limit: int = 100) -> Dict[str, int]:
        """
        Re-apply pending outbox rows.

        A duplicate key means the row reached the ledger by another path and
        counts as applied.
        """
        applied = 0
        failed = 0

        cursor = self.db.ledger_outbox.find({"status": "pending"}, {"_id": 0}).sort("created_at", 1).limit(limit)
        pending = await cursor.to_list(length=limit)

        for item in pending:
            now = datetime.now(timezone.utc).isoformat()
            try:
                await self.insert_transaction(item["entry"])
            except DuplicateKeyError:
                pass
            except PyMongoError as e:
                failed += 1
                logger.warning(f"Outbox replay failed for {item['outbox_id']}: {e}")
                await self.db.ledger_outbox.update_one(
                    {"outbox_id": item["outbox_id"]},
                    {"$inc": {"attempts": 1}, "$set": {"last_error": str(e), "updated_at": now}}
                )
                continue

            applied += 1
            await self.db.ledger_outbox.update_one(
                {"outbox_id": item["outbox_id"]},
                {"$set": {"status": "applied", "applied_at": now}, "$inc": {"attempts": 1}}
            )

        remaining = await self.db.ledger_outbox.count_documents({"status": "pending"})
        logger.info(f"Outbox replay: applied={applied} failed={failed} remaining={remaining}")
        return {"applied": applied, "failed": failed, "remaining": remaining}

    # ==================== SPEND FAILURES AND REFUNDS ====================

    async def mark_spend_failed(self, profile_id: str, task_id: str) -> bool:
        """
        Flip a spend row from assumed-success to failed.

        Matches only rows still marked successful, so the flag changes once.
        The debit itself is not reversed; the user claims it through refund().
        """
        result = await self.db.points_transactions.update_one(
            {
                "profile_id": profile_id,
                "reference_id": task_id,
                "transaction_type": "spend",
                "is_successful": True
            },
            {"$set": {"is_successful": False, "failed_at": datetime.now(timezone.utc).isoformat()}}
        )

        if result.modified_count > 0:
            logger.info(f"Marked spend for task {task_id} as failed (profile {profile_id})")
            return True
        return False

    async def refund(self, user_id: str, transaction_id: str) -> Dict[str, Any]:
        """
        Credit back a failed spend, at most once.

        Only spend rows flagged is_successful=false qualify. The refund row uses
        the reserved reference "refund:<id>" and the unique ledger index makes a
        second refund impossible even when two requests race. If the refund row
        cannot be written the credit is rolled back.
        """
        profile = await self.get_profile_by_user(user_id)
        profile_id = profile["id"]

        transaction = await self.db.points_transactions.find_one(
            {"id": transaction_id, "profile_id": profile_id},
            {"_id": 0}
        )
        if not transaction:
            raise NotFoundError("Transaction not found")

        if transaction.get("transaction_type") != "spend":
            raise ValidationError("Only spend transactions can be refunded")

        if transaction.get("is_successful", True):
            raise ValidationError("Successful transactions are not refundable")

        amount_milli = transaction.get("amount_milli") or 0
        if amount_milli >= 0:
            raise ValidationError("Invalid transaction amount, cannot refund")

        reference_id = refund_reference(transaction_id)
        existing = await self.db.points_transactions.find_one(
            {"profile_id": profile_id, "reference_id": reference_id},
            {"_id": 0, "id": 1}
        )
        if existing:
            raise AlreadyRefundedError()

        refund_milli = abs(amount_milli)
        new_balance = await self.credit_points(profile_id, refund_milli)

        entry = self.build_entry(
            profile_id=profile_id,
            transaction_type="recharge",
            amount_milli=refund_milli,
            balance_after_milli=new_balance,
            description=f"Refund for failed task (original transaction {transaction_id})",
            reference_id=reference_id,
            metadata={"refund_of": transaction_id}
        )

        try:
            await self.insert_transaction(entry)
        except DuplicateKeyError:
            await self._rollback_credit(profile_id, refund_milli, f"duplicate refund of {transaction_id}")
            raise AlreadyRefundedError()
        except PyMongoError as e:
            logger.error(f"Failed to write refund row for transaction {transaction_id}: {e}")
            await self._rollback_credit(profile_id, refund_milli, f"refund row insert failed: {e}")
            raise LedgerError("Failed to record refund transaction")

        description = transaction.get("description") or "Task points"
        if REFUND_MARKER not in description:
            try:
                await self.db.points_transactions.update_one(
                    {"id": transaction_id},
                    {"$set": {"description": f"{description} {REFUND_MARKER}"}}
                )
            except PyMongoError as e:
                logger.warning(f"Failed to annotate refunded transaction {transaction_id}: {e}")

        logger.info(f"Refunded {refund_milli} milli-points for transaction {transaction_id} (profile {profile_id})")
        return {
            "success": True,
            "points_balance": milli_to_float(new_balance),
            "refund_transaction_id": entry["id"]
        }

    # ==================== READS ====================

    async def list_transactions(
        self,
        profile_id: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        transaction_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Paginated ledger rows for one profile, newest first."""
        validate_pagination(page, limit)
        if transaction_type is not None and transaction_type not in ("recharge", "spend", "transfer"):
            raise ValidationError("transaction_type must be recharge, spend or transfer")

        query: Dict[str, Any] = {"profile_id": profile_id}
        if transaction_type:
            query["transaction_type"] = transaction_type

        total = await self.db.points_transactions.count_documents(query)
        cursor = self.db.points_transactions.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        rows = await cursor.to_list(length=limit)

        return {
            "transactions": [serialize_transaction(row) for row in rows],
            "pagination": build_pagination(page, limit, total)
        }

    async def list_recharges(
        self,
        viewer: Dict[str, Any],
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE
    ) -> Dict[str, Any]:
        """
        Recharge rows visible to an admin (all) or an agent (their invitees).
        """
        role = (viewer.get("role") or "user").lower()
        if role not in PAY_FOR_OTHERS_ROLES:
            raise PermissionDeniedError("Not allowed to view recharge records")

        validate_pagination(page, limit)
        scope = "all" if role == "admin" else "downline"

        query: Dict[str, Any] = {"transaction_type": "recharge"}
        if scope == "downline":
            downline = await self.db.profiles.find(
                {"invited_by": viewer["profile_id"]},
                {"_id": 0, "id": 1}
            ).to_list(length=None)
            downline_ids = [p["id"] for p in downline]
            if not downline_ids:
                return {"records": [], "pagination": build_pagination(page, limit, 0), "scope": scope}
            query["profile_id"] = {"$in": downline_ids}

        total = await self.db.points_transactions.count_documents(query)
        cursor = self.db.points_transactions.find(query, {"_id": 0}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        rows = await cursor.to_list(length=limit)

        summaries = await self._profile_summaries({row["profile_id"] for row in rows})

        records = []
        for row in rows:
            record = serialize_transaction(row)
            record.pop("transaction_type", None)
            record.pop("metadata", None)
            record["profile"] = summaries.get(row["profile_id"])
            records.append(record)

        return {"records": records, "pagination": build_pagination(page, limit, total), "scope": scope}

    async def _profile_summaries(self, profile_ids) -> Dict[str, Dict[str, Any]]:
        if not profile_ids:
            return {}

        profiles = await self.db.profiles.find(
            {"id": {"$in": list(profile_ids)}},
            {"_id": 0, "id": 1, "user_id": 1, "username": 1, "email": 1, "role": 1, "invited_by": 1}
        ).to_list(length=None)

        inviter_ids = {p["invited_by"] for p in profiles if p.get("invited_by")}
        inviter_names: Dict[str, Optional[str]] = {}
        if inviter_ids:
            inviters = await self.db.profiles.find(
                {"id": {"$in": list(inviter_ids)}},
                {"_id": 0, "id": 1, "username": 1}
            ).to_list(length=None)
            inviter_names = {p["id"]: p.get("username") for p in inviters}

        summaries = {}
        for p in profiles:
            role = (p.get("role") or "user").lower()
            summaries[p["id"]] = {
                "id": p["id"],
                "user_id": p.get("user_id"),
                "username": p.get("username"),
                "email": p.get("email"),
                "role": role if role in ("admin", "agent", "user") else "user",
                "invited_by": p.get("invited_by"),
                "invited_by_username": inviter_names.get(p.get("invited_by")),
            }
        return summaries

    async def get_balance_milli(self, user_id: str) -> int:
        profile = await self.get_profile_by_user(user_id)
        return profile.get("points_balance_milli", 0)
