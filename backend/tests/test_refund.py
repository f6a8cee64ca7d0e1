"""
Refund tests.

A failed spend is refundable once, by its owner, and only after it was
flagged as failed.
"""

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from points_ledger.exceptions import AlreadyRefundedError, LedgerError, NotFoundError, ValidationError
from points_ledger.ledger_service import REFUND_MARKER, LedgerService, refund_reference


async def spend(db, profile, amount_milli=-6000, is_successful=False, transaction_type="spend", reference_id="task-1"):
    ledger = LedgerService(db)
    entry = ledger.build_entry(
        profile_id=profile["id"],
        transaction_type=transaction_type,
        amount_milli=amount_milli,
        balance_after_milli=94000,
        description="Reduce AI rate (CNKI) (2000 chars)",
        reference_id=reference_id,
        is_successful=is_successful
    )
    await ledger.insert_transaction(entry)
    return entry


async def balance(db, profile):
    doc = await db.profiles.find_one({"id": profile["id"]})
    return doc["points_balance_milli"]


class TestRefund:

    @pytest.mark.asyncio
    async def test_refund_failed_spend(self, db, make_profile):
        alice = await make_profile("alice", balance_milli=94000)
        row = await spend(db, alice)

        result = await LedgerService(db).refund("alice", row["id"])

        assert result["success"] is True
        assert result["points_balance"] == 100.0
        assert await balance(db, alice) == 100000

        refund_row = await db.points_transactions.find_one({"id": result["refund_transaction_id"]})
        assert refund_row["transaction_type"] == "recharge"
        assert refund_row["amount_milli"] == 6000
        assert refund_row["balance_after_milli"] == 100000
        assert refund_row["reference_id"] == refund_reference(row["id"])
        assert refund_row["metadata"] == {"refund_of": row["id"]}

        original = await db.points_transactions.find_one({"id": row["id"]})
        assert original["description"] == f"Reduce AI rate (CNKI) (2000 chars) {REFUND_MARKER}"

    @pytest.mark.asyncio
    async def test_second_refund_refused(self, db, make_profile):
        alice = await make_profile("alice", balance_milli=94000)
        row = await spend(db, alice)
        ledger = LedgerService(db)

        await ledger.refund("alice", row["id"])
        with pytest.raises(AlreadyRefundedError) as exc:
            await ledger.refund("alice", row["id"])

        assert exc.value.status_code == 409
        assert await balance(db, alice) == 100000

    @pytest.mark.asyncio
    async def test_successful_spend_not_refundable(self, db, make_profile):
        alice = await make_profile("alice", balance_milli=94000)
        row = await spend(db, alice, is_successful=True)

        with pytest.raises(ValidationError):
            await LedgerService(db).refund("alice", row["id"])

        assert await balance(db, alice) == 94000

    @pytest.mark.asyncio
    async def test_recharge_not_refundable(self, db, make_profile):
        alice = await make_profile("alice")
        row = await spend(db, alice, amount_milli=1000, transaction_type="recharge")

        with pytest.raises(ValidationError):
            await LedgerService(db).refund("alice", row["id"])

    @pytest.mark.asyncio
    async def test_non_negative_amount_not_refundable(self, db, make_profile):
        alice = await make_profile("alice")
        row = await spend(db, alice, amount_milli=0)

        with pytest.raises(ValidationError):
            await LedgerService(db).refund("alice", row["id"])

    @pytest.mark.asyncio
    async def test_other_users_row_is_not_found(self, db, make_profile):
        alice = await make_profile("alice", balance_milli=94000)
        mallory = await make_profile("mallory")
        row = await spend(db, alice)

        with pytest.raises(NotFoundError):
            await LedgerService(db).refund("mallory", row["id"])

        assert await balance(db, mallory) == 0

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, db, make_profile):
        await make_profile("alice")
        with pytest.raises(NotFoundError):
            await LedgerService(db).refund("alice", "no-such-id")

    @pytest.mark.asyncio
    async def test_row_insert_failure_rolls_back(self, db, make_profile, monkeypatch):
        alice = await make_profile("alice", balance_milli=94000)
        row = await spend(db, alice)
        ledger = LedgerService(db)

        async def broken_insert(_entry):
            raise PyMongoError("write concern timeout")

        monkeypatch.setattr(ledger, "insert_transaction", broken_insert)

        with pytest.raises(LedgerError) as exc:
            await ledger.refund("alice", row["id"])

        assert exc.value.message == "Failed to record refund transaction"
        assert await balance(db, alice) == 94000

        # still refundable afterwards
        result = await LedgerService(db).refund("alice", row["id"])
        assert result["points_balance"] == 100.0

    @pytest.mark.asyncio
    async def test_lost_race_rolls_back(self, db, make_profile, monkeypatch):
        """The existence check passed but another request wrote the refund row first."""
        alice = await make_profile("alice", balance_milli=94000)
        row = await spend(db, alice)
        ledger = LedgerService(db)

        async def racing_insert(_entry):
            raise DuplicateKeyError("E11000 duplicate key error")

        monkeypatch.setattr(ledger, "insert_transaction", racing_insert)

        with pytest.raises(AlreadyRefundedError):
            await ledger.refund("alice", row["id"])

        assert await balance(db, alice) == 94000

    @pytest.mark.asyncio
    async def test_marker_not_repeated(self, db, make_profile):
        alice = await make_profile("alice", balance_milli=94000)
        ledger = LedgerService(db)
        entry = ledger.build_entry(
            alice["id"], "spend", -6000, 94000, f"Task {REFUND_MARKER}", "task-2", is_successful=False
        )
        await ledger.insert_transaction(entry)

        await ledger.refund("alice", entry["id"])

        original = await db.points_transactions.find_one({"id": entry["id"]})
        assert original["description"] == f"Task {REFUND_MARKER}"
