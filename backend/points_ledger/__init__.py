"""
Points Ledger Module
Money-like points for the text rewriting service

This module provides:
- Points balances with atomic, non-negative debits and credits
- Immutable transaction ledger with per-reference idempotency
- Alipay checkout (self top-up and agent pay-for-downline)
- Idempotent reconciliation of asynchronous gateway notifications
- Task dispatch to external rewriting vendors with refundable failures
- Cached vendor bearer credentials

Collections used:
- profiles: User balances, billing rate and role
- points_transactions: Ledger rows
- payment_orders: Gateway checkout attempts (pending -> paid)
- external_credentials: Vendor bearer tokens with expiry
- task_submission_attempts: Vendor submission log (including failures)
- ledger_outbox: Ledger rows waiting to be re-applied
"""

__version__ = "1.0.0"
