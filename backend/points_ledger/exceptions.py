"""
Ledger error taxonomy.

Every error carries an error_code and the HTTP status the routes answer with.
IntegrityWarning is never raised to a caller: it describes a write that failed
after money already moved, and is logged and queued for re-application.
"""

from typing import Any, Dict, Optional

from .config import ERROR_CODES


class LedgerError(Exception):
    """Base class for ledger failures surfaced to callers."""

    error_code = "LEDGER_ERROR"
    status_code = 500

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or ERROR_CODES.get(self.error_code, "Internal error")
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        payload = {"error_code": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(LedgerError):
    error_code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(LedgerError):
    error_code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(LedgerError):
    error_code = "PERMISSION_DENIED"
    status_code = 403


class InsufficientBalanceError(LedgerError):
    error_code = "INSUFFICIENT_POINTS"
    status_code = 402


class ConflictError(LedgerError):
    """An optimistic lock was lost or the effect already exists."""

    error_code = "CONFLICT"
    status_code = 409


class AlreadyRefundedError(ConflictError):
    error_code = "ALREADY_REFUNDED"


class UpstreamError(LedgerError):
    """A vendor or the payment gateway failed or was unreachable."""

    error_code = "UPSTREAM_ERROR"
    status_code = 502


class VendorRejectedError(UpstreamError):
    error_code = "vendor_rejected"


class VendorTimeoutError(UpstreamError):
    error_code = "vendor_timeout"
    status_code = 504


class ConfigurationError(LedgerError):
    error_code = "CONFIGURATION_ERROR"
    status_code = 500


class IntegrityWarning(Exception):
    """
    A post-commit ledger write failed.

    The economically significant change (order transition or balance update)
    already happened; the missing row needs manual or outbox reconciliation.
    """

    def __init__(self, kind: str, reason: str, entry: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.reason = reason
        self.entry = entry or {}
        super().__init__(f"{kind}: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "profile_id": self.entry.get("profile_id"),
            "reference_id": self.entry.get("reference_id"),
        }
