"""
Presale error taxonomy.

Every orchestrator failure is raised as a PresaleError subclass and turned
into a structured ``{"success": false, ...}`` response at the request
boundary (see app.main).
"""

from typing import Any, Dict


class PresaleError(Exception):
    """Base class for errors returned to the caller as structured results."""

    code = "PRESALE_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            **self.details,
        }


class ValidationError(PresaleError):
    """Missing or malformed input. The caller must fix the request."""

    code = "VALIDATION_ERROR"


class SelfReferral(ValidationError):
    code = "SELF_REFERRAL"


class PurchaseLimitExceeded(PresaleError):
    code = "PURCHASE_LIMIT_EXCEEDED"


class RateLimited(PresaleError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True


class VerificationFailed(PresaleError):
    """The settlement dry-run rejected the payment."""

    code = "VERIFICATION_FAILED"


class Unauthorized(PresaleError):
    code = "UNAUTHORIZED"
    status_code = 403


class NotFound(PresaleError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyClaimed(PresaleError):
    code = "ALREADY_CLAIMED"
    status_code = 409


class VestingNotComplete(PresaleError):
    code = "VESTING_NOT_COMPLETE"


class ConfigMissing(PresaleError):
    """Token configuration is absent: a data-integrity fault."""

    code = "CONFIG_MISSING"
    status_code = 500


class SettlementError(PresaleError):
    """The oracle definitively did not settle. Safe to retry."""

    code = "SETTLEMENT_FAILED"
    status_code = 502
    retryable = True


class Indeterminate(PresaleError):
    """
    The oracle did not answer in time.

    The outcome is unknown: the ledger and the chain may disagree until the
    reconciliation worker (or an operator) resolves it. Never retried
    automatically.
    """

    code = "INDETERMINATE"
    status_code = 504


class LedgerConflict(PresaleError):
    """A conditional write kept losing to concurrent writers."""

    code = "LEDGER_CONFLICT"
    status_code = 409
    retryable = True
