# Ledger error taxonomy
# Every failure carries a human-readable reason, a machine-checkable code and,
# where the caller can do something about it, an action hint.

from typing import Optional


class LedgerError(Exception):
    status_code = 400
    default_code = "error"

    def __init__(self, reason: str, code: Optional[str] = None, action: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code or self.default_code
        self.action = action

    def to_dict(self) -> dict:
        return {
            "success": False,
            "reason": self.reason,
            "code": self.code,
            "action": self.action,
        }


class ValidationError(LedgerError):
    """Bad input: amounts, unknown methods, malformed metadata."""
    status_code = 422
    default_code = "validation_error"


class NotFoundError(LedgerError):
    status_code = 404
    default_code = "not_found"


class PermissionDeniedError(LedgerError):
    status_code = 403
    default_code = "permission_denied"


class PreconditionError(LedgerError):
    """The entity is not in a state that allows the requested transition."""
    status_code = 409
    default_code = "precondition_failed"


class GatewayError(LedgerError):
    """
    The payment gateway is unreachable or returned an error.
    outcome_unknown is set when the request may have been applied anyway
    (timeouts or gateway 5xx responses); such calls are retried with the same
    idempotency key rather than treated as refused.
    """
    status_code = 502
    default_code = "gateway_error"

    def __init__(self, reason: str, code: Optional[str] = None, action: Optional[str] = None,
                 outcome_unknown: bool = False):
        super().__init__(reason, code=code, action=action)
        self.outcome_unknown = outcome_unknown


class WebhookVerificationError(LedgerError):
    status_code = 400
    default_code = "invalid_webhook"


class LedgerIntegrityError(LedgerError):
    """An accounting invariant would be violated. Never clamped."""
    status_code = 500
    default_code = "ledger_integrity"
