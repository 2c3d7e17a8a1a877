"""Domain error taxonomy for the reservation and settlement engine.

Every error carries a stable ``code``, the HTTP status the API maps it to,
and a ``retryable`` flag so clients can offer "retry" only for transient
failures. Store errors never leak: services translate them into one of
these classes.
"""

from typing import Any


class MatchpointError(Exception):
    """Base class for all domain errors."""

    code: str = "error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            **({"context": self.context} if self.context else {}),
        }


class NotFound(MatchpointError):
    code = "not_found"
    status_code = 404


class PermissionDenied(MatchpointError):
    code = "permission_denied"
    status_code = 403


class ValidationFailed(MatchpointError):
    code = "validation_failed"
    status_code = 422


class SlotConflict(MatchpointError):
    """The requested interval is no longer free; pick another slot."""

    code = "slot_conflict"
    status_code = 409
    retryable = True


class InvalidTransition(MatchpointError):
    """Illegal state change. Client or programming error, never retried."""

    code = "invalid_transition"
    status_code = 409


class ConcurrentModification(MatchpointError):
    """The row changed under us (optimistic version check failed)."""

    code = "concurrent_modification"
    status_code = 409
    retryable = True


class CheckInWindowClosed(MatchpointError):
    code = "check_in_window_closed"
    status_code = 422


class PaymentRequired(MatchpointError):
    code = "payment_required"
    status_code = 402


class AlreadySettled(MatchpointError):
    """Idempotency guard tripped. Callers treat this as success."""

    code = "already_settled"
    status_code = 409


class InsufficientBalance(MatchpointError):
    code = "insufficient_balance"
    status_code = 402


class InvalidChargeAmount(MatchpointError):
    code = "invalid_charge_amount"
    status_code = 422


class PaymentDeclined(MatchpointError):
    """Permanent rejection by the payment channel."""

    code = "payment_declined"
    status_code = 402


class GatewayTimeout(MatchpointError):
    """Transient gateway failure; the ledger entry is recorded as FAILED."""

    code = "gateway_timeout"
    status_code = 504
    retryable = True


class InvalidRefundAmount(MatchpointError):
    code = "invalid_refund_amount"
    status_code = 422
