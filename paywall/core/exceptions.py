"""Error taxonomy shared by the verification and subscription layers."""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class PaywallError(Exception):
    """Base exception carrying an HTTP status and a stable error code."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_code = "PAYWALL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_dict())


class ValidationError(PaywallError):
    """Missing or blank input, rejected before any I/O."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VALIDATION_ERROR"


class NetworkUnsupported(PaywallError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "NETWORK_UNSUPPORTED"


class VerificationNotFound(PaywallError):
    """Explorer answered, but no matching transfer exists (user-correctable)."""

    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "VERIFICATION_NOT_FOUND"


class ApiError(PaywallError):
    """Explorer unreachable, rate-limited or returned malformed data."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "API_ERROR"


class AlreadyApplied(PaywallError):
    """Transaction hash already credited to this user; an idempotent no-op."""

    status_code = status.HTTP_200_OK
    error_code = "ALREADY_APPLIED"


class PaymentAlreadyClaimed(PaywallError):
    """Transaction hash already credited to a different user."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "PAYMENT_ALREADY_CLAIMED"


class SubscriptionNotFound(PaywallError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "SUBSCRIPTION_NOT_FOUND"


class InvalidTransition(PaywallError):
    status_code = status.HTTP_409_CONFLICT
    error_code = "INVALID_TRANSITION"


class PersistenceError(PaywallError):
    """Storage write failed; the computed transition was discarded."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "PERSISTENCE_ERROR"


class ConcurrentModification(PersistenceError):
    error_code = "CONCURRENT_MODIFICATION"


ERRORS_BY_CODE = {
    cls.error_code: cls
    for cls in (ValidationError, NetworkUnsupported, VerificationNotFound, ApiError)
}
