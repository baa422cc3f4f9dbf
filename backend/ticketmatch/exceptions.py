"""
Marketplace Exception Hierarchy

Error taxonomy shared by the matching service, the escrow engine and the
HTTP layer. All error codes use the market: prefix.
"""
from typing import Optional, Dict, Any


class MarketplaceError(Exception):
    """
    Base exception for all marketplace errors.

    Carries a stable error code, a user-safe message and the HTTP status the
    API layer maps it to.
    """

    status_code: int = 400
    retryable: bool = False

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class NotFoundError(MarketplaceError):
    """
    Offer, listing or transaction does not exist.
    """

    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(
            f"market:{resource}:not_found",
            f"{resource.capitalize()} not found",
            {f"{resource}_id": resource_id}
        )


class PreconditionFailedError(MarketplaceError):
    """
    Business rule violated.

    Examples:
    - Listing price above the offer's max price
    - Quantity or event mismatch between offer and listing
    - Refund requested after the dispute window closed
    """

    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("market:precondition_failed", message, details)


class ConflictError(MarketplaceError):
    """
    Lost a concurrency race or attempted a transition from a stale state.

    Expected under normal contention (two sellers accepting one offer); the
    caller should re-read state rather than treat this as a fault.
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("market:conflict", message, details)


class AuthorizationError(MarketplaceError):
    """
    Actor is not entitled to perform the operation on this record.
    """

    status_code = 403

    def __init__(self, message: str = "Not permitted", details: Optional[Dict[str, Any]] = None):
        super().__init__("market:forbidden", message, details)


class GatewayError(MarketplaceError):
    """
    Payment gateway refused or failed the operation.

    Examples:
    - Card declined on capture
    - Payout account rejected on transfer
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: str = "market:gateway:failed"
    ):
        super().__init__(error_code, message, details)


class GatewayTimeoutError(GatewayError):
    """
    Gateway call exceeded its deadline and reconciliation found no record.

    Retryable: the same idempotency key must be reused so the gateway can
    deduplicate.
    """

    status_code = 504
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, error_code="market:gateway:timeout")
