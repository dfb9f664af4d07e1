"""
Checkout error taxonomy.

Ledger, gateway and rail code raise these. The orchestrator converts them to
structured step results and the HTTP layer renders them with ``to_dict``;
neither lets them escape to the buyer as raw exceptions.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_PURCHASABLE = "not_purchasable"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    GATEWAY = "gateway"
    PERSISTENCE = "persistence"
    RECONCILIATION_PENDING = "reconciliation_pending"


class CheckoutError(Exception):
    """Base class for every error the checkout core reports."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    default_code: str = "checkout_error"
    retryable: bool = False
    http_status: int = 500

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "kind": self.kind.value,
            }
        }


class ValidationFailed(CheckoutError):
    """Bad input detected locally; fixed by the buyer correcting it."""

    kind = ErrorKind.VALIDATION
    default_code = "validation_error"
    retryable = True
    http_status = 400


class NotPurchasable(CheckoutError):
    """Listing missing, unpublished, expired or out of stock. Terminal for the attempt."""

    kind = ErrorKind.NOT_PURCHASABLE
    default_code = "not_purchasable"
    http_status = 409


class OrderNotFound(CheckoutError):
    kind = ErrorKind.NOT_FOUND
    default_code = "order_not_found"
    http_status = 404


class InvalidTransition(CheckoutError):
    """A status write that the order lattice does not allow."""

    kind = ErrorKind.INVALID_TRANSITION
    default_code = "invalid_transition"
    http_status = 409


class GatewayError(CheckoutError):
    kind = ErrorKind.GATEWAY
    default_code = "gateway_error"
    retryable = True
    http_status = 502


class GatewayTimeout(GatewayError):
    default_code = "gateway_timeout"
    http_status = 504


class PersistenceError(CheckoutError):
    kind = ErrorKind.PERSISTENCE
    default_code = "persistence_error"
    retryable = True
    http_status = 503
