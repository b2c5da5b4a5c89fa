from typing import Dict, Optional


class ShopkeepError(Exception):
    """Base error carrying the HTTP status and error code reported to clients."""

    status_code = 500
    code = "internal-error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message, "error": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ShopkeepError):
    status_code = 400
    code = "validation-error"
    default_message = "The request is missing required information."


class GatewayUnavailable(ShopkeepError):
    status_code = 502
    code = "gateway-unavailable"
    default_message = "The payment provider is unavailable. Please try again."


class GatewayError(ShopkeepError):
    status_code = 502
    code = "gateway-error"
    default_message = "The payment provider rejected the request."


class PaymentMismatch(ShopkeepError):
    status_code = 404
    code = "payment-mismatch"
    default_message = "No payment record matches this transaction."


class DuplicateFinalize(ShopkeepError):
    """Raised inside a finalize unit when another call already linked an order."""

    status_code = 409
    code = "duplicate-finalize"
    default_message = "This payment has already been turned into an order."


class OrderFinalizeError(ShopkeepError):
    default_message = "We could not record your order. Please try again."
