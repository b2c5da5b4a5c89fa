"""Razorpay adapter used by the checkout workflow.

Only two calls are needed: creating an order (the payment intent the client
widget pays against) and fetching a payment to learn whether it was captured.
Every request carries a timeout; transport and auth problems surface as
``GatewayUnavailable`` and unknown ids as ``GatewayError``.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from .errors import GatewayError, GatewayUnavailable

MINOR_UNITS_PER_MAJOR = 100
CAPTURED = "captured"
FAILED = "failed"


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    amount: int
    currency: str
    receipt: str


@dataclass(frozen=True)
class GatewayPayment:
    payment_id: str
    intent_id: str
    status: str
    method: str
    amount: int
    currency: str

    @property
    def captured(self) -> bool:
        return self.status == CAPTURED

    def to_status_payload(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "method": self.method,
            "amount": self.amount,
            "currency": self.currency,
        }


def to_minor_units(amount) -> int:
    return int(round(float(amount) * MINOR_UNITS_PER_MAJOR))


class RazorpayGateway:
    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com",
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.key_id = (key_id or "").strip()
        self.key_secret = (key_secret or "").strip()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

    def _credentials(self):
        if not self.key_id or not self.key_secret:
            raise GatewayUnavailable("Razorpay configuration is incomplete. Please contact support.")
        return self.key_id, self.key_secret

    def create_intent(self, amount: int, currency: str, receipt: str) -> PaymentIntent:
        auth = self._credentials()
        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "payment_capture": 1,
        }
        try:
            response = requests.post(
                f"{self.base_url}/v1/orders",
                json=payload,
                auth=auth,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("Razorpay order creation failed for %s: %s", receipt, exc)
            raise GatewayUnavailable() from exc

        if response.status_code != 200:
            self.logger.error(
                "Razorpay order creation returned %s: %s", response.status_code, response.text
            )
            raise GatewayUnavailable()

        data = response.json()
        return PaymentIntent(
            intent_id=str(data.get("id") or ""),
            amount=int(data.get("amount") or payload["amount"]),
            currency=str(data.get("currency") or currency),
            receipt=str(data.get("receipt") or receipt),
        )

    def fetch_status(self, payment_id: str) -> GatewayPayment:
        auth = self._credentials()
        try:
            response = requests.get(
                f"{self.base_url}/v1/payments/{payment_id}",
                auth=auth,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            self.logger.error("Razorpay payment lookup failed for %s: %s", payment_id, exc)
            raise GatewayUnavailable() from exc

        if response.status_code in (400, 404):
            self.logger.warning("Razorpay does not know payment %s", payment_id)
            raise GatewayError("The payment could not be found at the payment provider.")
        if response.status_code != 200:
            self.logger.error(
                "Razorpay payment lookup returned %s: %s", response.status_code, response.text
            )
            raise GatewayUnavailable()

        data = response.json()
        return GatewayPayment(
            payment_id=str(data.get("id") or payment_id),
            intent_id=str(data.get("order_id") or ""),
            status=str(data.get("status") or "").lower(),
            method=str(data.get("method") or ""),
            amount=int(data.get("amount") or 0),
            currency=str(data.get("currency") or ""),
        )
