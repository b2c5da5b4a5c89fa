"""Checkout workflow: payment intents, payment confirmation and order finalization.

A checkout starts by creating a Razorpay order (the payment intent) and a
``created`` payment record. Once the customer has paid, confirmation asks the
gateway for the payment's status and, when it was captured, the finalizer
turns the customer's cart into an order in a single unit of work: order
insert, payment capture, order-history append and cart clear either all
happen or none do. The payment capture is a compare-and-swap on the payment
record, so two confirmations of the same payment can never both create an
order; the loser returns the order the winner created.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import (
    DuplicateFinalize,
    GatewayUnavailable,
    OrderFinalizeError,
    PaymentMismatch,
    ShopkeepError,
    ValidationError,
)
from .events import NEW_ORDER
from .gateway import CAPTURED, FAILED, to_minor_units
from .notifications import build_order_placed_email
from .principals import display_name, normalize_email

PAYMENT_CREATED = "created"
PAYMENT_STATUS_PAID = "paid"
ORDER_STATUS_PROCESSING = "processing"
ORDER_CONFIRMATION_SUBJECT = "Order Completion"

ADDRESS_FIELDS = ("country", "postcode", "city", "line1", "line2")
ADDRESS_FIELD_ALIASES = {
    "country": ("country", "country_name", "countryName"),
    "postcode": ("postcode", "postal_code", "postalCode", "zip", "zip_code", "zipCode", "pincode"),
    "city": ("city", "town"),
    "line1": ("line1", "line_1", "address_line_1", "addressLine1", "address1", "street"),
    "line2": ("line2", "line_2", "address_line_2", "addressLine2", "address2", "apartment"),
}
ADDRESS_REQUIRED_FIELDS = ("country", "postcode", "city", "line1")


def normalize_address_payload(payload: Optional[Dict]) -> Dict[str, str]:
    if not isinstance(payload, dict):
        return {}

    normalized: Dict[str, str] = {}
    for field in ADDRESS_FIELDS:
        value = None
        for alias in ADDRESS_FIELD_ALIASES.get(field, (field,)):
            if alias in payload:
                value = payload.get(alias)
                break
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            normalized[field] = trimmed
    return normalized


def is_complete_address(payload: Optional[Dict]) -> bool:
    normalized = normalize_address_payload(payload)
    return all(normalized.get(field) for field in ADDRESS_REQUIRED_FIELDS)


def parse_positive_amount(value) -> int:
    """Accept a positive whole amount in major currency units."""
    if isinstance(value, bool):
        raise ValidationError("The amount must be a positive whole number.")
    if isinstance(value, str):
        value = value.strip()
        if not (value.isascii() and value.isdigit()):
            raise ValidationError("The amount must be a positive whole number.")
        value = int(value)
    if isinstance(value, float):
        if not math.isfinite(value) or not value.is_integer():
            raise ValidationError("The amount must be a positive whole number.")
        value = int(value)
    if not isinstance(value, int) or value <= 0:
        raise ValidationError("The amount must be a positive whole number.")
    return value


def normalize_currency(value) -> str:
    currency_code = str(value or "").strip().upper()
    if len(currency_code) != 3 or not currency_code.isalpha():
        raise ValidationError("The currency must be a three-letter ISO code.")
    return currency_code


def isoformat_utc(value) -> Optional[str]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is not None:
        return value.isoformat()
    return f"{value.isoformat()}Z"


def compute_total_price(items: List[Dict]) -> float:
    total = sum(item["price"] * item["quantity"] for item in items)
    return round(total, 2)


def serialize_order(order_document) -> Optional[Dict[str, object]]:
    if not order_document:
        return None

    serialized_items = []
    for entry in order_document.get("items") or []:
        quantity = int(entry.get("quantity") or 0)
        price = entry.get("price") or 0
        serialized_items.append(
            {
                "productId": str(entry.get("product") or ""),
                "name": entry.get("name", "") or "",
                "quantity": quantity,
                "price": price,
                "lineTotal": round(price * quantity, 2),
            }
        )

    payment_info = order_document.get("payment_info") or {}
    return {
        "id": str(order_document.get("_id") or ""),
        "orderNumber": order_document.get("order_number", "") or "",
        "customerId": str(order_document.get("customer") or ""),
        "items": serialized_items,
        "totalPrice": order_document.get("total_price", 0),
        "currency": order_document.get("currency", "") or "",
        "paymentInfo": {
            "id": payment_info.get("id", "") or "",
            "status": payment_info.get("status", "") or "",
        },
        "paymentRecordId": str(order_document.get("payment") or ""),
        "paidAt": isoformat_utc(order_document.get("paid_at")),
        "shippingAddress": order_document.get("shipping_address") or {},
        "paymentStatus": order_document.get("payment_status", "") or "",
        "orderStatus": order_document.get("order_status", "") or "",
        "createdAt": isoformat_utc(order_document.get("created_at")),
    }


def serialize_payment(payment_document, customer_document=None) -> Dict[str, object]:
    customer: Dict[str, str] = {"id": str(payment_document.get("customer") or "")}
    if customer_document:
        customer["name"] = display_name(customer_document)
        customer["email"] = normalize_email(customer_document.get("email"))

    return {
        "id": str(payment_document.get("_id")),
        "intentId": payment_document.get("intent_id", "") or "",
        "receipt": payment_document.get("receipt", "") or "",
        "amount": payment_document.get("amount", 0),
        "currency": payment_document.get("currency", "") or "",
        "status": payment_document.get("status", "") or "",
        "paymentId": payment_document.get("payment_id") or "",
        "method": payment_document.get("method") or "",
        "orderId": str(payment_document.get("order") or ""),
        "customer": customer,
        "createdAt": isoformat_utc(payment_document.get("created_at")),
        "updatedAt": isoformat_utc(payment_document.get("updated_at")),
    }


@dataclass
class FinalizeResult:
    order: Dict[str, object]
    created: bool
    email_sent: bool = False
    email_error: Optional[str] = None


class OrderFinalizer:
    def __init__(self, store, event_bus, notifier, logger: Optional[logging.Logger] = None):
        self.store = store
        self.event_bus = event_bus
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)

    def find_order_for_payment(self, payment_id: ObjectId):
        return self.store.orders.find_one({"payment": payment_id})

    def finalize(
        self,
        customer_id: ObjectId,
        payment_record: Dict,
        gateway_payment,
        signature: Optional[str],
        shipping_address: Dict[str, str],
    ) -> FinalizeResult:
        payment_id = payment_record["_id"]
        existing_order = self.find_order_for_payment(payment_id)
        if existing_order:
            self.logger.info("Payment %s was already finalized as order %s", payment_id, existing_order["_id"])
            return FinalizeResult(order=existing_order, created=False)

        try:
            order_document = self.store.run_in_transaction(
                lambda unit: self._materialize_order(
                    unit, customer_id, payment_record, gateway_payment, signature, shipping_address
                )
            )
        except (DuplicateFinalize, ValidationError) as exc:
            # Another confirmation may have won the race and emptied the cart.
            existing_order = self.find_order_for_payment(payment_id)
            if existing_order:
                self.logger.info("Concurrent finalize for payment %s resolved to order %s", payment_id, existing_order["_id"])
                return FinalizeResult(order=existing_order, created=False)
            if isinstance(exc, DuplicateFinalize):
                raise OrderFinalizeError() from exc
            raise
        except ShopkeepError as exc:
            self.logger.error("Finalize rolled back for payment %s: %s", payment_id, exc.message)
            raise
        except PyMongoError as exc:
            self.logger.error("Finalize rolled back for payment %s: %s", payment_id, exc)
            raise OrderFinalizeError() from exc

        self.publish_new_order(order_document)
        email_sent, email_error = self.notify_customer(customer_id, order_document)
        return FinalizeResult(
            order=order_document,
            created=True,
            email_sent=email_sent,
            email_error=email_error,
        )

    def _materialize_order(
        self,
        unit,
        customer_id: ObjectId,
        payment_record: Dict,
        gateway_payment,
        signature: Optional[str],
        shipping_address: Dict[str, str],
    ):
        session_options = {"session": unit.session} if unit.transactional else {}
        orders = self.store.orders
        payments = self.store.payments
        customers = self.store.customers
        carts = self.store.carts
        payment_id = payment_record["_id"]
        now = datetime.utcnow()

        cart = carts.find_one({"customer": customer_id}, **session_options)
        cart_items = [item for item in (cart or {}).get("items") or [] if isinstance(item, dict)]
        if not cart_items:
            raise ValidationError("Your cart is empty.")

        product_ids = [item.get("product") for item in cart_items if item.get("product")]
        product_names = {
            product["_id"]: product.get("name", "")
            for product in self.store.products.find({"_id": {"$in": product_ids}}, **session_options)
        }

        order_items = [
            {
                "product": item.get("product"),
                "name": product_names.get(item.get("product"), "") or item.get("name", "") or "",
                "quantity": int(item.get("quantity") or 0),
                "price": item.get("price") or 0,
            }
            for item in cart_items
        ]
        total_price = compute_total_price(order_items)
        currency_code = payment_record.get("currency") or gateway_payment.currency
        self._check_captured_amount(payment_id, gateway_payment, total_price, currency_code)

        order_document = {
            "order_number": f"ORD-{uuid4().hex[:10].upper()}",
            "customer": customer_id,
            "items": order_items,
            "payment": payment_id,
            "payment_info": {"id": gateway_payment.payment_id, "status": gateway_payment.status},
            "total_price": total_price,
            "currency": currency_code,
            "paid_at": now,
            "shipping_address": shipping_address,
            "payment_status": PAYMENT_STATUS_PAID,
            "order_status": ORDER_STATUS_PROCESSING,
            "created_at": now,
        }
        try:
            insert_result = orders.insert_one(order_document, **session_options)
        except DuplicateKeyError as exc:
            raise DuplicateFinalize() from exc
        order_id = insert_result.inserted_id
        order_document["_id"] = order_id
        unit.compensate("order insert", lambda: orders.delete_one({"_id": order_id}))

        previous_payment = payments.find_one_and_update(
            {"_id": payment_id, "status": {"$ne": CAPTURED}, "order": None},
            {
                "$set": {
                    "status": gateway_payment.status,
                    "signature": signature or None,
                    "payment_id": gateway_payment.payment_id,
                    "method": gateway_payment.method,
                    "order": order_id,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.BEFORE,
            **session_options,
        )
        if previous_payment is None:
            if payments.find_one({"_id": payment_id}, **session_options):
                raise DuplicateFinalize()
            self.logger.error("Payment record %s vanished before capture", payment_id)
            raise PaymentMismatch()
        restored_fields = {
            field: previous_payment.get(field)
            for field in ("status", "signature", "payment_id", "method", "order", "updated_at")
        }
        unit.compensate(
            "payment capture",
            lambda: payments.update_one({"_id": payment_id}, {"$set": restored_fields}),
        )

        history_update = customers.update_one(
            {"_id": customer_id}, {"$push": {"orders": order_id}}, **session_options
        )
        if history_update.matched_count == 0:
            raise OrderFinalizeError("The customer account for this order no longer exists.")
        unit.compensate(
            "order history",
            lambda: customers.update_one({"_id": customer_id}, {"$pull": {"orders": order_id}}),
        )

        previous_items = cart["items"]
        previous_updated_at = cart.get("updated_at")
        carts.update_one(
            {"_id": cart["_id"]},
            {"$set": {"items": [], "updated_at": now}},
            **session_options,
        )
        unit.compensate(
            "cart clear",
            lambda: carts.update_one(
                {"_id": cart["_id"]},
                {"$set": {"items": previous_items, "updated_at": previous_updated_at}},
            ),
        )

        return order_document

    def _check_captured_amount(self, payment_id, gateway_payment, total_price, currency_code: str):
        """The gateway must have captured exactly the cart total, in the payment's currency."""
        expected_amount = to_minor_units(total_price)
        captured_currency = str(gateway_payment.currency or "").upper()
        if gateway_payment.amount == expected_amount and (
            not captured_currency or captured_currency == str(currency_code or "").upper()
        ):
            return
        self.logger.error(
            "Payment %s captured %s %s but the cart totals %s %s",
            payment_id,
            gateway_payment.amount,
            captured_currency or "?",
            expected_amount,
            currency_code,
        )
        raise PaymentMismatch(
            "The captured amount does not match your order total.",
            details={
                "capturedAmount": gateway_payment.amount,
                "expectedAmount": expected_amount,
                "currency": currency_code,
            },
        )

    def publish_new_order(self, order_document):
        try:
            self.event_bus.publish(NEW_ORDER, serialize_order(order_document))
        except Exception as exc:
            self.logger.warning("Unable to publish %s for order %s: %s", NEW_ORDER, order_document.get("_id"), exc)

    def notify_customer(self, customer_id: ObjectId, order_document) -> Tuple[bool, Optional[str]]:
        recipient = ""
        try:
            customer = self.store.customers.find_one({"_id": customer_id}) or {}
            recipient = normalize_email(customer.get("email"))
            html_body, text_body = build_order_placed_email(
                customer_name=str(customer.get("first_name") or "").strip(),
                order_number=order_document.get("order_number", ""),
                items=order_document.get("items") or [],
                total=order_document.get("total_price", 0),
                currency=order_document.get("currency", ""),
                shipping_address=order_document.get("shipping_address"),
                placed_at=order_document.get("created_at"),
            )
            sent, error = self.notifier.send(recipient, ORDER_CONFIRMATION_SUBJECT, html_body, text_body)
        except Exception as exc:
            sent, error = False, str(exc)

        if not sent:
            self.logger.error(
                "Order confirmation email failed for order %s (%s): %s",
                order_document.get("order_number"),
                recipient or "no email",
                error or "Unknown delivery error",
            )
        return sent, error


class CheckoutOrchestrator:
    def __init__(
        self,
        store,
        gateway,
        finalizer: OrderFinalizer,
        default_currency: str = "INR",
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.finalizer = finalizer
        self.default_currency = default_currency
        self.logger = logger or logging.getLogger(__name__)

    def initiate(
        self,
        customer_id: ObjectId,
        amount,
        currency: Optional[str] = None,
        items: Optional[List] = None,
        delivery_address: Optional[Dict] = None,
    ) -> Dict[str, object]:
        amount_value = parse_positive_amount(amount)
        currency_code = normalize_currency(currency or self.default_currency)
        receipt = f"rcpt_{uuid4().hex}"

        intent = self.gateway.create_intent(amount_value, currency_code, receipt)
        if not intent.intent_id:
            self.logger.error("Gateway returned no intent id for receipt %s", receipt)
            raise GatewayUnavailable()

        now = datetime.utcnow()
        self.store.payments.insert_one(
            {
                "customer": customer_id,
                "intent_id": intent.intent_id,
                "receipt": receipt,
                "amount": amount_value,
                "currency": currency_code,
                "status": PAYMENT_CREATED,
                "signature": None,
                "payment_id": None,
                "method": None,
                "order": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        self.logger.info("Created payment intent %s for customer %s", intent.intent_id, customer_id)

        return {
            "intentId": intent.intent_id,
            "amount": intent.amount,
            "currency": intent.currency,
            "receipt": receipt,
            "items": items if isinstance(items, list) else [],
            "deliveryAddress": delivery_address if isinstance(delivery_address, dict) else {},
        }

    def confirm(
        self,
        customer_id: ObjectId,
        payment_reference,
        signature: Optional[str],
        shipping_address: Optional[Dict],
    ) -> Dict[str, object]:
        reference = str(payment_reference or "").strip()
        if not reference:
            raise ValidationError("A payment id is required to confirm checkout.")
        address = normalize_address_payload(shipping_address)
        if not is_complete_address(address):
            raise ValidationError(
                "A complete shipping address is required.",
                details={"required": list(ADDRESS_REQUIRED_FIELDS)},
            )

        gateway_payment = self.gateway.fetch_status(reference)
        intent_id = gateway_payment.intent_id or reference
        payment_record = self.store.payments.find_one({"intent_id": intent_id, "customer": customer_id})
        if not payment_record:
            self.logger.warning(
                "Payment %s (intent %s) does not match a payment of customer %s",
                reference,
                intent_id,
                customer_id,
            )
            raise PaymentMismatch()

        response = gateway_payment.to_status_payload()

        existing_order = self.finalizer.find_order_for_payment(payment_record["_id"])
        if existing_order:
            response.update(orderId=str(existing_order["_id"]), order=serialize_order(existing_order), duplicate=True)
            return response

        if not gateway_payment.captured:
            if gateway_payment.status == FAILED and payment_record.get("status") == PAYMENT_CREATED:
                self.store.payments.update_one(
                    {"_id": payment_record["_id"], "status": PAYMENT_CREATED},
                    {
                        "$set": {
                            "status": FAILED,
                            "payment_id": gateway_payment.payment_id,
                            "signature": signature or None,
                            "updated_at": datetime.utcnow(),
                        }
                    },
                )
            return response

        result = self.finalizer.finalize(customer_id, payment_record, gateway_payment, signature, address)
        response.update(
            orderId=str(result.order["_id"]),
            order=serialize_order(result.order),
            duplicate=not result.created,
        )
        if result.created:
            response["emailSent"] = result.email_sent
            if result.email_error:
                response["emailError"] = result.email_error
        return response


def list_customer_orders(store, customer_id: ObjectId) -> List[Dict[str, object]]:
    customer = store.customers.find_one({"_id": customer_id}) or {}
    order_ids = [order_id for order_id in customer.get("orders") or [] if isinstance(order_id, ObjectId)]
    if not order_ids:
        return []
    cursor = store.orders.find({"_id": {"$in": order_ids}}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
    return [serialize_order(document) for document in cursor]


def list_payments(store) -> List[Dict[str, object]]:
    payment_documents = list(store.payments.find().sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
    customer_ids = list({document.get("customer") for document in payment_documents if document.get("customer")})
    customers = {}
    if customer_ids:
        customers = {
            document["_id"]: document for document in store.customers.find({"_id": {"$in": customer_ids}})
        }
    return [
        serialize_payment(document, customers.get(document.get("customer")))
        for document in payment_documents
    ]
