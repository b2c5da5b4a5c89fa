"""Pytest fixtures for shopkeep tests."""

import mongomock
import pytest
from bson import ObjectId
from flask_jwt_extended import create_access_token

from shopkeep.app import create_app
from shopkeep.errors import GatewayError
from shopkeep.events import EventBus
from shopkeep.gateway import GatewayPayment, PaymentIntent
from shopkeep.principals import ADMIN, CUSTOMER, hash_password

CUSTOMER_PASSWORD = "correct horse battery"
SHIPPING_ADDRESS = {
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "postcode": "560001",
    "country": "IN",
}


class FakeGateway:
    """In-memory stand-in for the Razorpay adapter."""

    def __init__(self):
        self.intents = []
        self.payments = {}
        self.create_error = None
        self.fetch_error = None

    def create_intent(self, amount, currency, receipt):
        if self.create_error:
            raise self.create_error
        intent = PaymentIntent(
            intent_id=f"order_{len(self.intents) + 1:04d}",
            amount=amount * 100,
            currency=currency,
            receipt=receipt,
        )
        self.intents.append(intent)
        return intent

    def set_payment(self, payment_id, intent_id, status, amount=130000, currency="INR", method="card"):
        self.payments[payment_id] = GatewayPayment(
            payment_id=payment_id,
            intent_id=intent_id,
            status=status,
            method=method,
            amount=amount,
            currency=currency,
        )

    def fetch_status(self, payment_id):
        if self.fetch_error:
            raise self.fetch_error
        try:
            return self.payments[payment_id]
        except KeyError:
            raise GatewayError("The payment could not be found at the payment provider.")


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.error = None

    def send(self, recipient_email, subject, html, text=""):
        if self.error:
            raise self.error
        self.sent.append({"to": recipient_email, "subject": subject, "html": html, "text": text})
        return True, None


@pytest.fixture
def database():
    return mongomock.MongoClient()["shopkeep_test"]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def event_bus():
    return EventBus(queue_size=10)


@pytest.fixture
def app(database, gateway, notifier, event_bus):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": "test-secret-key-with-enough-length",
            "MONGO_TRANSACTIONS": False,
            "RAZORPAY_KEY_ID": "rzp_test_key",
        },
        database=database,
        gateway=gateway,
        notifier=notifier,
        event_bus=event_bus,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def store(app):
    return app.extensions["shopkeep"]["store"]


@pytest.fixture
def orchestrator(app):
    return app.extensions["shopkeep"]["orchestrator"]


@pytest.fixture
def customer(database):
    document = {
        "first_name": "Asha",
        "last_name": "Rao",
        "email": "asha@example.com",
        "password": hash_password(CUSTOMER_PASSWORD),
        "mobile_number": "9999999999",
        "orders": [],
    }
    document["_id"] = database.customers.insert_one(document).inserted_id
    return document


@pytest.fixture
def admin(database):
    document = {
        "first_name": "Dev",
        "last_name": "Ops",
        "email": "ops@example.com",
        "password": hash_password("admin-password"),
    }
    document["_id"] = database.admins.insert_one(document).inserted_id
    return document


@pytest.fixture
def products(database):
    # Live prices differ from the prices captured in the cart.
    product_a = {"_id": ObjectId(), "name": "Brass Lamp", "price": 650}
    product_b = {"_id": ObjectId(), "name": "Cotton Throw", "price": 350}
    database.products.insert_many([product_a, product_b])
    return product_a, product_b


@pytest.fixture
def cart(database, customer, products):
    product_a, product_b = products
    document = {
        "customer": customer["_id"],
        "items": [
            {"product": product_a["_id"], "price": 500, "quantity": 2},
            {"product": product_b["_id"], "price": 300, "quantity": 1},
        ],
    }
    document["_id"] = database.carts.insert_one(document).inserted_id
    return document


def make_headers(app, account_id, kind):
    with app.app_context():
        token = create_access_token(identity=str(account_id), additional_claims={"kind": kind})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def customer_headers(app, customer):
    return make_headers(app, customer["_id"], CUSTOMER)


@pytest.fixture
def admin_headers(app, admin):
    return make_headers(app, admin["_id"], ADMIN)
