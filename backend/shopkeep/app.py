import os
from datetime import timedelta
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from .checkout import (
    CheckoutOrchestrator,
    OrderFinalizer,
    list_customer_orders,
    list_payments,
)
from .errors import ShopkeepError
from .events import EventBus
from .gateway import RazorpayGateway
from .notifications import ResendNotifier
from .principals import (
    ADMIN,
    CUSTOMER,
    account_collection,
    authenticate,
    load_principal,
    normalize_email,
    serialize_profile,
)
from .store import Store

load_dotenv()


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def env_number(name: str, default, cast=int):
    try:
        return cast(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def replica_set_configured(mongo_uri: str) -> bool:
    """Multi-document transactions need a replica set; SRV URIs point at one."""
    uri = (mongo_uri or "").strip().lower()
    return uri.startswith("mongodb+srv://") or "replicaset=" in uri


def create_app(
    config_overrides: Optional[Dict[str, object]] = None,
    *,
    database=None,
    gateway=None,
    notifier=None,
    event_bus=None,
) -> Flask:
    """Create and configure the Flask application.

    ``database`` (a pymongo-compatible Database), ``gateway``, ``notifier``
    and ``event_bus`` replace the collaborators built from configuration.
    """
    app = Flask(__name__)

    trusted_proxy_hops = max(0, env_number("TRUSTED_PROXY_HOPS", 1))
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = timedelta(hours=1)
    app.config["MONGO_URI"] = os.getenv("MONGO_URI", "mongodb://localhost:27017/shopkeep")
    app.config["MONGO_TRANSACTIONS"] = env_flag(
        "MONGO_TRANSACTIONS", replica_set_configured(app.config["MONGO_URI"])
    )
    app.config["RAZORPAY_KEY_ID"] = os.getenv("RAZORPAY_KEY_ID", "")
    app.config["RAZORPAY_KEY_SECRET"] = os.getenv("RAZORPAY_KEY_SECRET", "")
    app.config["RAZORPAY_API_BASE"] = os.getenv("RAZORPAY_API_BASE", "https://api.razorpay.com")
    app.config["GATEWAY_TIMEOUT_SECONDS"] = env_number("GATEWAY_TIMEOUT_SECONDS", 10.0, float)
    app.config["CHECKOUT_CURRENCY"] = os.getenv("CHECKOUT_CURRENCY", "INR")
    app.config["RESEND_API_KEY"] = os.getenv("RESEND_API_KEY", "")
    app.config["ORDER_SENDER_EMAIL"] = os.getenv("ORDER_SENDER_EMAIL", "orders@shopkeep.store")
    app.config["EVENT_QUEUE_SIZE"] = env_number("EVENT_QUEUE_SIZE", 100)
    app.config["STREAM_HEARTBEAT_SECONDS"] = env_number("STREAM_HEARTBEAT_SECONDS", 15.0, float)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    # --- Initialize extensions ---
    allowed_origins = [
        "http://localhost:5173",
        "http://localhost:3000",
        os.getenv("FRONTEND_URL", "").strip(),
    ]
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)
    allowed_origins = [origin for origin in allowed_origins if origin]

    CORS(app, supports_credentials=True, origins=allowed_origins or "*")
    JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        client, db = mongo.cx, mongo.db
    else:
        client, db = database.client, database

    store = Store(
        client,
        db,
        use_transactions=bool(app.config["MONGO_TRANSACTIONS"]),
        logger=app.logger,
    )
    if not store.use_transactions:
        app.logger.warning(
            "MongoDB transactions are disabled; order finalization undoes partial writes instead."
        )
    store.ensure_indexes()

    if gateway is None:
        gateway = RazorpayGateway(
            app.config["RAZORPAY_KEY_ID"],
            app.config["RAZORPAY_KEY_SECRET"],
            base_url=app.config["RAZORPAY_API_BASE"],
            timeout=app.config["GATEWAY_TIMEOUT_SECONDS"],
            logger=app.logger,
        )
    if notifier is None:
        notifier = ResendNotifier(
            app.config["RESEND_API_KEY"],
            f"Shopkeep <{app.config['ORDER_SENDER_EMAIL']}>",
        )
    if event_bus is None:
        event_bus = EventBus(logger=app.logger, queue_size=app.config["EVENT_QUEUE_SIZE"])

    finalizer = OrderFinalizer(store, event_bus, notifier, logger=app.logger)
    orchestrator = CheckoutOrchestrator(
        store,
        gateway,
        finalizer,
        default_currency=app.config["CHECKOUT_CURRENCY"],
        logger=app.logger,
    )
    app.extensions["shopkeep"] = {
        "store": store,
        "gateway": gateway,
        "notifier": notifier,
        "event_bus": event_bus,
        "orchestrator": orchestrator,
    }

    # --- Helpers ---

    def error_response(exc: ShopkeepError):
        return jsonify(exc.to_payload()), exc.status_code

    def internal_error_response():
        return jsonify({"message": "Internal server error", "error": "internal-error"}), 500

    def require_principal(*kinds: str):
        principal = load_principal(store, get_jwt().get("kind"), get_jwt_identity())
        if not principal:
            return None, (jsonify({"message": "Unauthorized"}), 401)
        if kinds and principal.kind not in kinds:
            return (
                None,
                (
                    jsonify({"message": "You need additional permissions to perform this action."}),
                    403,
                ),
            )
        g.principal = principal
        return principal, None

    def login_as(kind: str):
        payload = request.get_json(silent=True) or {}
        email = normalize_email(payload.get("email"))
        password = str(payload.get("password", ""))

        if not email or not password:
            return jsonify({"message": "Email and password are required."}), 400

        principal = authenticate(store, kind, email, password)
        if not principal:
            return jsonify({"message": "Invalid credentials"}), 401

        token = create_access_token(identity=str(principal.id), additional_claims={"kind": kind})
        document = account_collection(store, kind).find_one({"_id": principal.id})
        app.logger.info("%s %s signed in", kind.capitalize(), email)
        return jsonify({"access_token": token, "user": serialize_profile(principal, document)})

    # --- ROUTES ---

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/api/auth/login/customer", methods=["POST"])
    def customer_login():
        return login_as(CUSTOMER)

    @app.route("/api/auth/login/admin", methods=["POST"])
    def admin_login():
        return login_as(ADMIN)

    @app.route("/api/auth/me", methods=["GET"])
    @jwt_required()
    def load_current_user():
        principal, auth_error = require_principal()
        if auth_error:
            return auth_error
        document = account_collection(store, principal.kind).find_one({"_id": principal.id})
        return jsonify({"success": True, "user": serialize_profile(principal, document)})

    @app.route("/api/checkout", methods=["POST"])
    @app.route("/api/payments/create-checkout-session", methods=["POST"])
    @jwt_required()
    def create_checkout():
        principal, auth_error = require_principal(CUSTOMER)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        try:
            result = orchestrator.initiate(
                principal.id,
                payload.get("amount"),
                currency=payload.get("currency"),
                items=payload.get("cartSnapshot") or payload.get("items"),
                delivery_address=payload.get("deliveryAddress"),
            )
        except ShopkeepError as exc:
            return error_response(exc)
        except Exception as exc:
            app.logger.error("Create Checkout Error: %s", exc)
            return internal_error_response()

        result["keyId"] = app.config["RAZORPAY_KEY_ID"]
        return jsonify(result), 200

    @app.route("/api/checkout/confirm", methods=["POST"])
    @app.route("/api/checkout/confirm/<payment_id>", methods=["POST"])
    @app.route("/api/payments/check-payment-status/<payment_id>", methods=["POST"])
    @jwt_required()
    def confirm_checkout(payment_id: Optional[str] = None):
        principal, auth_error = require_principal(CUSTOMER)
        if auth_error:
            return auth_error

        payload = request.get_json(silent=True) or {}
        payment_reference = (
            payload.get("paymentIntentId") or payload.get("paymentId") or payment_id
        )
        try:
            result = orchestrator.confirm(
                principal.id,
                payment_reference,
                payload.get("signature"),
                payload.get("shippingAddress") or payload.get("deliveryAddress"),
            )
        except ShopkeepError as exc:
            return error_response(exc)
        except Exception as exc:
            app.logger.error("Confirm Checkout Error: %s", exc)
            return internal_error_response()

        return jsonify(result), 200

    @app.route("/api/orders", methods=["GET"])
    @app.route("/api/orders/me", methods=["GET"])
    @jwt_required()
    def fetch_customer_orders():
        principal, auth_error = require_principal(CUSTOMER)
        if auth_error:
            return auth_error
        return jsonify({"orders": list_customer_orders(store, principal.id)})

    @app.route("/api/admin/payments", methods=["GET"])
    @jwt_required()
    def all_payments():
        _, auth_error = require_principal(ADMIN)
        if auth_error:
            return auth_error
        return jsonify({"message": "Payments fetched successfully", "payments": list_payments(store)})

    @app.route("/api/admin/orders/stream", methods=["GET"])
    @jwt_required()
    def order_stream():
        _, auth_error = require_principal(ADMIN)
        if auth_error:
            return auth_error
        return Response(
            event_bus.stream(app.config["STREAM_HEARTBEAT_SECONDS"]),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
