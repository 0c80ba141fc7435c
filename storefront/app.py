import atexit
import os
from typing import Dict, Optional

import stripe
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

from .catalog import MAX_PAGE_SIZE, CatalogService
from .errors import StorefrontError
from .mailer import ReceiptMailer
from .orders import OrderService
from .payments import PaymentService, StripeGateway
from .store import (
    DocumentStore,
    serialize_document,
    serialize_insert_result,
    serialize_update_result,
)
from .users import UserService

load_dotenv()


def env_flag(name: str, default: str = "true") -> bool:
    return str(os.getenv(name, default)).strip().lower() in {"1", "true", "yes", "on"}


def load_config() -> Dict[str, object]:
    return {
        "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017/storefront"),
        "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "storefront"),
        "MONGO_TIMEOUT_MS": int(os.getenv("MONGO_TIMEOUT_MS", "5000")),
        "MONGO_PING_ON_STARTUP": env_flag("MONGO_PING_ON_STARTUP"),
        "STRIPE_SECRET_KEY": os.getenv("STRIPE_SECRET_KEY", "").strip(),
        "STRIPE_CURRENCY": os.getenv("STRIPE_CURRENCY", "bdt").strip().lower() or "bdt",
        "STRIPE_TIMEOUT_SECONDS": float(os.getenv("STRIPE_TIMEOUT_SECONDS", "10")),
        "STRIPE_MAX_NETWORK_RETRIES": int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "2")),
        "CLIENT_DOMAIN": os.getenv("CLIENT_DOMAIN", "http://localhost:5173").strip(),
        "RESEND_API_KEY": os.getenv("RESEND_API_KEY", "").strip(),
        "RECEIPT_SENDER_EMAIL": os.getenv("RECEIPT_SENDER_EMAIL", "orders@storefront.local"),
        "CORS_ALLOWED_ORIGINS": os.getenv("CORS_ALLOWED_ORIGINS", ""),
        "TRUSTED_PROXY_HOPS": os.getenv("TRUSTED_PROXY_HOPS", "1"),
        "MAX_PAGE_SIZE": int(os.getenv("MAX_PAGE_SIZE", str(MAX_PAGE_SIZE))),
    }


def create_app(
    test_config: Optional[Dict[str, object]] = None,
    store: Optional[DocumentStore] = None,
    gateway: Optional[StripeGateway] = None,
    mailer: Optional[ReceiptMailer] = None,
) -> Flask:
    """Create and configure the Flask application.

    ``store``, ``gateway`` and ``mailer`` are built from configuration unless
    supplied by the caller.
    """
    app = Flask(__name__)
    app.config.update(load_config())
    if test_config:
        app.config.update(test_config)

    # Honor proxy headers so redirect URLs keep the public origin.
    try:
        trusted_proxy_hops = max(0, int(app.config["TRUSTED_PROXY_HOPS"]))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    allowed_origins = [
        origin.strip()
        for origin in str(app.config["CORS_ALLOWED_ORIGINS"] or "").split(",")
        if origin.strip()
    ]
    CORS(app, origins=allowed_origins or "*")

    # --- Collaborators ---
    if store is None:
        timeout_ms = app.config["MONGO_TIMEOUT_MS"]
        mongo = PyMongo(
            app,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        database = mongo.db
        if database is None:
            database = mongo.cx[app.config["MONGO_DB_NAME"]]
        store = DocumentStore(database, client=mongo.cx, logger=app.logger)
        atexit.register(store.close)
        if app.config["MONGO_PING_ON_STARTUP"]:
            store.connect()
    store.ensure_indexes()

    if gateway is None:
        gateway = StripeGateway(
            app.config["STRIPE_SECRET_KEY"],
            currency=app.config["STRIPE_CURRENCY"],
            timeout=app.config["STRIPE_TIMEOUT_SECONDS"],
            max_network_retries=app.config["STRIPE_MAX_NETWORK_RETRIES"],
            logger=app.logger,
        )
    if mailer is None:
        mailer = ReceiptMailer(
            app.config["RESEND_API_KEY"],
            sender_email=app.config["RECEIPT_SENDER_EMAIL"],
            currency=app.config["STRIPE_CURRENCY"],
        )

    catalog = CatalogService(store, logger=app.logger, max_page_size=app.config["MAX_PAGE_SIZE"])
    orders = OrderService(store, logger=app.logger)
    users = UserService(store, logger=app.logger)
    payments = PaymentService(
        store,
        gateway,
        client_domain=app.config["CLIENT_DOMAIN"],
        mailer=mailer,
        logger=app.logger,
    )
    app.extensions["storefront"] = {
        "store": store,
        "catalog": catalog,
        "orders": orders,
        "users": users,
        "payments": payments,
    }

    # --- Error handlers ---

    @app.errorhandler(StorefrontError)
    def handle_storefront_error(exc: StorefrontError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(PyMongoError)
    def handle_database_error(exc: PyMongoError):
        app.logger.error("Database error on %s %s: %s", request.method, request.path, exc)
        return (
            jsonify(
                {
                    "error": "external_service_error",
                    "message": "Database operation failed. Please try again later.",
                }
            ),
            502,
        )

    @app.errorhandler(stripe.StripeError)
    def handle_stripe_error(exc):
        app.logger.error("Stripe error on %s %s: %s", request.method, request.path, exc)
        return (
            jsonify(
                {
                    "error": "external_service_error",
                    "message": "Payment provider request failed.",
                }
            ),
            502,
        )

    def json_body():
        return request.get_json(silent=True)

    # --- Liveness ---

    @app.route("/")
    def index():
        return "storefront is running"

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    # --- Users ---

    @app.route("/users", methods=["GET"])
    def list_users():
        return jsonify([serialize_document(user) for user in users.list_users()])

    @app.route("/users/<email>/role", methods=["GET"])
    def get_user_role(email: str):
        return jsonify(users.get_role(email))

    @app.route("/users/<user_id>/role", methods=["PATCH"])
    def update_user_role(user_id: str):
        result = users.update_role(user_id, json_body())
        return jsonify(serialize_update_result(result))

    @app.route("/users", methods=["POST"])
    def create_user():
        created, inserted_id = users.create_user(json_body())
        if not created:
            return jsonify({"message": "user already exists"})
        return jsonify({"acknowledged": True, "insertedId": str(inserted_id)}), 201

    # --- Products ---

    @app.route("/all-products", methods=["GET"])
    def list_products():
        products, total = catalog.list_products(
            request.args.get("limit"), request.args.get("skip")
        )
        return jsonify(
            {
                "result": [serialize_document(product) for product in products],
                "totalProducts": total,
            }
        )

    @app.route("/all-products-limited", methods=["GET"])
    def list_featured_products():
        return jsonify([serialize_document(product) for product in catalog.list_featured()])

    @app.route("/productDetails/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return jsonify(serialize_document(catalog.get_product(product_id)))

    @app.route("/products", methods=["POST"])
    def create_product():
        result = catalog.create_product(json_body())
        return jsonify(serialize_insert_result(result)), 201

    # --- Orders ---

    @app.route("/order-product", methods=["POST"])
    def place_order():
        result = orders.place_order(json_body())
        return jsonify(serialize_insert_result(result)), 201

    @app.route("/my-orders", methods=["GET"])
    def list_my_orders():
        documents = orders.list_orders_for_email(request.args.get("email"))
        return jsonify([serialize_document(order) for order in documents])

    # --- Payments ---

    @app.route("/payment-checkout-session", methods=["POST"])
    def create_checkout_session():
        url = payments.create_checkout_session(json_body())
        return jsonify({"url": url})

    @app.route("/payment-success", methods=["PATCH"])
    def confirm_payment():
        confirmation = payments.confirm_payment(request.args.get("session_id"))
        return jsonify(confirmation.to_dict()), confirmation.http_status

    # --- Suspensions ---

    @app.route("/suspend/<user_id>", methods=["POST"])
    def suspend_user(user_id: str):
        result = users.suspend_user(user_id, json_body())
        return jsonify(serialize_update_result(result))

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 3000))
    create_app().run(host="0.0.0.0", port=port)
