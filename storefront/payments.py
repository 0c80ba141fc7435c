"""Stripe Checkout sessions and the redirect-based payment confirmation.

An order becomes paid only after the session is re-read from Stripe and
reports ``payment_status == "paid"``; the status passed around by the
client redirect is never trusted.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Dict, Optional

import requests
import stripe

from .errors import ConflictError, ExternalServiceError, NotFoundError, ValidationError
from .store import normalize_object_id_value

PAID = "paid"
NOT_PAID = "not_paid"
SESSION_NOT_FOUND = "session_not_found"

SUCCESS_PATH = "/dashboard/payment-success?session_id={CHECKOUT_SESSION_ID}"
CANCEL_PATH = "/dashboard/payment-cancelled"


def to_minor_units(raw_price) -> int:
    """Convert a decimal price to integer minor units, truncating toward zero."""
    try:
        price = Decimal(str(raw_price).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("`order_price` must be a valid number.")
    if not price.is_finite():
        raise ValidationError("`order_price` must be a valid number.")

    amount = int((price * 100).to_integral_value(rounding=ROUND_DOWN))
    if amount <= 0:
        raise ValidationError("`order_price` must be greater than zero.")
    return amount


@dataclass
class PaymentConfirmation:
    status: str
    session_id: str
    order_id: Optional[str] = None
    provider_status: Optional[str] = None
    already_paid: bool = False
    modified_count: int = 0

    @property
    def http_status(self) -> int:
        return 404 if self.status == SESSION_NOT_FOUND else 200

    def to_dict(self) -> Dict[str, object]:
        return {
            "status": self.status,
            "sessionId": self.session_id,
            "orderId": self.order_id,
            "paymentStatus": self.provider_status,
            "alreadyPaid": self.already_paid,
            "modifiedCount": self.modified_count,
        }


class StripeGateway:
    """Thin wrapper around the Stripe Checkout Session API.

    The API key is sent per request, but the HTTP timeout and the network
    retry count live on the ``stripe`` module and are process-wide: the most
    recently built gateway sets them for every app in the process.
    """

    def __init__(self, api_key: str, currency: str = "bdt", timeout: float = 10, max_network_retries: int = 2, logger=None):
        self.api_key = (api_key or "").strip()
        self.currency = (currency or "bdt").lower()
        self.logger = logger
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(
            timeout=timeout, session=requests.Session()
        )

    def _require_key(self):
        if not self.api_key:
            raise ExternalServiceError("Stripe is not configured on the server.")

    def create_checkout_session(self, *, amount: int, title: str, order_id: str, customer_email: str, success_url: str, cancel_url: str):
        self._require_key()
        try:
            return stripe.checkout.Session.create(
                api_key=self.api_key,
                line_items=[
                    {
                        "price_data": {
                            "currency": self.currency,
                            "unit_amount": amount,
                            "product_data": {"name": f"Please pay for {title}"},
                        },
                        "quantity": 1,
                    }
                ],
                mode="payment",
                metadata={"orderId": order_id},
                customer_email=customer_email,
                success_url=success_url,
                cancel_url=cancel_url,
            )
        except stripe.StripeError as exc:
            msg = getattr(exc, "user_message", None) or str(exc)
            if self.logger:
                self.logger.error("Stripe error creating checkout session: %s", msg)
            raise ExternalServiceError(f"Stripe error: {msg}") from exc

    def retrieve_checkout_session(self, session_id: str):
        """Return the session, or None when Stripe does not know the id."""
        self._require_key()
        try:
            return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return None
            if self.logger:
                self.logger.error("Stripe rejected session lookup %s: %s", session_id, exc)
            raise ExternalServiceError(f"Stripe error: {exc}") from exc
        except stripe.StripeError as exc:
            if self.logger:
                self.logger.error("Stripe error retrieving session %s: %s", session_id, exc)
            raise ExternalServiceError(f"Stripe error: {exc}") from exc


class PaymentService:
    def __init__(self, store, gateway, client_domain: str, mailer=None, logger=None):
        self.store = store
        self.gateway = gateway
        self.client_domain = (client_domain or "").rstrip("/")
        self.mailer = mailer
        self.logger = logger

    def create_checkout_session(self, payment_info) -> str:
        if not isinstance(payment_info, dict):
            raise ValidationError("Request body must be a JSON object.")

        missing = [
            field
            for field in ("order_price", "title", "id", "email")
            if payment_info.get(field) in (None, "")
        ]
        if missing:
            raise ValidationError(f"Missing payment fields: {', '.join(missing)}.")

        amount = to_minor_units(payment_info["order_price"])
        order_id = str(payment_info["id"]).strip()
        order_object_id = normalize_object_id_value(order_id)

        if order_object_id is not None:
            existing = self.store.orders.find_one(
                {"_id": order_object_id}, {"payment_status": 1}
            )
            if existing and existing.get("payment_status") == PAID:
                raise ConflictError("This order has already been paid.")

        session = self.gateway.create_checkout_session(
            amount=amount,
            title=str(payment_info["title"]),
            order_id=order_id,
            customer_email=str(payment_info["email"]).strip(),
            success_url=f"{self.client_domain}{SUCCESS_PATH}",
            cancel_url=f"{self.client_domain}{CANCEL_PATH}",
        )
        if self.logger:
            self.logger.info("Created checkout session %s for order %s", session.id, order_id)

        if order_object_id is not None:
            self.store.orders.update_one(
                {"_id": order_object_id, "payment_status": {"$ne": PAID}},
                {"$set": {"checkout_session_id": session.id}},
            )

        return session.url

    def confirm_payment(self, session_id: Optional[str], now: Optional[datetime] = None) -> PaymentConfirmation:
        session_key = str(session_id or "").strip()
        if not session_key:
            raise ValidationError("Provide the checkout `session_id` to confirm.")

        session = self.gateway.retrieve_checkout_session(session_key)
        if session is None:
            return PaymentConfirmation(status=SESSION_NOT_FOUND, session_id=session_key)

        provider_status = getattr(session, "payment_status", None)
        if provider_status != PAID:
            if self.logger:
                self.logger.info(
                    "Checkout session %s is not paid yet (status %s)", session_key, provider_status
                )
            return PaymentConfirmation(
                status=NOT_PAID, session_id=session_key, provider_status=provider_status
            )

        order_id = self._order_id_from(session)
        order_object_id = normalize_object_id_value(order_id)
        if order_object_id is None:
            raise NotFoundError("The paid session does not reference a known order.")

        paid_at = now or datetime.utcnow()
        result = self.store.orders.update_one(
            {"_id": order_object_id, "payment_status": {"$ne": PAID}},
            {
                "$set": {
                    "payment_status": PAID,
                    "paidAt": paid_at,
                    "checkout_session_id": session_key,
                }
            },
        )

        confirmation = PaymentConfirmation(
            status=PAID,
            session_id=session_key,
            order_id=str(order_object_id),
            provider_status=provider_status,
            modified_count=result.modified_count,
        )

        if result.matched_count == 0:
            if not self.store.orders.find_one({"_id": order_object_id}, {"_id": 1}):
                raise NotFoundError("Order not found.")
            confirmation.already_paid = True
            return confirmation

        if self.logger:
            self.logger.info("Order %s marked paid by session %s", order_object_id, session_key)
        self._send_receipt(order_object_id)
        return confirmation

    @staticmethod
    def _order_id_from(session) -> Optional[str]:
        metadata = getattr(session, "metadata", None)
        try:
            return metadata["orderId"]
        except (KeyError, TypeError):
            return None

    def _send_receipt(self, order_object_id):
        if not self.mailer or not self.mailer.enabled:
            return
        order_document = self.store.orders.find_one({"_id": order_object_id})
        if not order_document:
            return
        sent, error = self.mailer.send_payment_receipt(order_document)
        if not sent and self.logger:
            self.logger.warning("Payment receipt for order %s not sent: %s", order_object_id, error)
