import math
from datetime import datetime
from typing import Dict, List, Optional

from pymongo import DESCENDING

from .errors import ValidationError
from .store import clean_payload

# Only the payment confirmation flow may write these.
PAYMENT_FIELDS = ("payment_status", "paidAt", "checkout_session_id")
REQUIRED_ORDER_FIELDS = ("title", "order_price", "email")


def safe_float(value, default=None):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


class OrderService:
    def __init__(self, store, logger=None):
        self.store = store
        self.logger = logger

    def place_order(self, payload, now: Optional[datetime] = None):
        order_document = clean_payload(payload, reserved=PAYMENT_FIELDS + ("orderedAt",))

        missing = [
            field
            for field in REQUIRED_ORDER_FIELDS
            if order_document.get(field) in (None, "")
        ]
        if missing:
            raise ValidationError(
                f"Missing required order fields: {', '.join(missing)}."
            )

        price = safe_float(order_document.get("order_price"))
        if price is None or price <= 0:
            raise ValidationError("`order_price` must be a number greater than zero.")

        order_document["email"] = str(order_document["email"]).strip()
        order_document["orderedAt"] = now or datetime.utcnow()

        result = self.store.orders.insert_one(order_document)
        if self.logger:
            self.logger.info(
                "Placed order %s for %s", result.inserted_id, order_document["email"]
            )
        return result

    def list_orders_for_email(self, email: Optional[str]) -> List[Dict]:
        buyer_email = str(email or "").strip()
        if not buyer_email:
            raise ValidationError("Provide the `email` to list orders for.")

        cursor = self.store.orders.find({"email": buyer_email}).sort(
            [("orderedAt", DESCENDING), ("_id", DESCENDING)]
        )
        return list(cursor)
