from datetime import datetime
from html import escape
from typing import Dict, Optional, Tuple

import resend

from .orders import safe_float


class ReceiptMailer:
    """Sends payment receipts through Resend when an API key is configured."""

    def __init__(self, api_key: str = "", sender_email: str = "orders@storefront.local", currency: str = "bdt"):
        self.api_key = (api_key or "").strip()
        self.sender_email = sender_email
        self.currency = (currency or "").upper()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def send_payment_receipt(self, order_document: Dict[str, object]) -> Tuple[bool, Optional[str]]:
        recipient_email = str(order_document.get("email") or "").strip()
        if not recipient_email:
            return False, "Missing customer email for the payment receipt."

        title = str(order_document.get("title") or "your order")
        price = safe_float(order_document.get("order_price"), 0.0)
        paid_at = order_document.get("paidAt")
        if not isinstance(paid_at, datetime):
            paid_at = datetime.utcnow()

        text_body = (
            f"Thank you for your purchase! We received your payment for {title} "
            f"({self.currency} {price:.2f}) on {paid_at.strftime('%Y-%m-%d %H:%M')} UTC."
        )
        html_body = (
            "<p>Thank you for your purchase!</p>"
            f"<p>We received your payment for <strong>{escape(title)}</strong> "
            f"({self.currency} {price:.2f}) on {paid_at.strftime('%Y-%m-%d %H:%M')} UTC.</p>"
        )
        payload: Dict[str, object] = {
            "from": f"Storefront <{self.sender_email}>",
            "to": [recipient_email],
            "subject": "Payment received",
            "html": html_body,
            "text": text_body,
        }
        return self.send(payload)

    def send(self, payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
        if not self.enabled:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None
