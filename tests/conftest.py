from unittest.mock import MagicMock

import mongomock
import pytest

from storefront.app import create_app
from storefront.mailer import ReceiptMailer
from storefront.payments import StripeGateway
from storefront.store import DocumentStore


class MockCheckoutSession:
    def __init__(self, session_id="cs_test_123", payment_status="unpaid", order_id=None):
        self.id = session_id
        self.url = f"https://checkout.stripe.com/c/pay/{session_id}"
        self.payment_status = payment_status
        self.metadata = {"orderId": order_id} if order_id is not None else {}


@pytest.fixture
def store():
    database = mongomock.MongoClient()["storefront_test"]
    return DocumentStore(database, logger=MagicMock())


@pytest.fixture
def gateway():
    return StripeGateway("sk_test_dummy_key_for_testing", currency="bdt")


@pytest.fixture
def mailer():
    return ReceiptMailer("", sender_email="orders@example.com")


@pytest.fixture
def app(store, gateway, mailer):
    """Create and configure a new app instance for each test."""
    app = create_app(
        {"TESTING": True, "CLIENT_DOMAIN": "https://shop.example.com"},
        store=store,
        gateway=gateway,
        mailer=mailer,
    )
    yield app


@pytest.fixture
def client(app):
    """A test client for the app."""
    return app.test_client()
