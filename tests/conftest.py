import copy

import mongomock
import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from errors import GatewayUnavailable, SessionNotFound
from payments import (
    STATUS_CREATED,
    STATUS_PAID,
    CheckoutHandle,
    CheckoutSession,
    to_minor_units,
)
from reconciliation import ReconciliationService
from stores import InventoryStore, OrderLedger

JWT_SECRET = "plantnet-test-secret-key-long-enough-for-hs256"


class FakeGateway:
    """In-memory stand-in for the hosted checkout provider."""

    def __init__(self):
        self.sessions = {}
        self.unavailable_calls = 0
        self.create_calls = 0
        self.retrieve_calls = 0

    def create_session(self, product, quantity, customer, success_url, cancel_url):
        self.create_calls += 1
        if self.unavailable_calls:
            self.unavailable_calls -= 1
            raise GatewayUnavailable()
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = CheckoutSession(
            session_id=session_id,
            status=STATUS_CREATED,
            payment_intent_id=None,
            amount_total=to_minor_units(product["price"]) * quantity,
            currency="usd",
            metadata={
                "plantId": str(product["_id"]),
                "quantity": str(quantity),
                "customerEmail": customer.get("email", ""),
                "customerName": customer.get("name", ""),
            },
        )
        return CheckoutHandle(session_id, f"https://checkout.stripe.test/pay/{session_id}")

    def mark_paid(self, session_id, payment_intent_id):
        session = self.sessions[session_id]
        session.status = STATUS_PAID
        session.payment_intent_id = payment_intent_id

    def retrieve_session(self, session_id):
        self.retrieve_calls += 1
        if self.unavailable_calls:
            self.unavailable_calls -= 1
            raise GatewayUnavailable()
        if session_id not in self.sessions:
            raise SessionNotFound(session_id)
        return copy.deepcopy(self.sessions[session_id])


@pytest.fixture
def db():
    return mongomock.MongoClient().plantnet


@pytest.fixture
def inventory(db):
    store = InventoryStore(db.plants)
    store.ensure_indexes()
    return store


@pytest.fixture
def ledger(db):
    store = OrderLedger(db.orders)
    store.ensure_indexes()
    return store


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(inventory, ledger, gateway):
    return ReconciliationService(inventory, ledger, gateway, retry_attempts=3, retry_backoff=0)


@pytest.fixture
def seller():
    return {"name": "Rosa Green", "email": "seller@plantnet.test", "image": ""}


@pytest.fixture
def plant_id(inventory, seller):
    return str(
        inventory.insert(
            {
                "name": "Monstera Deliciosa",
                "description": "Split-leaf philodendron",
                "category": "Indoor",
                "image": "https://img.plantnet.test/monstera.jpg",
                "price": 10.0,
                "quantity": 5,
                "seller": seller,
            }
        )
    )


@pytest.fixture
def customer():
    return {"email": "buyer@plantnet.test", "name": "Sam Buyer"}


@pytest.fixture
def app(db, gateway):
    app = create_app(
        {
            "TESTING": True,
            "JWT_SECRET_KEY": JWT_SECRET,
            "CLIENT_URL": "http://localhost:5173",
            "PAYMENT_RETRY_BACKOFF_SECONDS": 0,
        },
        db=db,
        gateway=gateway,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    def build(email):
        with app.app_context():
            token = create_access_token(identity=email)
        return {"Authorization": f"Bearer {token}"}

    return build
