"""Pytest fixtures for TidyHome tests."""

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import main
from cart import CartModel, MemoryStorage
from errors import PaymentProviderError
from orders_client import OrdersClient


@pytest.fixture
def mongo_db(monkeypatch):
    """In-memory MongoDB shared by the API and the database helpers."""
    db = mongomock.MongoClient()["tidyhome_test"]
    monkeypatch.setattr(database, "db", db)
    monkeypatch.setattr(main, "db", db)
    return db


@pytest.fixture
def client(mongo_db):
    return TestClient(main.app)


def _make_user(db, name, email, role="customer"):
    doc = {
        "name": name,
        "email": email,
        "password_hash": main.hash_password("secret123"),
        "role": role,
        "is_active": True,
    }
    db["user"].insert_one(doc)
    return doc


def _headers(user):
    return {"Authorization": f"Bearer {main.create_token(user)}"}


@pytest.fixture
def customer(mongo_db):
    return _make_user(mongo_db, "Jane Customer", "jane@example.com")


@pytest.fixture
def other_customer(mongo_db):
    return _make_user(mongo_db, "Olga Other", "olga@example.com")


@pytest.fixture
def admin(mongo_db):
    return _make_user(mongo_db, "Ada Admin", "ada@example.com", role="admin")


@pytest.fixture
def customer_headers(customer):
    return _headers(customer)


@pytest.fixture
def other_headers(other_customer):
    return _headers(other_customer)


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def service(mongo_db):
    doc = {
        "name": "Home Cleaning",
        "description": "Regular cleaning",
        "type": "home",
        "price": "FREE",
        "options": [
            {"id": "a", "name": "Bedroom", "icon": "bed", "price": "€10"},
            {"id": "b", "name": "Bathroom", "icon": "bath", "price": "€5"},
        ],
        "isActive": True,
    }
    mongo_db["service"].insert_one(doc)
    return doc


@pytest.fixture
def other_service(mongo_db):
    doc = {
        "name": "Window Cleaning",
        "description": "Inside and out",
        "type": "windows",
        "options": [{"id": "w", "name": "Window", "icon": "window", "price": "€3"}],
        "isActive": True,
    }
    mongo_db["service"].insert_one(doc)
    return doc


@pytest.fixture
def service_snapshot(service):
    """The service as the client receives it from GET /services/{id}."""
    return main.serialize(service)


@pytest.fixture
def provider(mongo_db, service):
    service_id = str(service["_id"])
    doc = {
        "name": "Sparkle Co",
        "title": "Cleaners",
        "description": "Insured company",
        "email": "hello@sparkle.example",
        "type": "company",
        "services": [service_id],
        "optionPrices": {service_id: {"a": 8}},
        "rating": 4.5,
        "isVerified": True,
        "isActive": True,
    }
    mongo_db["provider"].insert_one(doc)
    return doc


@pytest.fixture
def order_payload(service):
    return {
        "serviceId": str(service["_id"]),
        "selectedOptions": [{"optionId": "a", "quantity": 2}, {"optionId": "b", "quantity": 1}],
        "totalAmount": 25,
        "tax": 5,
        "grandTotal": 30,
        "address": {"street": "1 Main St", "city": "Paris", "zipCode": "75001", "country": "France"},
        "scheduledDate": "2030-01-15",
        "timeSlot": {"start": "09:00", "end": "12:00"},
        "paymentMethod": "card",
    }


@pytest.fixture
def filled_cart(service_snapshot):
    cart = CartModel()
    cart.set_selected_service(service_snapshot)
    cart.update_selected_option("a", 2)
    cart.update_selected_option("b", 1)
    cart.set_address(street="1 Main St", city="Paris", zipCode="75001", country="France")
    cart.set_schedule("2030-01-15", {"start": "09:00", "end": "12:00"})
    return cart


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def orders_client(client, customer):
    return OrdersClient(client, main.create_token(customer))


class FakePayPalActions:
    """Stands in for the ``actions`` object of the PayPal button callbacks."""

    def __init__(self, create_error=None, capture_error=None, capture_status="COMPLETED"):
        self.create_error = create_error
        self.capture_error = capture_error
        self.capture_status = capture_status
        self.created = []
        self.captures = 0

    def create_order(self, params):
        if self.create_error:
            raise PaymentProviderError(self.create_error)
        self.created.append(params)
        return f"PAYPAL-{len(self.created)}"

    def capture_order(self):
        self.captures += 1
        if self.capture_error:
            raise PaymentProviderError(self.capture_error)
        reference = self.created[-1]["purchase_units"][0]["reference_id"] if self.created else None
        return {
            "id": f"PAYPAL-{len(self.created)}",
            "status": self.capture_status,
            "payer": {"payer_id": "PAYER-1"},
            "purchase_units": [{
                "reference_id": reference,
                "payments": {"captures": [{"id": f"CAPTURE-{self.captures}", "status": self.capture_status}]},
            }],
        }


class FakeButton:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakePayPalSdk:
    def __init__(self):
        self.buttons = []

    def render_buttons(self, create_order, on_approve, on_error, on_cancel):
        button = FakeButton()
        button.callbacks = (create_order, on_approve, on_error, on_cancel)
        self.buttons.append(button)
        return button


class BlockedPopups:
    def popups_allowed(self):
        return False


@pytest.fixture
def paypal_actions():
    return FakePayPalActions()


@pytest.fixture
def make_actions():
    return FakePayPalActions


@pytest.fixture
def paypal_sdk():
    return FakePayPalSdk()


@pytest.fixture
def blocked_popups():
    return BlockedPopups()
