"""Pytest fixtures for storefront checkout tests."""

from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from pymongo.errors import ServerSelectionTimeoutError

from cart_service import CartCache
from checkout_service import CheckoutService, find_shipping_option
from database import new_id
from schemas import Address, PaymentInfo


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class UnreachableCollection:
    """Collection double whose every operation fails like a lost server."""

    def __init__(self, name):
        self.name = name

    def __getattr__(self, attr):
        def fail(*args, **kwargs):
            raise ServerSelectionTimeoutError(f"{self.name}.{attr}: no servers available")

        return fail


class UnreachableDatabase:
    def __getitem__(self, name):
        return UnreachableCollection(name)


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    yield client["storefront_test"]
    client.close()


@pytest.fixture
def unreachable_db():
    return UnreachableDatabase()


@pytest.fixture
def cart_cache():
    return CartCache()


@pytest.fixture
def clock():
    return FakeClock()


def seed_cart(db, cart_id="cart-1", items=(("prod-0001-aaaa", 25.0, 2),), anonymous_id="anon-1"):
    """Insert an active cart and its line items. Items are (product_id, price, quantity)."""
    now = datetime.now(timezone.utc)
    db["carts"].insert_one(
        {"id": cart_id, "anonymous_id": anonymous_id, "user_id": None, "status": "active", "updated_at": now}
    )
    for offset, (product_id, price, quantity) in enumerate(items):
        db["cart_items"].insert_one(
            {
                "id": new_id(),
                "cart_id": cart_id,
                "product_id": product_id,
                "variant_id": None,
                "quantity": quantity,
                "price": price,
                "product": None,
                "created_at": now + timedelta(milliseconds=offset),
            }
        )
    return cart_id


@pytest.fixture
def seeded_cart(db):
    return seed_cart(db)


@pytest.fixture
def shipping_address():
    return Address(
        first_name="Jane",
        last_name="Doe",
        email="jane@shopmail.com",
        phone="+1 (555) 010-2030",
        address1="12 Harbor Street",
        city="Portland",
        state="OR",
        postal_code="97201",
        country="US",
    )


def place_order(db, cache, address, cart_id="cart-1"):
    """Walk a cart through every checkout step and finalize it."""
    service = CheckoutService(db, cache)
    session = service.get_or_create_checkout_session(cart_id)
    service.update_shipping_address(session.id, address, guest_email=address.email, cart_id=cart_id)
    service.update_shipping_method(session.id, find_shipping_option("shipping-standard"), cart_id=cart_id)
    service.update_payment_info(
        session.id,
        PaymentInfo(type="credit_card", cardholder_name="Jane Doe", billing_address_same_as_shipping=True),
    )
    return service.create_order(session.id)


@pytest.fixture
def order(db, cart_cache, seeded_cart, shipping_address):
    return place_order(db, cart_cache, shipping_address, seeded_cart)
