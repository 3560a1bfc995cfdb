import os
import tempfile
from decimal import Decimal
from pathlib import Path

# Must be set before the app modules are imported
_TMP_DIR = tempfile.mkdtemp(prefix="shop-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_TMP_DIR) / 'shop.db'}"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["EVENT_BACKEND"] = "none"
os.environ.pop("CARD_AUTH_URL", None)

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from app import cart as carts
from app import checkout
from app.db import SessionLocal, drop_schema, init_schema
from app.main import app
from app.models import Product
from shared.security import Principal


@pytest.fixture(autouse=True)
def schema():
    init_schema()
    yield
    app.dependency_overrides.clear()
    drop_schema()


@pytest.fixture()
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def make_product(db):
    def _make(name="Widget", price="10.00", quantity=10, discount="0"):
        product = Product(
            name=name,
            price=Decimal(price),
            discount=Decimal(discount),
            available_quantity=quantity,
        )
        db.add(product)
        db.commit()
        return product.id

    return _make


@pytest.fixture()
def stock_of():
    """Read stock through a separate session so nothing cached can leak in."""

    def _read(product_id):
        with SessionLocal() as session:
            return session.get(Product, product_id).available_quantity

    return _read


@pytest.fixture()
def shopper():
    return Principal(id=1)


@pytest.fixture()
def other_shopper():
    return Principal(id=2)


@pytest.fixture()
def admin():
    return Principal(id=99, role="ADMIN")


@pytest.fixture()
def place_order(db):
    """Fill a user's cart with (product_id, qty) lines and check out."""

    def _place(user_id, *lines, address="1 Main St"):
        for product_id, qty in lines:
            carts.add_item(db, user_id, product_id, qty)
        return checkout.create_order(db, user_id, {"address": address, "city": "Town", "phone": "555"})

    return _place


def token_for(user_id, role="GENERAL"):
    return jwt.encode({"sub": str(user_id), "role": role}, os.environ["JWT_SECRET"], algorithm="HS256")


def auth(user_id, role="GENERAL"):
    return {"Authorization": f"Bearer {token_for(user_id, role)}"}


@pytest.fixture()
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def headers():
    return auth
