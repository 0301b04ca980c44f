from decimal import Decimal

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from auth import create_access_token, hash_password, login_rate_limiter
from database import create_document, ensure_indexes
from main import app
from schemas import CreateOrderPayload, Product, Role, User


@pytest.fixture
def db():
    test_db = mongomock.MongoClient().storefront_test
    ensure_indexes(test_db)
    return test_db


@pytest.fixture
def client(db):
    app.dependency_overrides[database.get_db] = lambda: db
    login_rate_limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_user(db, email="alice@example.com", password="secret123", role=Role.USER, name="Alice"):
    user = User(name=name, email=email, email_key=email.lower(), password_hash=hash_password(password), role=role)
    return create_document(db, "users", user)


def make_product(db, name="Shirt", price="10.00", discount_price=None, is_active=True, **extra):
    product = Product(
        name=name,
        price=Decimal(price),
        discount_price=Decimal(discount_price) if discount_price is not None else None,
        is_active=is_active,
        stock_quantity=extra.pop("stock_quantity", 10),
        **extra,
    )
    return create_document(db, "products", product)


def bearer(email, role=Role.USER):
    return {"Authorization": f"Bearer {create_access_token(email, role)}"}


def order_body(**overrides):
    data = dict(
        shipping_address="123 Main Street",
        shipping_city="Ho Chi Minh City",
        shipping_district="District 1",
        shipping_ward="Ward 1",
        shipping_phone="0123456789",
        payment_method="COD",
    )
    data.update(overrides)
    return data


def order_payload(**overrides):
    return CreateOrderPayload(**order_body(**overrides))
