"""
Shared fixtures: an in-memory SQLite database rebuilt for every test, a
seeded company with an admin user, and a FastAPI TestClient bound to the
same session.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_AI_FEATURES"] = "false"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["CS_WEBHOOK_URL"] = ""

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import models  # noqa: E402,F401
from database import Base, SessionLocal, engine, get_db  # noqa: E402
from main import app  # noqa: E402
from models import Cart, CartItem, Company, Customer, User  # noqa: E402
from routes.auth import create_access_token, get_password_hash  # noqa: E402

NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def company(db):
    company = Company(name="Acme Outfitters", code="ACME")
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


@pytest.fixture
def other_company(db):
    company = Company(name="Globex", code="GLOBEX")
    db.add(company)
    db.commit()
    db.refresh(company)
    return company


@pytest.fixture
def user(db, company):
    user = User(
        username="admin",
        password_hash=get_password_hash("secret"),
        role="admin",
        name="Acme Admin",
        company_id=company.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def customer(db, company):
    customer = Customer(
        company_id=company.id,
        first_name="Dana",
        last_name="Reyes",
        email="dana@example.com",
        phone="+15550001111",
        created_at=NOW - timedelta(days=90),
    )
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


@pytest.fixture
def make_cart(db):
    """Build a cart directly, bypassing the service, with a chosen activity time."""

    def _make(company, customer=None, items=None, last_activity_at=None, status="ACTIVE"):
        items = items if items is not None else [("Trail Jacket", 120.0, 1), ("Wool Socks", 15.0, 2)]
        cart = Cart(
            company_id=company.id,
            customer_id=customer.id if customer else None,
            session_token=f"cart-{company.id}-{len(items)}-{os.urandom(4).hex()}",
            status=status,
            currency="USD",
            last_activity_at=last_activity_at or NOW,
            created_at=(last_activity_at or NOW) - timedelta(minutes=5),
        )
        for name, price, qty in items:
            cart.items.append(CartItem(product_name=name, unit_price=price, quantity=qty))
        cart.item_count = sum(qty for _, _, qty in items)
        cart.grand_total = round(sum(price * qty for _, price, qty in items), 2)
        db.add(cart)
        db.commit()
        db.refresh(cart)
        return cart

    return _make


@pytest.fixture
def client(db):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    # Not used as a context manager, so the startup seed never runs
    test_client = TestClient(app)
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(user):
    token = create_access_token({"sub": user.id, "role": user.role, "company_id": user.company_id})
    return {"Authorization": f"Bearer {token}"}
