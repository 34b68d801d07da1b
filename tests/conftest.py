"""
Shared fixtures: in-memory SQLite database, mocked Redis and notification
dispatch, and JWT helpers.
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_secret"
os.environ["RESEND_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""

from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import auth, crud, models
from storefront.database import Base, get_db
from storefront.main import app


def make_token(user_id: int, role: str = "customer", email: str = None) -> str:
    return auth.create_access_token({
        "sub": str(user_id),
        "email": email or f"user{user_id}@example.com",
        "role": role,
    })


def bearer(user_id: int, role: str = "customer") -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def mock_redis():
    """Create a mock Redis client."""
    redis = MagicMock()
    redis.get.return_value = None
    redis.setex.return_value = True
    redis.incr.return_value = 1
    redis.keys.return_value = []
    redis.delete.return_value = 1
    with patch("storefront.cache.redis_client", redis):
        yield redis


@pytest.fixture
def dispatch():
    """Capture notification dispatches instead of sending them."""
    with patch("storefront.notifications.dispatch", new_callable=AsyncMock) as mock_dispatch:
        mock_dispatch.return_value = {"email": True, "whatsapp": False}
        yield mock_dispatch


@pytest.fixture
def client(session_factory, mock_redis, dispatch):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides = {}


@pytest.fixture
def customer_headers():
    return bearer(1)


@pytest.fixture
def admin_headers():
    return bearer(99, role="admin")


@pytest.fixture
def products(db):
    """Three products with stock (10, 5, 20); quantities (2, 1, 4) total 2000."""
    items = [
        models.Product(name="Silk Saree", sku="SAR-001", category="women", price=Decimal("250.00"), stock_quantity=10),
        models.Product(name="Cotton Kurta", sku="KUR-002", category="women", price=Decimal("300.00"), stock_quantity=5),
        models.Product(name="Kids Lehenga", sku="LEH-003", category="kids", price=Decimal("300.00"), stock_quantity=20),
    ]
    db.add_all(items)
    db.commit()
    for item in items:
        db.refresh(item)
    return items


@pytest.fixture
def order_factory(db, products):
    def _make(
        quantities=(2, 1, 4),
        status="pending",
        payment_status="pending",
        payment_method="online",
        user_id=1,
        created_at=None,
        razorpay_order_id=None,
        shipping_address=None,
        total_amount=None,
        tracking_number=None,
    ):
        lines = [(product, qty) for product, qty in zip(products, quantities) if qty]
        total = total_amount if total_amount is not None else sum(
            (product.price * qty for product, qty in lines), Decimal("0")
        )
        order = models.Order(
            order_number=crud.generate_order_number(),
            user_id=user_id,
            user_email=f"user{user_id}@example.com",
            status=status,
            payment_status=payment_status,
            payment_method=payment_method,
            total_amount=total,
            delivery_fee=Decimal("0"),
            razorpay_order_id=razorpay_order_id,
            tracking_number=tracking_number,
            shipping_address=shipping_address or {"name": "Asha Rao", "city": "Pune"},
            created_at=created_at or datetime.utcnow(),
        )
        db.add(order)
        db.flush()
        for product, qty in lines:
            db.add(models.OrderItem(
                order_id=order.id,
                product_id=product.id,
                quantity=qty,
                price=product.price,
                total=product.price * qty,
            ))
        db.commit()
        db.refresh(order)
        return order

    return _make


def stock_levels(db, products):
    db.expire_all()
    return tuple(db.get(models.Product, product.id).stock_quantity for product in products)
