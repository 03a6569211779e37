"""
Pytest configuration and fixtures for the marketplace tests.
Each test gets a fresh in-memory SQLite database.
"""
import os
import uuid
from decimal import Decimal

import pytest
from unittest.mock import MagicMock

# Set test environment before importing app modules
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-unit-tests-only"
os.environ["PAYPACK_SANDBOX"] = "false"
os.environ["PAYPACK_WEBHOOK_VERIFY"] = "false"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.db.session import Base
from marketplace.models.user import User
from marketplace.models.vendor import Vendor
from marketplace.models.product import Product
from marketplace.models import order, reservation, payment, setting, audit_log  # noqa: F401
from marketplace.services.cart import Cart, JsonFileCartStorage
from marketplace.services.paypack_client import ChargeResult


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    """SQLAlchemy session bound to the in-memory database."""
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(role: str = "customer", email: str | None = None) -> User:
        u = User(
            id=str(uuid.uuid4()),
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.test",
            full_name=role.title(),
            role=role,
            is_active=True,
        )
        db.add(u)
        db.commit()
        return u
    return _make


@pytest.fixture
def make_vendor(db, make_user):
    def _make(name: str = "Test Vendor", category: str = "lodging", owner: User | None = None) -> Vendor:
        owner = owner or make_user("vendor")
        v = Vendor(
            id=str(uuid.uuid4()),
            owner_user_id=owner.id,
            name=name,
            category=category,
            balance=Decimal("0.00"),
            balance_version=0,
        )
        db.add(v)
        db.commit()
        return v
    return _make


@pytest.fixture
def make_product(db):
    def _make(vendor: Vendor, name: str = "Item", price: str = "10.00", rate_unit: str = "fixed",
              reservable: bool = False, available: bool = True, **extra) -> Product:
        p = Product(
            id=str(uuid.uuid4()),
            vendor_id=vendor.id,
            name=name,
            price=Decimal(price),
            rate_unit=rate_unit,
            is_reservable=reservable,
            is_available=available,
            **extra,
        )
        db.add(p)
        db.commit()
        return p
    return _make


@pytest.fixture
def cart_storage(tmp_path) -> JsonFileCartStorage:
    return JsonFileCartStorage(str(tmp_path / "carts"))


@pytest.fixture
def cart(cart_storage) -> Cart:
    return Cart("test-cart", storage=cart_storage, fee_rate=Decimal("0.05"))


@pytest.fixture
def customer_info() -> dict:
    return {"name": "Aline Uwase", "phone": "+250788123456", "email": "aline@example.test", "address": "KG 11 Ave, Kigali"}


@pytest.fixture
def mock_paypack() -> MagicMock:
    """Stands in for PaypackClient; every charge gets a fresh pending ref."""
    client = MagicMock()
    client.initiate_charge = MagicMock(side_effect=lambda phone, amount: ChargeResult(gateway_ref=f"ref-{uuid.uuid4().hex[:10]}", raw={}))
    return client


@pytest.fixture
def client(db, cart_storage, mock_paypack):
    from fastapi.testclient import TestClient
    from marketplace.main import app
    from marketplace.db.session import get_db
    from marketplace.api.deps import get_cart_storage, get_paypack

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_cart_storage] = lambda: cart_storage
    app.dependency_overrides[get_paypack] = lambda: mock_paypack
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    from marketplace.core.security import create_access_token

    def _header(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id, role=user.role)}"}
    return _header
