import os
import tempfile
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select

_TMP = tempfile.mkdtemp(prefix="cloudimart-tests-")

# configuration is read at import time, so it has to be in place first
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/store.db")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("UPLOAD_DIR", os.path.join(_TMP, "uploads"))
os.environ["PAYCHANGU_SECRET_KEY"] = "sk-test"
os.environ["EVENT_BACKEND"] = "none"

from fastapi.testclient import TestClient  # noqa: E402

from cloudimart.db import Base, SessionLocal, engine  # noqa: E402
from cloudimart.errors import GatewayUnavailable  # noqa: E402
from cloudimart.gateway import CheckoutSession, GatewayVerification, PaymentGateway  # noqa: E402
from cloudimart.main import app, get_gateway  # noqa: E402
from cloudimart.models import (  # noqa: E402
    DELIVERY_PENDING,
    ORDER_PENDING_DELIVERY,
    Cart,
    CartItem,
    Delivery,
    Location,
    Order,
    Product,
    User,
)
from cloudimart.security import make_token  # noqa: E402

# a small square around campus, [lat, lng] vertices
CAMPUS_SQUARE = [[-11.43, 34.00], [-11.43, 34.02], [-11.41, 34.02], [-11.41, 34.00]]
INSIDE = (-11.42, 34.01)
OUTSIDE = (-11.50, 34.10)


class FakeGateway(PaymentGateway):
    """In-memory payment gateway; configure it per test."""

    def __init__(self) -> None:
        self.fail_initiate = False
        self.fail_verify = False
        self.verify_status = "pending"
        self.calls: list[dict] = []

    async def initiate(self, **kwargs) -> CheckoutSession:
        self.calls.append({"method": "initiate", **kwargs})
        if self.fail_initiate:
            raise GatewayUnavailable("Failed to initialize payment")
        tx_ref = kwargs["tx_ref"]
        return CheckoutSession(
            checkout_url=f"https://checkout.test/{tx_ref}",
            provider_ref=f"prov_{uuid.uuid4().hex[:8]}",
            raw={"status": "success"},
        )

    async def verify(self, tx_ref: str) -> GatewayVerification:
        self.calls.append({"method": "verify", "tx_ref": tx_ref})
        if self.fail_verify:
            raise GatewayUnavailable("Payment provider timeout")
        return GatewayVerification(
            status=self.verify_status,
            provider_ref=f"ref_{tx_ref}",
            raw={"status": "success", "data": {"status": self.verify_status, "tx_ref": tx_ref}},
        )


class Factory:
    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, name="Chikondi Banda", phone="+265991234567", role="user", email=None):
        return self._save(
            User(
                name=name,
                email=email or f"{uuid.uuid4().hex[:10]}@example.com",
                phone_number=phone,
                role=role,
                is_active=True,
            )
        )

    def product(self, name="Notebook", price="2500.00", stock=10, published=True):
        return self._save(
            Product(name=name, description="", price=Decimal(price), stock=stock, published=published)
        )

    def zone(self, name="Main Campus", polygon=CAMPUS_SQUARE, center=None, radius_km=None, fee="500.00", active=True):
        lat, lng = center if center else (None, None)
        return self._save(
            Location(
                name=name,
                slug=f"{name.lower().replace(' ', '-')}-{uuid.uuid4().hex[:4]}",
                type="campus",
                latitude=lat,
                longitude=lng,
                radius_km=radius_km,
                polygon_coordinates=polygon,
                delivery_fee=Decimal(fee),
                is_active=active,
                is_deliverable=True,
            )
        )

    def cart(self, user, *lines):
        """lines: (product, quantity) pairs; replaces whatever the user had."""
        cart = self.db.execute(select(Cart).where(Cart.user_id == user.id)).scalar_one_or_none()
        if cart is None:
            cart = Cart(user_id=user.id)
            self.db.add(cart)
        cart.items.clear()
        for product, quantity in lines:
            cart.items.append(CartItem(product_id=product.id, quantity=quantity))
        return self._save(cart)

    def order(self, user, code="ORD-20260101-ABC123", total="5000.00", status=ORDER_PENDING_DELIVERY):
        order = Order(
            order_code=code,
            user_id=user.id,
            total=Decimal(total),
            delivery_fee=Decimal("500.00"),
            delivery_address="Hostel 4, Room 12",
            status=status,
        )
        order.delivery = Delivery(status=DELIVERY_PENDING, verification_code="K7Q2ZP")
        return self._save(order)


@pytest.fixture()
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db(schema):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def factory(db):
    return Factory(db)


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def client(schema, gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth(user) -> dict:
    return {"Authorization": f"Bearer {make_token(user.id, role=user.role)}"}


@pytest.fixture()
def headers_for():
    return auth
