# tests/conftest.py
"""
Shared fixtures: an in-memory SQLite database per test, a frozen clock, and
the service graph wired the same way ``create_app`` wires it.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace.config import Config
from marketplace.database import UnitOfWork, init_database
from marketplace.models import Product, ProductStatus, Vendor, VendorStatus, VendorTier
from marketplace.observability import reset_metrics
from marketplace.services import (
    InventoryLedger,
    NotificationService,
    OrderService,
    PayoutService,
    RewardService,
    SettingsService,
)
from marketplace.settings import RewardSettings


class FrozenClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def uow(session_factory):
    with UnitOfWork.open(session_factory) as unit:
        yield unit


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def reward_settings():
    return RewardSettings()


@pytest.fixture
def notifier():
    return NotificationService()


@pytest.fixture
def inventory():
    return InventoryLedger()


@pytest.fixture
def rewards(reward_settings, notifier, clock):
    return RewardService(reward_settings, notifier=notifier, clock=clock)


@pytest.fixture
def orders(inventory, rewards, clock):
    return OrderService(inventory, rewards, config=Config, clock=clock)


@pytest.fixture
def payouts(reward_settings, notifier, clock):
    return PayoutService(reward_settings, notifier=notifier, config=Config, clock=clock)


@pytest.fixture
def platform_settings(reward_settings, clock):
    return SettingsService(base=reward_settings, clock=clock)


@pytest.fixture
def make_vendor(uow):
    def _make_vendor(points=0, tier=VendorTier.BRONZE, status=VendorStatus.APPROVED, total_sales=0, name=None):
        suffix = uuid4().hex[:8]
        with uow.atomic() as session:
            vendor = Vendor(
                name=name or f"Club {suffix}",
                email=f"club_{suffix}@example.com",
                status=status,
                reward_points=points,
                tier=tier,
                total_sales=total_sales,
            )
            session.add(vendor)
            session.flush()
            vendor_id = vendor.vendorID
        return vendor_id

    return _make_vendor


@pytest.fixture
def make_product(uow):
    def _make_product(vendor_id, price="100.00", stock=10, status=ProductStatus.ACTIVE, name=None):
        with uow.atomic() as session:
            product = Product(
                vendorID=vendor_id,
                name=name or f"Jersey {uuid4().hex[:6]}",
                price=Decimal(price),
                stock=stock,
                status=status,
            )
            session.add(product)
            session.flush()
            product_id = product.productID
        return product_id

    return _make_product


@pytest.fixture
def delivery_info():
    return {
        "full_name": "Rahim Uddin",
        "phone": "01700000000",
        "address": "House 12, Road 5",
        "city": "Dhaka",
        "district": "Dhaka",
        "division": "Dhaka",
        "postal_code": "1207",
    }


@pytest.fixture
def place_order(orders, uow, delivery_info):
    def _place_order(lines, payment_method="cash_on_delivery", buyer_id=1, district=None):
        info = dict(delivery_info)
        if district:
            info["district"] = district
        return orders.create_order(
            uow,
            buyer_id=buyer_id,
            items=[{"product_id": product_id, "quantity": quantity} for product_id, quantity in lines],
            delivery_info=info,
            payment_method=payment_method,
        )

    return _place_order


@pytest.fixture
def deliver_order(orders, uow):
    """Ship every line item of an order, then confirm delivery."""

    def _deliver(order_id):
        order = orders.get_order(uow, order_id)
        for line_item_id in [item.lineItemID for item in order.items]:
            orders.ship_line_item(uow, line_item_id, tracking_code=f"TRK{line_item_id}", carrier="Pathao")
        return orders.confirm_delivery(uow, order_id)

    return _deliver
