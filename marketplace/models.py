# marketplace/models.py
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Enum as SAEnum,
    event,
)
from sqlalchemy.orm import relationship, validates

# Use a single, shared Base for all models
from marketplace.clock import as_utc
from marketplace.database import Base
from marketplace.errors import InvalidStateTransition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VendorStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class VendorTier(str, Enum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class ProductStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    BKASH = "bkash"
    NAGAD = "nagad"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class RewardAction(str, Enum):
    SALE = "sale"
    FIVE_STAR_REVIEW = "five_star_review"
    FAST_SHIPPING = "fast_shipping"
    FIRST_SALE = "first_sale"
    MILESTONE_10 = "milestone_10"
    MILESTONE_50 = "milestone_50"
    MILESTONE_100 = "milestone_100"
    COMPETITION_CREATED = "competition_created"
    MANUAL_ADDITION = "manual_addition"
    MANUAL_DEDUCTION = "manual_deduction"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


# Forward progress of the shared order / line item vocabulary
ORDER_PROGRESS = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}


class Vendor(Base):
    __tablename__ = 'Vendor'
    __table_args__ = (
        CheckConstraint('reward_points >= 0', name='ck_vendor_points_non_negative'),
    )

    vendorID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True)
    status = Column(
        SAEnum(VendorStatus, name="vendor_status", native_enum=False, validate_strings=True),
        default=VendorStatus.APPROVED,
        nullable=False,
    )
    reward_points = Column(Integer, nullable=False, default=0)
    tier = Column(
        SAEnum(VendorTier, name="vendor_tier", native_enum=False, validate_strings=True),
        default=VendorTier.BRONZE,
        nullable=False,
    )
    tier_updated_at = Column(DateTime(timezone=True))
    total_earnings = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_sales = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    products = relationship("Product", back_populates="vendor")
    ledger_entries = relationship("RewardLedgerEntry", back_populates="vendor", order_by="RewardLedgerEntry.entryID")
    payouts = relationship("Payout", back_populates="vendor", order_by="Payout.payoutID")


class Product(Base):
    __tablename__ = 'Product'
    __table_args__ = (
        CheckConstraint('stock >= 0', name='ck_product_stock_non_negative'),
        CheckConstraint('sales_count >= 0', name='ck_product_sales_non_negative'),
    )

    productID = Column(Integer, primary_key=True, autoincrement=True)
    vendorID = Column(Integer, ForeignKey('Vendor.vendorID'), nullable=False)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    sales_count = Column(Integer, nullable=False, default=0)
    status = Column(
        SAEnum(ProductStatus, name="product_status", native_enum=False, validate_strings=True),
        default=ProductStatus.ACTIVE,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    vendor = relationship("Vendor", back_populates="products")

    @property
    def is_listed(self) -> bool:
        return self.status == ProductStatus.ACTIVE


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(50), unique=True, nullable=False)
    buyer_id = Column(Integer, nullable=False, index=True)
    subtotal = Column(Numeric(12, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(
        SAEnum(PaymentMethod, name="payment_method", native_enum=False, validate_strings=True),
        nullable=False,
    )
    payment_status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    payment_reference = Column(String(255))
    payment_verified_at = Column(DateTime(timezone=True))
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING,
        nullable=False,
    )

    # Delivery information
    full_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=False)
    address = Column(Text, nullable=False)
    city = Column(String(100), nullable=False)
    district = Column(String(100), nullable=False)
    division = Column(String(100), nullable=False)
    postal_code = Column(String(20), nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    delivered_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))

    items = relationship(
        "OrderLineItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLineItem.lineItemID",
    )

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    @validates('total_amount')
    def _freeze_total(self, key, value):
        if self.total_amount is not None and Decimal(value) != Decimal(self.total_amount):
            raise InvalidStateTransition(
                "Order grand total is immutable once created",
                {"order_id": self.orderID},
            )
        return value

    @property
    def is_cancellable(self) -> bool:
        return OrderStatus(self.status) in {OrderStatus.PENDING, OrderStatus.CONFIRMED}

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateTransition(
                f"Invalid order status transition from {OrderStatus(self.status).value} to {new_status.value}",
                {"order_id": self.orderID, "from": OrderStatus(self.status).value, "to": new_status.value},
            )
        self.status = new_status

    def advance_to(self, new_status: OrderStatus) -> bool:
        """Push the order label forward; never moves it backward. Returns True when it moved."""
        current = OrderStatus(self.status)
        if ORDER_PROGRESS.get(new_status, -1) <= ORDER_PROGRESS.get(current, -1):
            return False
        self.transition_to(new_status)
        return True


class OrderLineItem(Base):
    __tablename__ = 'OrderLineItem'

    lineItemID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    productID = Column(Integer, ForeignKey('Product.productID', ondelete='SET NULL'), nullable=True)
    vendorID = Column(Integer, ForeignKey('Vendor.vendorID'), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    status = Column(
        SAEnum(OrderStatus, name="line_item_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING,
        nullable=False,
    )
    tracking_code = Column(String(100))
    carrier = Column(String(100))
    shipped_at = Column(DateTime(timezone=True))
    delivered_at = Column(DateTime(timezone=True))
    # Set once a payout claims this item; cleared if that payout fails
    payoutID = Column(Integer, ForeignKey('Payout.payoutID'), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    vendor = relationship("Vendor")
    payout = relationship("Payout", back_populates="items")

    _VALID_TRANSITIONS = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED},
        OrderStatus.PROCESSING: {OrderStatus.SHIPPED},
        OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    }

    @validates('subtotal')
    def _freeze_subtotal(self, key, value):
        if self.subtotal is not None and Decimal(value) != Decimal(self.subtotal):
            raise InvalidStateTransition(
                "Line item subtotal is frozen at purchase time",
                {"line_item_id": self.lineItemID},
            )
        return value

    def can_transition(self, new_status: OrderStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(OrderStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: OrderStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateTransition(
                f"Invalid line item status transition from {OrderStatus(self.status).value} to {new_status.value}",
                {"line_item_id": self.lineItemID, "from": OrderStatus(self.status).value, "to": new_status.value},
            )
        self.status = new_status


class RewardLedgerEntry(Base):
    """Append-only audit row for every point movement on a vendor."""

    __tablename__ = 'RewardLedgerEntry'
    __table_args__ = (
        UniqueConstraint('vendorID', 'idempotency_key', name='uq_reward_ledger_vendor_key'),
    )

    entryID = Column(Integer, primary_key=True, autoincrement=True)
    vendorID = Column(Integer, ForeignKey('Vendor.vendorID'), nullable=False, index=True)
    action_type = Column(
        SAEnum(RewardAction, name="reward_action", native_enum=False, validate_strings=True),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    description = Column(Text)
    reference_type = Column(String(50))
    reference_id = Column(Integer)
    idempotency_key = Column(String(100))
    created_by = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    vendor = relationship("Vendor", back_populates="ledger_entries")


@event.listens_for(RewardLedgerEntry, "before_update")
def _reject_ledger_update(mapper, connection, target):
    raise InvalidStateTransition(
        "Reward ledger entries are immutable",
        {"entry_id": target.entryID},
    )


class Payout(Base):
    __tablename__ = 'Payout'

    payoutID = Column(Integer, primary_key=True, autoincrement=True)
    vendorID = Column(Integer, ForeignKey('Vendor.vendorID'), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    gross_amount = Column(Numeric(12, 2))
    commission_rate = Column(Numeric(5, 4))
    tier_at_payout = Column(
        SAEnum(VendorTier, name="payout_tier", native_enum=False, validate_strings=True),
    )
    # Delivery-time window; a paid period starts where the previous one ended.
    # The items it paid are linked through OrderLineItem.payoutID.
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        SAEnum(PayoutStatus, name="payout_status", native_enum=False, validate_strings=True),
        default=PayoutStatus.PENDING,
        nullable=False,
    )
    payment_method = Column(String(50))
    payment_reference = Column(String(255))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    processed_at = Column(DateTime(timezone=True))

    vendor = relationship("Vendor", back_populates="payouts")
    items = relationship("OrderLineItem", back_populates="payout", order_by="OrderLineItem.lineItemID")

    _VALID_TRANSITIONS = {
        PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.PAID, PayoutStatus.FAILED},
        PayoutStatus.PROCESSING: {PayoutStatus.PAID, PayoutStatus.FAILED},
    }

    def can_transition(self, new_status: PayoutStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(PayoutStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: PayoutStatus) -> None:
        if not self.can_transition(new_status):
            raise InvalidStateTransition(
                f"Invalid payout status transition from {PayoutStatus(self.status).value} to {new_status.value}",
                {"payout_id": self.payoutID, "from": PayoutStatus(self.status).value, "to": new_status.value},
            )
        self.status = new_status

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < as_utc(self.period_end) and as_utc(self.period_start) < end


class PlatformSetting(Base):
    __tablename__ = 'PlatformSetting'

    settingID = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), unique=True, nullable=False)
    value = Column(Text, nullable=False)
    description = Column(Text)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
