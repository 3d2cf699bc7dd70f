from __future__ import annotations

import logging
import secrets
import string
from collections import OrderedDict
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from marketplace.clock import Clock, as_utc, utcnow
from marketplace.config import Config
from marketplace.database import UnitOfWork
from marketplace.errors import (
    ConcurrencyConflict,
    InsufficientStock,
    InvalidStateTransition,
    NotFoundError,
    ProductUnavailable,
    ValidationError,
)
from marketplace.models import (
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product,
    ProductStatus,
    Vendor,
    VendorStatus,
)
from marketplace.observability import increment_counter, record_event
from marketplace.services.inventory_service import InventoryLedger
from marketplace.services.reward_service import RewardService
from marketplace.services.tiers import quantize_money
from marketplace.settings import RewardSettings

_BASE36 = string.digits + string.ascii_uppercase


def _base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


@dataclass(frozen=True)
class LineRequest:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class DeliveryInfo:
    full_name: str
    phone: str
    address: str
    city: str
    district: str
    division: str
    postal_code: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DeliveryInfo":
        if not isinstance(data, Mapping):
            raise ValidationError("Delivery information is required")
        values: Dict[str, str] = {}
        missing: List[str] = []
        for item in fields(cls):
            raw = data.get(item.name)
            value = str(raw).strip() if raw is not None else ""
            if not value:
                missing.append(item.name)
            values[item.name] = value
        if missing:
            raise ValidationError("Delivery information is incomplete", {"missing": missing})
        return cls(**values)


def _normalize_lines(items: Iterable[Any]) -> List[LineRequest]:
    """Validate line requests and merge repeated products into one line."""
    merged: "OrderedDict[int, int]" = OrderedDict()
    for raw in items or []:
        if isinstance(raw, LineRequest):
            product_id, quantity = raw.product_id, raw.quantity
        elif isinstance(raw, Mapping):
            product_id, quantity = raw.get("product_id"), raw.get("quantity")
        else:
            raise ValidationError("Each line must provide product_id and quantity")
        if isinstance(product_id, bool) or not isinstance(product_id, int):
            raise ValidationError("product_id must be an integer", {"product_id": product_id})
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("quantity must be a positive integer", {"product_id": product_id, "quantity": quantity})
        merged[product_id] = merged.get(product_id, 0) + quantity
    if not merged:
        raise ValidationError("An order needs at least one line item")
    return [LineRequest(product_id, quantity) for product_id, quantity in merged.items()]


def _payment_method(value: Any) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError as exc:
        raise ValidationError(
            "Unsupported payment method",
            {"payment_method": value, "allowed": [method.value for method in PaymentMethod]},
        ) from exc


def _lock(session: Session, model, key_column, key) -> Any:
    session.flush()
    return session.execute(
        select(model)
        .where(key_column == key)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


class OrderService:
    """Order aggregate: checkout, cancellation, per-vendor fulfillment and delivery confirmation."""

    def __init__(
        self,
        inventory: InventoryLedger,
        rewards: RewardService,
        config: type[Config] = Config,
        clock: Clock = utcnow,
    ) -> None:
        self.inventory = inventory
        self.rewards = rewards
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------
    def shipping_cost_for(self, district: str) -> Decimal:
        low_cost = {name.strip().lower() for name in self.config.LOW_COST_SHIPPING_DISTRICTS}
        if district.strip().lower() in low_cost:
            return quantize_money(self.config.SHIPPING_COST_INSIDE_REGION)
        return quantize_money(self.config.SHIPPING_COST_OUTSIDE_REGION)

    def generate_order_number(self, session: Session) -> str:
        """Time-based prefix plus a random suffix, checked against existing orders."""
        for _ in range(max(1, self.config.ORDER_NUMBER_MAX_ATTEMPTS)):
            stamp = _base36(int(self.clock().timestamp() * 1000))
            candidate = f"{self.config.ORDER_NUMBER_PREFIX}{stamp}{secrets.token_hex(4).upper()}"
            exists = session.execute(
                select(Order.orderID).where(Order.order_number == candidate)
            ).first()
            if exists is None:
                return candidate
        raise ConcurrencyConflict("Could not allocate a unique order number")

    def create_order(
        self,
        uow: UnitOfWork,
        buyer_id: int,
        items: Iterable[Any],
        delivery_info: DeliveryInfo | Mapping[str, Any],
        payment_method: PaymentMethod | str,
        payment_reference: Optional[str] = None,
    ) -> Order:
        if isinstance(buyer_id, bool) or not isinstance(buyer_id, int) or buyer_id <= 0:
            raise ValidationError("buyer_id must be a positive integer", {"buyer_id": buyer_id})
        lines = _normalize_lines(items)
        delivery = delivery_info if isinstance(delivery_info, DeliveryInfo) else DeliveryInfo.from_mapping(delivery_info)
        method = _payment_method(payment_method)

        with uow.atomic() as session:
            products = self._load_products_for_checkout(session, lines)

            priced: List[Tuple[Product, int, Decimal]] = []
            for line in lines:
                product = products[line.product_id]
                unit_price = quantize_money(product.price)
                priced.append((product, line.quantity, quantize_money(unit_price * line.quantity)))

            subtotal = quantize_money(sum((line_total for _, _, line_total in priced), Decimal("0")))
            shipping = self.shipping_cost_for(delivery.district)
            order = Order(
                order_number=self.generate_order_number(session),
                buyer_id=buyer_id,
                subtotal=subtotal,
                shipping_cost=shipping,
                total_amount=quantize_money(subtotal + shipping),
                payment_method=method,
                payment_status=PaymentStatus.PENDING,
                payment_reference=(payment_reference or "").strip() or None,
                status=OrderStatus.PENDING,
                created_at=self.clock(),
                **{item.name: getattr(delivery, item.name) for item in fields(DeliveryInfo)},
            )
            for product, quantity, line_total in priced:
                order.items.append(
                    OrderLineItem(
                        productID=product.productID,
                        vendorID=product.vendorID,
                        product_name=product.name,
                        unit_price=quantize_money(product.price),
                        quantity=quantity,
                        subtotal=line_total,
                        status=OrderStatus.PENDING,
                        created_at=self.clock(),
                    )
                )
            session.add(order)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflict(
                    "Order number collided with a concurrent checkout",
                    {"order_number": order.order_number},
                ) from exc

            for line in lines:
                self.inventory.reserve(uow, line.product_id, line.quantity)

            order_id, order_number, total = order.orderID, order.order_number, order.total_amount

        increment_counter("orders_created_total", labels={"payment_method": method.value})
        record_event(
            "order_created",
            {"order_id": order_id, "order_number": order_number, "buyer_id": buyer_id, "total": str(total)},
        )
        self.logger.info(
            "Order %s created",
            order_number,
            extra={"order_id": order_id, "buyer_id": buyer_id, "line_count": len(lines)},
        )
        return order

    def _load_products_for_checkout(self, session: Session, lines: List[LineRequest]) -> Dict[int, Product]:
        """Check every line before anything is written; the whole order fails on the first bad line."""
        product_ids = [line.product_id for line in lines]
        session.flush()
        products = {
            product.productID: product
            for product in session.execute(
                select(Product)
                .where(Product.productID.in_(product_ids))
                .order_by(Product.productID)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars()
        }
        for line in lines:
            product = products.get(line.product_id)
            if product is None:
                raise NotFoundError("Product not found", {"product_id": line.product_id})
            vendor_status = session.execute(
                select(Vendor.status).where(Vendor.vendorID == product.vendorID)
            ).scalar_one_or_none()
            if product.status != ProductStatus.ACTIVE or vendor_status != VendorStatus.APPROVED:
                raise ProductUnavailable(
                    f"{product.name} is not available for purchase",
                    {"product_id": product.productID, "status": ProductStatus(product.status).value},
                )
            if product.stock < line.quantity:
                raise InsufficientStock(
                    f"Insufficient stock for {product.name}",
                    {"product_id": product.productID, "requested": line.quantity, "available": product.stock},
                )
        return products

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel_order(self, uow: UnitOfWork, order_id: int) -> Order:
        with uow.atomic() as session:
            order = self._get_locked_order(session, order_id)
            if not order.is_cancellable:
                raise InvalidStateTransition(
                    "Only pending or confirmed orders can be cancelled",
                    {"order_id": order_id, "status": OrderStatus(order.status).value},
                )
            for item in order.items:
                if item.productID is not None:
                    self.inventory.restore(uow, item.productID, item.quantity)
                item.transition_to(OrderStatus.CANCELLED)
            order.transition_to(OrderStatus.CANCELLED)
            order.cancelled_at = self.clock()

        increment_counter("orders_cancelled_total")
        record_event("order_cancelled", {"order_id": order_id})
        self.logger.info("Order %s cancelled", order_id)
        return order

    # ------------------------------------------------------------------
    # Vendor fulfillment
    # ------------------------------------------------------------------
    def confirm_line_item(self, uow: UnitOfWork, line_item_id: int) -> OrderLineItem:
        return self._advance_line_item(uow, line_item_id, OrderStatus.CONFIRMED)

    def start_processing_line_item(self, uow: UnitOfWork, line_item_id: int) -> OrderLineItem:
        return self._advance_line_item(uow, line_item_id, OrderStatus.PROCESSING)

    def _advance_line_item(self, uow: UnitOfWork, line_item_id: int, status: OrderStatus) -> OrderLineItem:
        with uow.atomic() as session:
            item, order = self._get_locked_item(session, line_item_id)
            self._ensure_order_open(order)
            item.transition_to(status)
            order.advance_to(status)
        self.logger.info("Line item %s moved to %s", line_item_id, status.value)
        return item

    def ship_line_item(
        self,
        uow: UnitOfWork,
        line_item_id: int,
        tracking_code: str,
        carrier: str,
        settings: Optional[RewardSettings] = None,
    ) -> OrderLineItem:
        tracking_code = (tracking_code or "").strip()
        carrier = (carrier or "").strip()
        if not tracking_code or not carrier:
            raise ValidationError(
                "Tracking code and carrier are required to ship an item",
                {"line_item_id": line_item_id},
            )
        active = settings or self.rewards.settings

        with uow.atomic() as session:
            item, order = self._get_locked_item(session, line_item_id)
            self._ensure_order_open(order)
            order_id = order.orderID
            if OrderStatus(item.status) != OrderStatus.SHIPPED:
                item.transition_to(OrderStatus.SHIPPED)
                item.shipped_at = self.clock()
            item.tracking_code = tracking_code
            item.carrier = carrier
            order.advance_to(OrderStatus.SHIPPED)

            elapsed = as_utc(item.shipped_at) - as_utc(order.created_at)
            if elapsed < timedelta(hours=active.fast_shipping_hours):
                self.rewards.award_fast_shipping(
                    uow,
                    item.vendorID,
                    item.lineItemID,
                    order.order_number,
                    settings=active,
                )

        record_event(
            "line_item_shipped",
            {"line_item_id": line_item_id, "order_id": order_id, "carrier": carrier},
        )
        self.logger.info(
            "Line item %s shipped via %s",
            line_item_id,
            carrier,
            extra={"tracking_code": tracking_code, "order_id": order_id},
        )
        return item

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    def confirm_delivery(
        self,
        uow: UnitOfWork,
        order_id: int,
        settings: Optional[RewardSettings] = None,
    ) -> Order:
        active = settings or self.rewards.settings
        with uow.atomic() as session:
            order = self._get_locked_order(session, order_id)
            items = list(order.items)
            all_shipped = bool(items) and all(OrderStatus(item.status) == OrderStatus.SHIPPED for item in items)
            if OrderStatus(order.status) != OrderStatus.SHIPPED and not all_shipped:
                raise InvalidStateTransition(
                    "Delivery can only be confirmed for shipped orders",
                    {"order_id": order_id, "status": OrderStatus(order.status).value},
                )

            now = self.clock()
            order.advance_to(OrderStatus.SHIPPED)
            order.transition_to(OrderStatus.DELIVERED)
            order.delivered_at = now
            if order.payment_method == PaymentMethod.CASH_ON_DELIVERY and order.payment_status == PaymentStatus.PENDING:
                # Delivery is proof of payment for cash on delivery
                order.payment_status = PaymentStatus.VERIFIED
                order.payment_verified_at = now

            per_vendor: Dict[int, Tuple[Decimal, int]] = {}
            for item in items:
                if OrderStatus(item.status) != OrderStatus.SHIPPED:
                    # Delivered together with the order
                    item.status = OrderStatus.SHIPPED
                item.transition_to(OrderStatus.DELIVERED)
                item.delivered_at = now
                earned, sales = per_vendor.get(item.vendorID, (Decimal("0"), 0))
                per_vendor[item.vendorID] = (earned + Decimal(item.subtotal), sales + 1)

            session.flush()
            vendors = session.execute(
                select(Vendor)
                .where(Vendor.vendorID.in_(sorted(per_vendor)))
                .order_by(Vendor.vendorID)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalars().all()
            for vendor in vendors:
                earned, sales = per_vendor[vendor.vendorID]
                vendor.total_earnings = quantize_money(Decimal(vendor.total_earnings or 0) + earned)
                vendor.total_sales = (vendor.total_sales or 0) + sales

            accruals = [
                (item.vendorID, item.lineItemID, Decimal(item.subtotal)) for item in items
            ]
            order_number = order.order_number
            uow.on_commit(lambda: self._accrue_delivery_rewards(uow, order_number, accruals, active))

        increment_counter("orders_delivered_total")
        record_event("order_delivered", {"order_id": order_id, "vendors": sorted(per_vendor)})
        self.logger.info("Order %s delivered", order_number, extra={"order_id": order_id})
        return order

    def _accrue_delivery_rewards(
        self,
        uow: UnitOfWork,
        order_number: str,
        accruals: List[Tuple[int, int, Decimal]],
        settings: RewardSettings,
    ) -> None:
        """Best-effort point accrual once delivery is committed; failures are reported, not raised."""
        for vendor_id, line_item_id, subtotal in accruals:
            try:
                self.rewards.award_sale(uow, vendor_id, line_item_id, subtotal, order_number, settings=settings)
            except Exception:
                self._report_accrual_failure("sale", vendor_id, order_number, line_item_id)

        for vendor_id in sorted({vendor_id for vendor_id, _, _ in accruals}):
            try:
                self.rewards.check_milestones(uow, vendor_id, settings=settings)
            except Exception:
                self._report_accrual_failure("milestone", vendor_id, order_number)

    def _report_accrual_failure(
        self,
        stage: str,
        vendor_id: int,
        order_number: str,
        line_item_id: Optional[int] = None,
    ) -> None:
        increment_counter("reward_accrual_failures_total", labels={"stage": stage})
        record_event(
            "reward_accrual_failed",
            {"stage": stage, "vendor_id": vendor_id, "order_number": order_number, "line_item_id": line_item_id},
        )
        self.logger.exception(
            "Reward accrual (%s) failed for vendor %s on order %s",
            stage,
            vendor_id,
            order_number,
            extra={"line_item_id": line_item_id},
        )

    # ------------------------------------------------------------------
    # Payment verification
    # ------------------------------------------------------------------
    def verify_payment(self, uow: UnitOfWork, order_id: int) -> Order:
        return self._set_payment_status(uow, order_id, PaymentStatus.VERIFIED)

    def reject_payment(self, uow: UnitOfWork, order_id: int) -> Order:
        return self._set_payment_status(uow, order_id, PaymentStatus.FAILED)

    def _set_payment_status(self, uow: UnitOfWork, order_id: int, status: PaymentStatus) -> Order:
        with uow.atomic() as session:
            order = self._get_locked_order(session, order_id)
            if PaymentStatus(order.payment_status) != PaymentStatus.PENDING:
                raise InvalidStateTransition(
                    "Payment has already been settled",
                    {"order_id": order_id, "payment_status": PaymentStatus(order.payment_status).value},
                )
            if OrderStatus(order.status) == OrderStatus.CANCELLED:
                raise InvalidStateTransition("Cannot settle payment on a cancelled order", {"order_id": order_id})
            order.payment_status = status
            if status == PaymentStatus.VERIFIED:
                order.payment_verified_at = self.clock()
        increment_counter("payments_settled_total", labels={"status": status.value})
        self.logger.info("Payment for order %s marked %s", order_id, status.value)
        return order

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_order(self, uow: UnitOfWork, order_id: int) -> Order:
        order = uow.session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.orderID == order_id)
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    def get_order_by_number(self, uow: UnitOfWork, order_number: str) -> Order:
        order = uow.session.execute(
            select(Order).options(selectinload(Order.items)).where(Order.order_number == order_number)
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found", {"order_number": order_number})
        return order

    def list_buyer_orders(
        self,
        uow: UnitOfWork,
        buyer_id: int,
        status: Optional[OrderStatus | str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[Order]:
        query = select(Order).where(Order.buyer_id == buyer_id)
        if status:
            query = query.where(Order.status == OrderStatus(status))
        page, limit = max(1, page), max(1, min(limit, 100))
        return list(
            uow.session.execute(
                query.order_by(Order.created_at.desc(), Order.orderID.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars()
        )

    def vendor_order_summary(self, uow: UnitOfWork, vendor_id: int) -> Dict[str, Any]:
        """Line item counts per status plus delivered revenue for one vendor's dashboard."""
        rows = uow.session.execute(
            select(
                OrderLineItem.status,
                func.count(OrderLineItem.lineItemID),
                func.coalesce(func.sum(OrderLineItem.subtotal), 0),
            )
            .where(OrderLineItem.vendorID == vendor_id)
            .group_by(OrderLineItem.status)
        ).all()
        by_status = {status.value: 0 for status in OrderStatus}
        delivered_revenue = Decimal("0")
        for status, count, amount in rows:
            by_status[OrderStatus(status).value] = count
            if OrderStatus(status) == OrderStatus.DELIVERED:
                delivered_revenue = Decimal(amount)
        order_count = uow.session.execute(
            select(func.count(func.distinct(OrderLineItem.orderID))).where(OrderLineItem.vendorID == vendor_id)
        ).scalar_one()
        return {
            "vendor_id": vendor_id,
            "total_orders": order_count,
            "line_items_by_status": by_status,
            "delivered_revenue": quantize_money(delivered_revenue),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_locked_order(self, session: Session, order_id: int) -> Order:
        order = _lock(session, Order, Order.orderID, order_id)
        if order is None:
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    def _get_locked_item(self, session: Session, line_item_id: int) -> Tuple[OrderLineItem, Order]:
        item = _lock(session, OrderLineItem, OrderLineItem.lineItemID, line_item_id)
        if item is None:
            raise NotFoundError("Order item not found", {"line_item_id": line_item_id})
        return item, self._get_locked_order(session, item.orderID)

    @staticmethod
    def _ensure_order_open(order: Order) -> None:
        status = OrderStatus(order.status)
        if status in {OrderStatus.CANCELLED, OrderStatus.DELIVERED}:
            raise InvalidStateTransition(
                f"Order is already {status.value}",
                {"order_id": order.orderID, "status": status.value},
            )
