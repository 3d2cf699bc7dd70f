from __future__ import annotations

from decimal import Decimal

import pytest

from marketplace.errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFoundError,
    ProductUnavailable,
    ValidationError,
)
from marketplace.models import (
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductStatus,
    RewardAction,
    RewardLedgerEntry,
    Vendor,
    VendorStatus,
)
from marketplace.observability import get_counter_value, get_recent_events


def _stock(uow, product_id):
    return uow.session.get(Product, product_id).stock


def _order_count(uow):
    return uow.session.query(Order).count()


# ----------------------------------------------------------------------
# Checkout
# ----------------------------------------------------------------------
def test_create_order_snapshots_prices_and_reserves_stock(uow, make_vendor, make_product, place_order):
    vendor_a, vendor_b = make_vendor(), make_vendor()
    jersey = make_product(vendor_a, price="250.00", stock=5, name="Home Jersey")
    scarf = make_product(vendor_b, price="80.50", stock=3, name="Scarf")

    order = place_order([(jersey, 2), (scarf, 1)])

    assert order.order_number.startswith("BD")
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.subtotal == Decimal("580.50")
    assert order.shipping_cost == Decimal("60.00")
    assert order.total_amount == Decimal("640.50")
    assert [(item.vendorID, item.quantity, item.subtotal) for item in order.items] == [
        (vendor_a, 2, Decimal("500.00")),
        (vendor_b, 1, Decimal("80.50")),
    ]
    assert order.items[0].product_name == "Home Jersey"
    assert _stock(uow, jersey) == 3
    assert _stock(uow, scarf) == 2
    assert get_counter_value("orders_created_total", labels={"payment_method": "cash_on_delivery"}) == 1


def test_shipping_cost_outside_low_cost_districts(make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), price="100.00")

    order = place_order([(product_id, 1)], district="Chattogram")

    assert order.shipping_cost == Decimal("100.00")
    assert order.total_amount == Decimal("200.00")


def test_checkout_is_all_or_nothing(uow, make_vendor, make_product, place_order):
    vendor_id = make_vendor()
    plenty = make_product(vendor_id, stock=10)
    scarce = make_product(vendor_id, stock=1)

    with pytest.raises(InsufficientStock):
        place_order([(plenty, 2), (scarce, 5)])

    assert _order_count(uow) == 0
    assert _stock(uow, plenty) == 10
    assert _stock(uow, scarce) == 1


def test_checkout_rejects_unlisted_products(uow, make_vendor, make_product, place_order):
    inactive = make_product(make_vendor(), status=ProductStatus.INACTIVE)
    suspended_vendor_product = make_product(make_vendor(status=VendorStatus.SUSPENDED))

    with pytest.raises(ProductUnavailable):
        place_order([(inactive, 1)])
    with pytest.raises(ProductUnavailable):
        place_order([(suspended_vendor_product, 1)])
    with pytest.raises(NotFoundError):
        place_order([(424242, 1)])
    assert _order_count(uow) == 0


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"product_id": 1, "quantity": 0}],
        [{"product_id": 1, "quantity": -2}],
        [{"product_id": "1", "quantity": 1}],
        [{"product_id": 1, "quantity": True}],
    ],
)
def test_checkout_validates_line_items(uow, orders, delivery_info, items):
    with pytest.raises(ValidationError):
        orders.create_order(uow, 1, items, delivery_info, "bkash")
    assert _order_count(uow) == 0


def test_checkout_requires_complete_delivery_info(uow, orders, make_vendor, make_product, delivery_info):
    product_id = make_product(make_vendor())
    incomplete = dict(delivery_info, phone="  ", postal_code=None)

    with pytest.raises(ValidationError) as excinfo:
        orders.create_order(uow, 1, [{"product_id": product_id, "quantity": 1}], incomplete, "nagad")

    assert excinfo.value.details["missing"] == ["phone", "postal_code"]


def test_checkout_rejects_unknown_payment_method(uow, orders, make_vendor, make_product, delivery_info):
    product_id = make_product(make_vendor())

    with pytest.raises(ValidationError):
        orders.create_order(uow, 1, [{"product_id": product_id, "quantity": 1}], delivery_info, "cheque")


def test_repeated_product_lines_are_merged(uow, make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), stock=5)

    order = place_order([(product_id, 1), (product_id, 2)])

    assert len(order.items) == 1
    assert order.items[0].quantity == 3
    assert _stock(uow, product_id) == 2


def test_order_numbers_are_unique(make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), stock=20)

    numbers = {place_order([(product_id, 1)]).order_number for _ in range(5)}

    assert len(numbers) == 5


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------
def test_cancel_restores_every_line(uow, orders, make_vendor, make_product, place_order):
    vendor_id = make_vendor()
    product_a = make_product(vendor_id, stock=10)
    product_b = make_product(vendor_id, stock=10)
    order = place_order([(product_a, 2), (product_b, 1)])
    assert (_stock(uow, product_a), _stock(uow, product_b)) == (8, 9)

    cancelled = orders.cancel_order(uow, order.orderID)

    assert (_stock(uow, product_a), _stock(uow, product_b)) == (10, 10)
    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert {item.status for item in cancelled.items} == {OrderStatus.CANCELLED}
    assert get_counter_value("orders_cancelled_total") == 1


def test_stock_is_conserved_across_creates_and_cancels(uow, orders, make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), stock=20)
    placed = [place_order([(product_id, quantity)]) for quantity in (3, 4, 5)]

    orders.cancel_order(uow, placed[1].orderID)

    assert _stock(uow, product_id) == 20 - 3 - 5


def test_cannot_cancel_after_shipping(uow, orders, make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), stock=5)
    order = place_order([(product_id, 1)])
    orders.ship_line_item(uow, order.items[0].lineItemID, "TRK1", "Pathao")

    with pytest.raises(InvalidStateTransition):
        orders.cancel_order(uow, order.orderID)
    assert _stock(uow, product_id) == 4


def test_confirmed_order_can_still_be_cancelled(uow, orders, make_vendor, make_product, place_order):
    product_id = make_product(make_vendor(), stock=5)
    order = place_order([(product_id, 1)])
    orders.confirm_line_item(uow, order.items[0].lineItemID)

    cancelled = orders.cancel_order(uow, order.orderID)

    assert cancelled.status == OrderStatus.CANCELLED
    assert _stock(uow, product_id) == 5


# ----------------------------------------------------------------------
# Fulfillment
# ----------------------------------------------------------------------
def test_confirm_and_process_line_item_push_order_forward(uow, orders, make_vendor, make_product, place_order):
    product_id = make_product(make_vendor())
    order = place_order([(product_id, 1)])
    line_item_id = order.items[0].lineItemID

    orders.confirm_line_item(uow, line_item_id)
    assert orders.get_order(uow, order.orderID).status == OrderStatus.CONFIRMED

    orders.start_processing_line_item(uow, line_item_id)
    assert orders.get_order(uow, order.orderID).status == OrderStatus.PROCESSING

    with pytest.raises(InvalidStateTransition):
        orders.confirm_line_item(uow, line_item_id)


def test_ship_within_window_awards_fast_shipping_once(uow, orders, clock, make_vendor, make_product, place_order):
    vendor_id = make_vendor()
    product_id = make_product(vendor_id)
    order = place_order([(product_id, 1)])
    line_item_id = order.items[0].lineItemID
    clock.advance(hours=5)

    item = orders.ship_line_item(uow, line_item_id, "TRK-1", "Pathao")
    orders.ship_line_item(uow, line_item_id, "TRK-2", "RedX")

    assert item.status == OrderStatus.SHIPPED
    assert item.tracking_code == "TRK-2"
    assert orders.get_order(uow, order.orderID).status == OrderStatus.SHIPPED
    entries = uow.session.query(RewardLedgerEntry).filter_by(vendorID=vendor_id).all()
    assert [(entry.action_type, entry.points) for entry in entries] == [(RewardAction.FAST_SHIPPING, 5)]


def test_ship_outside_window_awards_nothing(uow, orders, clock, make_vendor, make_product, place_order):
    vendor_id = make_vendor()
    order = place_order([(make_product(vendor_id), 1)])
    clock.advance(hours=30)

    orders.ship_line_item(uow, order.items[0].lineItemID, "TRK-9", "Sundarban")

    assert uow.session.get(Vendor, vendor_id).reward_points == 0


def test_ship_requires_tracking_details(uow, orders, make_vendor, make_product, place_order):
    order = place_order([(make_product(make_vendor()), 1)])

    with pytest.raises(ValidationError):
        orders.ship_line_item(uow, order.items[0].lineItemID, "", "Pathao")


# ----------------------------------------------------------------------
# Delivery
# ----------------------------------------------------------------------
def test_confirm_delivery_requires_shipment(uow, orders, make_vendor, make_product, place_order):
    order = place_order([(make_product(make_vendor()), 1)])

    with pytest.raises(InvalidStateTransition):
        orders.confirm_delivery(uow, order.orderID)


def test_delivery_after_first_shipment_delivers_every_line(uow, orders, make_vendor, make_product, place_order):
    order = place_order([(make_product(make_vendor()), 1), (make_product(make_vendor()), 1)])
    orders.ship_line_item(uow, order.items[0].lineItemID, "TRK-1", "Pathao")

    # The order label moved to shipped with the first shipment, so delivery is allowed
    delivered = orders.confirm_delivery(uow, order.orderID)

    assert delivered.status == OrderStatus.DELIVERED
    assert {item.status for item in delivered.items} == {OrderStatus.DELIVERED}


def test_confirm_delivery_credits_vendors_and_accrues_rewards(
    uow, orders, clock, make_vendor, make_product, place_order, deliver_order
):
    vendor_a, vendor_b = make_vendor(), make_vendor()
    order = place_order([(make_product(vendor_a, price="250.00"), 1), (make_product(vendor_b, price="99.00"), 2)])

    delivered = deliver_order(order.orderID)

    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.payment_status == PaymentStatus.VERIFIED
    assert delivered.delivered_at is not None

    a = uow.session.get(Vendor, vendor_a)
    b = uow.session.get(Vendor, vendor_b)
    assert a.total_earnings == Decimal("250.00")
    assert b.total_earnings == Decimal("198.00")
    assert (a.total_sales, b.total_sales) == (1, 1)
    # fast shipping 5 + sale floor(250/100)*10 + first sale 50
    assert a.reward_points == 5 + 20 + 50
    # fast shipping 5 + sale floor(198/100)*10 + first sale 50
    assert b.reward_points == 5 + 10 + 50
    assert get_counter_value("orders_delivered_total") == 1


def test_non_cod_payment_is_not_auto_verified(uow, orders, make_vendor, make_product, place_order, deliver_order):
    order = place_order([(make_product(make_vendor()), 1)], payment_method="bkash")

    delivered = deliver_order(order.orderID)

    assert delivered.payment_status == PaymentStatus.PENDING
    orders.verify_payment(uow, order.orderID)
    assert orders.get_order(uow, order.orderID).payment_status == PaymentStatus.VERIFIED
    with pytest.raises(InvalidStateTransition):
        orders.reject_payment(uow, order.orderID)


def test_reward_failure_does_not_roll_back_delivery(
    uow, orders, rewards, monkeypatch, make_vendor, make_product, place_order
):
    vendor_id = make_vendor()
    order = place_order([(make_product(vendor_id, price="500.00"), 1)])
    orders.ship_line_item(uow, order.items[0].lineItemID, "TRK-1", "Pathao")

    def _explode(*args, **kwargs):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(rewards, "award_sale", _explode)

    delivered = orders.confirm_delivery(uow, order.orderID)

    assert delivered.status == OrderStatus.DELIVERED
    vendor = uow.session.get(Vendor, vendor_id)
    assert vendor.total_earnings == Decimal("500.00")
    assert get_counter_value("reward_accrual_failures_total", labels={"stage": "sale"}) == 1
    assert get_recent_events("reward_accrual_failed")[-1]["payload"]["vendor_id"] == vendor_id
    # milestones still run after the sale grant failed
    actions = {entry.action_type for entry in uow.session.query(RewardLedgerEntry).filter_by(vendorID=vendor_id)}
    assert RewardAction.FIRST_SALE in actions
    assert RewardAction.SALE not in actions


def test_delivered_order_cannot_be_delivered_again(uow, orders, make_vendor, make_product, place_order, deliver_order):
    order = place_order([(make_product(make_vendor()), 1)])
    deliver_order(order.orderID)

    with pytest.raises(InvalidStateTransition):
        orders.confirm_delivery(uow, order.orderID)


def test_grand_total_is_frozen(uow, make_vendor, make_product, place_order):
    order = place_order([(make_product(make_vendor()), 1)])

    with pytest.raises(InvalidStateTransition):
        order.total_amount = Decimal("1.00")


# ----------------------------------------------------------------------
# Lookups
# ----------------------------------------------------------------------
def test_lookups_and_vendor_summary(uow, orders, make_vendor, make_product, place_order, deliver_order):
    vendor_id = make_vendor()
    product_id = make_product(vendor_id, price="120.00", stock=10)
    first = place_order([(product_id, 1)], buyer_id=7)
    second = place_order([(product_id, 2)], buyer_id=7)
    deliver_order(first.orderID)

    assert orders.get_order_by_number(uow, second.order_number).orderID == second.orderID
    assert {order.orderID for order in orders.list_buyer_orders(uow, 7)} == {first.orderID, second.orderID}
    assert [order.orderID for order in orders.list_buyer_orders(uow, 7, status="delivered")] == [first.orderID]

    summary = orders.vendor_order_summary(uow, vendor_id)
    assert summary["total_orders"] == 2
    assert summary["line_items_by_status"]["delivered"] == 1
    assert summary["line_items_by_status"]["pending"] == 1
    assert summary["delivered_revenue"] == Decimal("120.00")

    with pytest.raises(NotFoundError):
        orders.get_order(uow, 987654)
