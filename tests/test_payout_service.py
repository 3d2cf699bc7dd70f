from __future__ import annotations

from datetime import timedelta

from decimal import Decimal

import pytest

from marketplace.clock import as_utc
from marketplace.errors import InvalidStateTransition, NotFoundError, ValidationError
from marketplace.models import OrderLineItem, Payout, PayoutStatus, VendorTier
from marketplace.observability import get_counter_value
from marketplace.settings import RewardSettings


@pytest.fixture
def delivered_sale(make_vendor, make_product, place_order, deliver_order):
    """Deliver one cash-on-delivery line item for a fresh vendor and return the vendor id."""

    def _delivered_sale(price="1000.00", vendor_id=None, tier=VendorTier.BRONZE, points=0):
        vendor_id = vendor_id or make_vendor(tier=tier, points=points)
        order = place_order([(make_product(vendor_id, price=price), 1)])
        deliver_order(order.orderID)
        return vendor_id

    return _delivered_sale


def test_projection_covers_delivered_verified_items(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("1000.00")

    projection = payouts.project_pending_payout(uow, vendor_id)

    assert projection.gross == Decimal("1000.00")
    assert projection.commission_rate == Decimal("0.05")
    assert projection.net == Decimal("950.00")
    assert projection.commission == Decimal("50.00")
    assert projection.period_start == clock()
    assert projection.period_end == clock()
    assert projection.item_count == 1


def test_unverified_payment_is_not_owed(uow, payouts, make_vendor, make_product, place_order, deliver_order):
    vendor_id = make_vendor()
    order = place_order([(make_product(vendor_id, price="400.00"), 1)], payment_method="nagad")
    deliver_order(order.orderID)

    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("0.00")


def test_platinum_commission(uow, payouts, delivered_sale):
    vendor_id = delivered_sale("1000.00", tier=VendorTier.PLATINUM, points=6000)

    assert payouts.project_pending_payout(uow, vendor_id).net == Decimal("990.00")


def test_paid_items_are_excluded_from_next_projection(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("500.00")

    payout = payouts.process_payout(uow, vendor_id, "475.00", "bkash", "TXN-1")

    assert payout.status == PayoutStatus.PAID
    assert (as_utc(payout.period_start), as_utc(payout.period_end)) == (clock(), clock())
    assert payout.gross_amount == Decimal("500.00")
    assert payout.tier_at_payout == VendorTier.BRONZE
    assert [item.payoutID for item in uow.session.query(OrderLineItem).all()] == [payout.payoutID]

    clock.advance(days=1)
    projection = payouts.project_pending_payout(uow, vendor_id)
    assert projection.gross == Decimal("0.00")
    assert projection.period_start == as_utc(payout.period_end)

    delivered_sale("200.00", vendor_id=vendor_id)
    projection = payouts.project_pending_payout(uow, vendor_id)
    assert projection.gross == Decimal("200.00")
    assert projection.period_start == as_utc(payout.period_end)
    assert projection.period_end == clock()


def test_delivery_later_on_the_payout_day_is_still_owed(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("500.00")
    first = payouts.process_payout(uow, vendor_id, "475.00", "bkash", "TXN-1")

    clock.advance(hours=3)
    delivered_sale("200.00", vendor_id=vendor_id)
    clock.advance(days=1)

    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("200.00")
    second = payouts.process_payout(uow, vendor_id, "190.00", "bkash", "TXN-2")
    assert second.gross_amount == Decimal("200.00")
    assert as_utc(second.period_start) == as_utc(first.period_end)
    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("0.00")


def test_payment_verified_after_payout_is_carried_into_next_payout(
    uow, payouts, orders, clock, make_vendor, make_product, place_order, deliver_order
):
    vendor_id = make_vendor()
    cash = place_order([(make_product(vendor_id, price="1000.00"), 1)])
    wallet = place_order([(make_product(vendor_id, price="300.00"), 1)], payment_method="nagad")
    deliver_order(cash.orderID)
    deliver_order(wallet.orderID)

    clock.advance(days=1)
    first = payouts.process_payout(uow, vendor_id, "950.00", "bkash", "TXN-1")
    assert first.gross_amount == Decimal("1000.00")

    clock.advance(days=1)
    orders.verify_payment(uow, wallet.orderID)
    clock.advance(days=1)

    projection = payouts.project_pending_payout(uow, vendor_id)
    assert projection.gross == Decimal("300.00")
    assert projection.carried_over_ids == projection.line_item_ids
    assert projection.period_start == as_utc(first.period_end)

    second = payouts.process_payout(uow, vendor_id, "285.00", "bkash", "TXN-2")
    assert get_counter_value("payout_carried_over_items_total") == 1
    [late_item] = orders.get_order(uow, wallet.orderID).items
    assert late_item.payoutID == second.payoutID
    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("0.00")


def test_nothing_owed_cannot_be_paid_again(uow, payouts, delivered_sale):
    vendor_id = delivered_sale()
    payouts.process_payout(uow, vendor_id, "950.00", "bkash", "TXN-1")

    with pytest.raises(InvalidStateTransition):
        payouts.process_payout(uow, vendor_id, "10.00", "bkash", "TXN-2")
    assert uow.session.query(Payout).count() == 1


def test_commission_change_does_not_touch_paid_payouts(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("1000.00")
    paid = payouts.process_payout(uow, vendor_id, "950.00", "bank_transfer", "BT-1")

    cheaper = RewardSettings().with_commission({"bronze": "0.10", "silver": "0.03", "gold": "0.02", "platinum": "0.01"})
    clock.advance(days=1)
    delivered_sale("1000.00", vendor_id=vendor_id)
    projection = payouts.project_pending_payout(uow, vendor_id, settings=cheaper)

    assert projection.net == Decimal("900.00")
    refreshed = uow.session.get(Payout, paid.payoutID)
    assert refreshed.amount == Decimal("950.00")
    assert refreshed.commission_rate == Decimal("0.0500")


@pytest.mark.parametrize("amount", [0, "-5", True, "abc"])
def test_process_payout_validates_amount(uow, payouts, delivered_sale, amount):
    vendor_id = delivered_sale()

    with pytest.raises(ValidationError):
        payouts.process_payout(uow, vendor_id, amount, "bkash", "TXN")


def test_process_payout_requires_reference(uow, payouts, delivered_sale):
    vendor_id = delivered_sale()

    with pytest.raises(ValidationError):
        payouts.process_payout(uow, vendor_id, "100", "bkash", "  ")


def test_process_payout_notifies_vendor(uow, payouts, notifier, delivered_sale):
    vendor_id = delivered_sale()

    payout = payouts.process_payout(uow, vendor_id, "950.00", None, "BT-9")

    assert payout.payment_method == "bank_transfer"
    assert get_counter_value("payouts_processed_total") == 1
    types = [notification["type"] for notification in notifier.get_notifications(vendor_id)]
    assert "payout_processed" in types


def test_batch_settlement_creates_pending_payouts(uow, payouts, make_vendor, delivered_sale):
    owed = delivered_sale("300.00")
    make_vendor()

    created = payouts.run_batch_settlement(uow)

    assert [(payout.vendorID, payout.status, payout.amount) for payout in created] == [
        (owed, PayoutStatus.PENDING, Decimal("285.00"))
    ]
    # a payout already in review blocks another batch entry
    assert payouts.run_batch_settlement(uow) == []
    assert get_counter_value("payout_batches_total") == 2


def test_batch_payout_lifecycle(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("300.00")
    [pending] = payouts.run_batch_settlement(uow)

    payouts.mark_payout_processing(uow, pending.payoutID)
    paid = payouts.mark_payout_paid(uow, pending.payoutID, method="bkash", reference="BK-77")

    assert paid.status == PayoutStatus.PAID
    assert paid.payment_reference == "BK-77"
    assert paid.processed_at is not None
    clock.advance(days=1)
    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("0.00")
    with pytest.raises(InvalidStateTransition):
        payouts.mark_payout_failed(uow, pending.payoutID, "bounced")


def test_direct_payout_waits_for_payout_in_review(uow, payouts, delivered_sale):
    vendor_id = delivered_sale("300.00")
    [pending] = payouts.run_batch_settlement(uow)

    with pytest.raises(InvalidStateTransition):
        payouts.process_payout(uow, vendor_id, "285.00", "bkash", "TXN-DIRECT")
    assert uow.session.get(Payout, pending.payoutID).status == PayoutStatus.PENDING


def test_mark_paid_rejects_overlapping_period(uow, payouts, clock, delivered_sale):
    vendor_id = delivered_sale("300.00")
    clock.advance(hours=1)
    [pending] = payouts.run_batch_settlement(uow)
    with uow.atomic() as session:
        session.add(
            Payout(
                vendorID=vendor_id,
                amount=Decimal("10.00"),
                period_start=clock() - timedelta(hours=2),
                period_end=clock() + timedelta(hours=1),
                status=PayoutStatus.PAID,
                created_at=clock(),
            )
        )

    with pytest.raises(InvalidStateTransition):
        payouts.mark_payout_paid(uow, pending.payoutID, reference="BK-1")
    assert uow.session.get(Payout, pending.payoutID).status == PayoutStatus.PENDING


def test_failed_payout_requires_reason(uow, payouts, delivered_sale):
    vendor_id = delivered_sale()
    [pending] = payouts.run_batch_settlement(uow)
    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("0.00")

    with pytest.raises(ValidationError):
        payouts.mark_payout_failed(uow, pending.payoutID, " ")
    failed = payouts.mark_payout_failed(uow, pending.payoutID, "Wrong account number")

    assert failed.status == PayoutStatus.FAILED
    assert failed.notes == "Wrong account number"
    assert get_counter_value("payouts_failed_total") == 1
    # the failed payout's items are owed again
    assert payouts.project_pending_payout(uow, vendor_id).gross == Decimal("1000.00")
    assert [payout.gross_amount for payout in payouts.run_batch_settlement(uow)] == [Decimal("1000.00")]


def test_earnings_summary(uow, payouts, make_vendor, make_product, place_order, delivered_sale):
    vendor_id = delivered_sale("1000.00")
    place_order([(make_product(vendor_id, price="400.00"), 1)])
    payouts.run_batch_settlement(uow)

    summary = payouts.earnings_summary(uow, vendor_id)

    assert summary["lifetime_gross"] == Decimal("1000.00")
    assert summary["lifetime_net"] == Decimal("950.00")
    assert summary["in_review"] == Decimal("950.00")
    assert summary["paid_out"] == Decimal("0.00")
    assert summary["pending_delivery"] == Decimal("400.00")
    assert summary["available"] == Decimal("0.00")

    listed = payouts.list_payouts(uow, vendor_id=vendor_id, status="pending")
    assert len(listed) == 1
    with pytest.raises(ValidationError):
        payouts.list_payouts(uow, status="lost")


def test_unknown_vendor_and_payout(uow, payouts):
    with pytest.raises(NotFoundError):
        payouts.project_pending_payout(uow, 999)
    with pytest.raises(NotFoundError):
        payouts.mark_payout_paid(uow, 999)
