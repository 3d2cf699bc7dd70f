from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from marketplace.clock import Clock, as_utc, utcnow
from marketplace.config import Config
from marketplace.database import UnitOfWork
from marketplace.errors import ConcurrencyConflict, InvalidStateTransition, NotFoundError, ValidationError
from marketplace.models import (
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentStatus,
    Payout,
    PayoutStatus,
    Vendor,
    VendorStatus,
    VendorTier,
)
from marketplace.observability import increment_counter, record_event
from marketplace.services.notification_service import NotificationService
from marketplace.services.reward_service import lock_vendor
from marketplace.services.tiers import net_amount, quantize_money
from marketplace.settings import RewardSettings

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class PayoutProjection:
    """Read-only view of what a vendor is owed right now."""

    vendor_id: int
    tier: VendorTier
    gross: Decimal
    commission_rate: Decimal
    commission: Decimal
    net: Decimal
    period_start: datetime
    period_end: datetime
    line_item_ids: Tuple[int, ...] = field(default_factory=tuple)
    carried_over_ids: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def item_count(self) -> int:
        return len(self.line_item_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "tier": self.tier.value,
            "gross": str(self.gross),
            "commission_rate": str(self.commission_rate),
            "commission": str(self.commission),
            "net": str(self.net),
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "item_count": self.item_count,
            "carried_over_count": len(self.carried_over_ids),
        }


def _delivered_at(item: OrderLineItem, order: Order) -> Optional[datetime]:
    return as_utc(item.delivered_at or order.delivered_at)


def periods_overlap(start: datetime, end: datetime, payouts: Sequence[Payout]) -> bool:
    start, end = as_utc(start), as_utc(end)
    return any(payout.overlaps(start, end) for payout in payouts)


class PayoutService:
    """
    Payout settlement calculator.

    A delivered, payment-verified line item is owed to its vendor until a
    payout claims it (``OrderLineItem.payoutID``). A paid period runs from the
    previous paid period's end up to the moment the payout was taken, so paid
    periods for a vendor only ever meet at their boundary and no line item is
    paid twice. Items delivered inside an already-paid period whose payment was
    verified afterwards are carried into the next payout.
    """

    def __init__(
        self,
        settings: RewardSettings,
        notifier: Optional[NotificationService] = None,
        config: type[Config] = Config,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.notifier = notifier
        self.config = config
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    def project_pending_payout(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        settings: Optional[RewardSettings] = None,
    ) -> PayoutProjection:
        session = uow.session
        vendor = session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor not found", {"vendor_id": vendor_id})
        return self._project(session, vendor, settings or self.settings)

    def _project(self, session: Session, vendor: Vendor, settings: RewardSettings) -> PayoutProjection:
        now = self.clock()
        paid = self._paid_payouts(session, vendor.vendorID)

        unclaimed: List[Tuple[int, datetime, Decimal]] = []
        for item, order in self._eligible_items(session, vendor.vendorID):
            delivered_at = _delivered_at(item, order)
            if delivered_at is None:
                continue
            unclaimed.append((item.lineItemID, delivered_at, Decimal(item.subtotal)))

        if paid:
            period_start = max(as_utc(payout.period_end) for payout in paid)
        elif unclaimed:
            period_start = min(delivered_at for _, delivered_at, _ in unclaimed)
        else:
            period_start = now
        period_end = max(now, period_start)

        carried_over = tuple(line_item_id for line_item_id, delivered_at, _ in unclaimed if delivered_at < period_start)
        if carried_over:
            # Payment verified after the period holding the delivery was paid
            self.logger.warning(
                "Vendor %s has items delivered inside an already paid period",
                vendor.vendorID,
                extra={"line_item_ids": list(carried_over), "period_start": period_start.isoformat()},
            )

        tier = VendorTier(vendor.tier)
        rate = settings.commission.rate_for(tier)
        gross = quantize_money(sum((subtotal for _, _, subtotal in unclaimed), ZERO))
        net = net_amount(gross, rate)
        return PayoutProjection(
            vendor_id=vendor.vendorID,
            tier=tier,
            gross=gross,
            commission_rate=rate,
            commission=gross - net,
            net=net,
            period_start=period_start,
            period_end=period_end,
            line_item_ids=tuple(line_item_id for line_item_id, _, _ in unclaimed),
            carried_over_ids=carried_over,
        )

    def _eligible_items(self, session: Session, vendor_id: int) -> List[Tuple[OrderLineItem, Order]]:
        rows = session.execute(
            select(OrderLineItem, Order)
            .join(Order, OrderLineItem.orderID == Order.orderID)
            .where(
                OrderLineItem.vendorID == vendor_id,
                OrderLineItem.payoutID.is_(None),
                Order.status == OrderStatus.DELIVERED,
                Order.payment_status == PaymentStatus.VERIFIED,
            )
            .order_by(OrderLineItem.lineItemID)
        )
        return [(item, order) for item, order in rows]

    def _paid_payouts(self, session: Session, vendor_id: int) -> List[Payout]:
        return list(
            session.execute(
                select(Payout)
                .where(Payout.vendorID == vendor_id, Payout.status == PayoutStatus.PAID)
                .order_by(Payout.period_end)
            ).scalars()
        )

    @staticmethod
    def _in_review(session: Session, vendor_id: int) -> Optional[int]:
        return session.execute(
            select(Payout.payoutID).where(
                Payout.vendorID == vendor_id,
                Payout.status.in_([PayoutStatus.PENDING, PayoutStatus.PROCESSING]),
            )
        ).scalar()

    def _claim_items(self, session: Session, payout: Payout, projection: PayoutProjection) -> None:
        session.flush()
        claimed = session.execute(
            update(OrderLineItem)
            .where(
                OrderLineItem.lineItemID.in_(projection.line_item_ids),
                OrderLineItem.payoutID.is_(None),
            )
            .values(payoutID=payout.payoutID)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != projection.item_count:
            raise ConcurrencyConflict(
                "Line items were claimed by another payout",
                {"vendor_id": payout.vendorID, "expected": projection.item_count, "claimed": claimed},
            )
        for line_item_id in projection.line_item_ids:
            cached = session.identity_map.get(Session.identity_key(OrderLineItem, line_item_id))
            if cached is not None:
                session.expire(cached, ["payoutID", "payout"])
        if projection.carried_over_ids:
            increment_counter("payout_carried_over_items_total", amount=len(projection.carried_over_ids))

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------
    def process_payout(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        amount: Decimal | str | int,
        method: Optional[str],
        reference: str,
        notes: Optional[str] = None,
        settings: Optional[RewardSettings] = None,
    ) -> Payout:
        """Record an externally agreed amount as a paid payout for the next unpaid period."""
        payout_amount = self._validate_amount(amount)
        method = (method or self.config.DEFAULT_PAYOUT_METHOD).strip()
        reference = (reference or "").strip()
        if not method or not reference:
            raise ValidationError("Payout method and reference are required", {"vendor_id": vendor_id})
        active = settings or self.settings

        with uow.atomic() as session:
            vendor = lock_vendor(session, vendor_id)
            in_review = self._in_review(session, vendor_id)
            if in_review is not None:
                raise InvalidStateTransition(
                    "Vendor has a payout awaiting confirmation",
                    {"vendor_id": vendor_id, "payout_id": in_review},
                )
            projection = self._project(session, vendor, active)
            if not projection.item_count:
                raise InvalidStateTransition(
                    "Nothing is owed to this vendor",
                    {"vendor_id": vendor_id, "period_start": projection.period_start.isoformat()},
                )
            payout = Payout(
                vendorID=vendor_id,
                amount=payout_amount,
                gross_amount=projection.gross,
                commission_rate=projection.commission_rate,
                tier_at_payout=projection.tier,
                period_start=projection.period_start,
                period_end=projection.period_end,
                status=PayoutStatus.PAID,
                payment_method=method,
                payment_reference=reference,
                notes=notes,
                created_at=self.clock(),
                processed_at=self.clock(),
            )
            session.add(payout)
            self._claim_items(session, payout, projection)
            payout_id = payout.payoutID
            uow.on_commit(lambda: self._publish_paid(vendor_id, payout_id, payout_amount, method, reference))

        if payout_amount != projection.net:
            self.logger.info(
                "Payout %s amount differs from projected net",
                payout_id,
                extra={"amount": str(payout_amount), "projected_net": str(projection.net)},
            )
        return payout

    def run_batch_settlement(self, uow: UnitOfWork, settings: Optional[RewardSettings] = None) -> List[Payout]:
        """Create one pending payout per approved vendor with money due and no payout already in review."""
        active = settings or self.settings
        created: List[Payout] = []
        with uow.atomic() as session:
            vendor_ids = session.execute(
                select(Vendor.vendorID)
                .where(Vendor.status == VendorStatus.APPROVED)
                .order_by(Vendor.vendorID)
            ).scalars().all()
            for vendor_id in vendor_ids:
                vendor = lock_vendor(session, vendor_id)
                if self._in_review(session, vendor_id) is not None:
                    continue
                projection = self._project(session, vendor, active)
                if projection.gross <= ZERO:
                    continue
                payout = Payout(
                    vendorID=vendor_id,
                    amount=projection.net,
                    gross_amount=projection.gross,
                    commission_rate=projection.commission_rate,
                    tier_at_payout=projection.tier,
                    period_start=projection.period_start,
                    period_end=projection.period_end,
                    status=PayoutStatus.PENDING,
                    payment_method=self.config.DEFAULT_PAYOUT_METHOD,
                    created_at=self.clock(),
                )
                session.add(payout)
                self._claim_items(session, payout, projection)
                created.append(payout)

        increment_counter("payout_batches_total")
        record_event("payout_batch_created", {"payout_count": len(created)})
        self.logger.info("Batch settlement created %d pending payouts", len(created))
        return created

    # ------------------------------------------------------------------
    # Administrative confirmation
    # ------------------------------------------------------------------
    def mark_payout_processing(self, uow: UnitOfWork, payout_id: int) -> Payout:
        with uow.atomic() as session:
            payout = self._get_payout(session, payout_id)
            payout.transition_to(PayoutStatus.PROCESSING)
        self.logger.info("Payout %s is processing", payout_id)
        return payout

    def mark_payout_paid(
        self,
        uow: UnitOfWork,
        payout_id: int,
        method: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Payout:
        with uow.atomic() as session:
            existing = session.get(Payout, payout_id)
            if existing is None:
                raise NotFoundError("Payout not found", {"payout_id": payout_id})
            vendor_id = existing.vendorID
            # Lock order: vendor, then payout
            lock_vendor(session, vendor_id)
            payout = self._get_payout(session, payout_id)
            if not payout.can_transition(PayoutStatus.PAID):
                raise InvalidStateTransition(
                    f"Payout is already {PayoutStatus(payout.status).value}",
                    {"payout_id": payout_id},
                )
            if periods_overlap(payout.period_start, payout.period_end, self._paid_payouts(session, vendor_id)):
                raise InvalidStateTransition(
                    "Payout period overlaps a period that has already been paid",
                    {"payout_id": payout_id, "vendor_id": vendor_id},
                )
            payout.transition_to(PayoutStatus.PAID)
            payout.payment_method = (method or payout.payment_method or self.config.DEFAULT_PAYOUT_METHOD).strip()
            if reference:
                payout.payment_reference = reference.strip()
            payout.processed_at = self.clock()
            amount, paid_method, paid_reference = payout.amount, payout.payment_method, payout.payment_reference
            uow.on_commit(lambda: self._publish_paid(vendor_id, payout_id, amount, paid_method, paid_reference))
        return payout

    def mark_payout_failed(self, uow: UnitOfWork, payout_id: int, reason: str) -> Payout:
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required", {"payout_id": payout_id})
        with uow.atomic() as session:
            payout = self._get_payout(session, payout_id)
            payout.transition_to(PayoutStatus.FAILED)
            payout.notes = reason.strip()
            payout.processed_at = self.clock()
            # Released items are owed again in the next projection
            released = [item.lineItemID for item in payout.items]
            for item in payout.items:
                item.payoutID = None
            session.flush()
            session.expire(payout, ["items"])
        increment_counter("payouts_failed_total")
        self.logger.warning("Payout %s failed: %s", payout_id, reason.strip(), extra={"released_line_item_ids": released})
        return payout

    def _publish_paid(self, vendor_id: int, payout_id: int, amount: Decimal, method: str, reference: Optional[str]) -> None:
        increment_counter("payouts_processed_total")
        self.logger.info(
            "Payout %s paid to vendor %s",
            payout_id,
            vendor_id,
            extra={"amount": str(amount), "payment_method": method},
        )
        if self.notifier is not None:
            self.notifier.notify_payout_processed(vendor_id, payout_id, amount, method, reference)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def list_payouts(
        self,
        uow: UnitOfWork,
        vendor_id: Optional[int] = None,
        status: Optional[PayoutStatus | str] = None,
    ) -> List[Payout]:
        query = select(Payout)
        if vendor_id is not None:
            query = query.where(Payout.vendorID == vendor_id)
        if status:
            try:
                query = query.where(Payout.status == PayoutStatus(status))
            except ValueError as exc:
                raise ValidationError("Unknown payout status", {"status": status}) from exc
        return list(uow.session.execute(query.order_by(Payout.created_at.desc(), Payout.payoutID.desc())).scalars())

    def earnings_summary(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        settings: Optional[RewardSettings] = None,
    ) -> Dict[str, Any]:
        session = uow.session
        vendor = session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor not found", {"vendor_id": vendor_id})

        paid_out, in_review = ZERO, ZERO
        for status, total in session.execute(
            select(Payout.status, func.coalesce(func.sum(Payout.amount), 0))
            .where(Payout.vendorID == vendor_id)
            .group_by(Payout.status)
        ):
            if PayoutStatus(status) == PayoutStatus.PAID:
                paid_out = quantize_money(total)
            elif PayoutStatus(status) in {PayoutStatus.PENDING, PayoutStatus.PROCESSING}:
                in_review += quantize_money(total)

        undelivered = session.execute(
            select(func.coalesce(func.sum(OrderLineItem.subtotal), 0))
            .join(Order, OrderLineItem.orderID == Order.orderID)
            .where(
                OrderLineItem.vendorID == vendor_id,
                Order.status.notin_([OrderStatus.DELIVERED, OrderStatus.CANCELLED]),
            )
        ).scalar_one()

        active = settings or self.settings
        projection = self._project(session, vendor, active)
        return {
            "vendor_id": vendor_id,
            "tier": projection.tier.value,
            "lifetime_gross": quantize_money(vendor.total_earnings or 0),
            "lifetime_net": net_amount(Decimal(vendor.total_earnings or 0), projection.commission_rate),
            "paid_out": paid_out,
            "in_review": in_review,
            "pending_delivery": quantize_money(undelivered),
            "available": projection.net,
        }

    @staticmethod
    def _validate_amount(amount: Decimal | str | int | float) -> Decimal:
        if isinstance(amount, bool):
            raise ValidationError("Payout amount must be a number", {"amount": amount})
        try:
            value = quantize_money(Decimal(str(amount)))
        except ArithmeticError as exc:
            raise ValidationError("Payout amount is not a number", {"amount": amount}) from exc
        if value <= ZERO:
            raise ValidationError("Payout amount must be positive", {"amount": str(value)})
        return value

    @staticmethod
    def _get_payout(session: Session, payout_id: int) -> Payout:
        session.flush()
        payout = session.execute(
            select(Payout)
            .where(Payout.payoutID == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if payout is None:
            raise NotFoundError("Payout not found", {"payout_id": payout_id})
        return payout
