from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import case, extract, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.clock import Clock, utcnow
from marketplace.database import UnitOfWork
from marketplace.errors import ConcurrencyConflict, NotFoundError, ValidationError
from marketplace.models import (
    RewardAction,
    RewardLedgerEntry,
    Vendor,
    VendorStatus,
    VendorTier,
)
from marketplace.observability import increment_counter, record_event
from marketplace.services.notification_service import NotificationService
from marketplace.services.tiers import TierInfo, TierResolver
from marketplace.settings import TIER_ORDER, RewardSettings

_MILESTONE_ACTIONS = (
    RewardAction.FIRST_SALE,
    RewardAction.MILESTONE_10,
    RewardAction.MILESTONE_50,
    RewardAction.MILESTONE_100,
)

_SUMMARY_CATEGORIES = {
    "sales_points": (RewardAction.SALE,),
    "review_points": (RewardAction.FIVE_STAR_REVIEW,),
    "shipping_points": (RewardAction.FAST_SHIPPING,),
    "milestone_points": _MILESTONE_ACTIONS,
    "competition_points": (RewardAction.COMPETITION_CREATED,),
    "manual_points": (RewardAction.MANUAL_ADDITION, RewardAction.MANUAL_DEDUCTION),
}


def lock_vendor(session: Session, vendor_id: int) -> Vendor:
    """Load the vendor row under ``SELECT ... FOR UPDATE`` so point writes serialize per vendor."""
    session.flush()
    vendor = session.execute(
        select(Vendor)
        .where(Vendor.vendorID == vendor_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if vendor is None:
        raise NotFoundError("Vendor not found", {"vendor_id": vendor_id})
    return vendor


@dataclass(frozen=True)
class GrantResult:
    vendor_id: int
    action: RewardAction
    points_applied: int
    balance: int
    old_tier: VendorTier
    new_tier: VendorTier
    entry_id: Optional[int] = None
    duplicate: bool = False

    @property
    def tier_changed(self) -> bool:
        return self.old_tier != self.new_tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "action": self.action.value,
            "points_applied": self.points_applied,
            "balance": self.balance,
            "tier": self.new_tier.value,
            "tier_changed": self.tier_changed,
            "entry_id": self.entry_id,
            "duplicate": self.duplicate,
        }


class RewardService:
    """
    Reward accrual engine.

    Each event writes one ledger row and the matching vendor balance delta in
    one transaction, under a row lock on the vendor, and recomputes the tier in
    that same write. One-shot events carry an idempotency key that is both
    checked before insert and backed by a unique constraint.
    """

    def __init__(
        self,
        settings: RewardSettings,
        notifier: Optional[NotificationService] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.resolver = TierResolver(settings)
        self.notifier = notifier
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Grant core
    # ------------------------------------------------------------------
    def grant(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        action: RewardAction,
        points: int,
        description: str,
        reference_type: Optional[str] = None,
        reference_id: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[int] = None,
        settings: Optional[RewardSettings] = None,
    ) -> GrantResult:
        active = settings or self.settings
        with uow.atomic() as session:
            vendor = lock_vendor(session, vendor_id)
            old_tier = VendorTier(vendor.tier)

            if idempotency_key and self._already_granted(session, vendor_id, idempotency_key):
                self.logger.info(
                    "Skipping duplicate %s grant for vendor %s",
                    action.value,
                    vendor_id,
                    extra={"idempotency_key": idempotency_key},
                )
                return GrantResult(
                    vendor_id=vendor_id,
                    action=action,
                    points_applied=0,
                    balance=vendor.reward_points,
                    old_tier=old_tier,
                    new_tier=old_tier,
                    duplicate=True,
                )

            balance = max(0, vendor.reward_points + points)
            applied = balance - vendor.reward_points
            new_tier = self.resolver.tier_for(balance, active)

            vendor.reward_points = balance
            if new_tier != old_tier:
                vendor.tier = new_tier
                vendor.tier_updated_at = self.clock()

            entry = RewardLedgerEntry(
                vendorID=vendor_id,
                action_type=action,
                points=applied,
                balance_after=balance,
                description=description,
                reference_type=reference_type,
                reference_id=reference_id,
                idempotency_key=idempotency_key,
                created_by=actor_id,
                created_at=self.clock(),
            )
            session.add(entry)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflict(
                    "Reward was granted concurrently",
                    {"vendor_id": vendor_id, "idempotency_key": idempotency_key},
                ) from exc

            result = GrantResult(
                vendor_id=vendor_id,
                action=action,
                points_applied=applied,
                balance=balance,
                old_tier=old_tier,
                new_tier=new_tier,
                entry_id=entry.entryID,
            )
            vendor_name = vendor.name
            uow.on_commit(lambda: self._after_grant(result, vendor_name))
        return result

    def _already_granted(self, session: Session, vendor_id: int, key: str) -> bool:
        return session.execute(
            select(RewardLedgerEntry.entryID).where(
                RewardLedgerEntry.vendorID == vendor_id,
                RewardLedgerEntry.idempotency_key == key,
            )
        ).first() is not None

    def _after_grant(self, result: GrantResult, vendor_name: str) -> None:
        increment_counter(
            "reward_points_granted_total",
            amount=result.points_applied,
            labels={"action": result.action.value},
        )
        self.logger.info(
            "Vendor %s %+d points for %s (balance %d)",
            result.vendor_id,
            result.points_applied,
            result.action.value,
            result.balance,
        )
        if result.tier_changed:
            self._publish_tier_change(result.vendor_id, vendor_name, result.old_tier, result.new_tier, result.balance)

    def _publish_tier_change(
        self,
        vendor_id: int,
        vendor_name: str,
        old_tier: VendorTier,
        new_tier: VendorTier,
        points: int,
    ) -> None:
        increment_counter("tier_changes_total", labels={"tier": new_tier.value})
        record_event(
            "tier_changed",
            {"vendor_id": vendor_id, "from": old_tier.value, "to": new_tier.value},
        )
        self.logger.info(
            "Vendor %s moved from %s to %s",
            vendor_id,
            old_tier.value,
            new_tier.value,
        )
        if self.notifier is not None:
            self.notifier.notify_tier_changed(
                vendor_id=vendor_id,
                vendor_name=vendor_name,
                old_tier=old_tier.value,
                new_tier=new_tier.value,
                points=points,
            )

    # ------------------------------------------------------------------
    # Event types
    # ------------------------------------------------------------------
    def award_sale(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        line_item_id: int,
        subtotal: Decimal,
        order_number: str,
        settings: Optional[RewardSettings] = None,
    ) -> Optional[GrantResult]:
        active = settings or self.settings
        points = active.points.sale_points(subtotal)
        if points <= 0:
            return None
        return self.grant(
            uow,
            vendor_id,
            RewardAction.SALE,
            points,
            f"Sale of {subtotal} on order {order_number}",
            reference_type="order_line_item",
            reference_id=line_item_id,
            idempotency_key=f"sale:item:{line_item_id}",
            settings=active,
        )

    def check_milestones(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        settings: Optional[RewardSettings] = None,
    ) -> List[GrantResult]:
        """Grant every sale-count milestone the vendor has reached and not yet been paid for."""
        active = settings or self.settings
        granted: List[GrantResult] = []
        with uow.atomic() as session:
            vendor = lock_vendor(session, vendor_id)
            total_sales = vendor.total_sales
            for threshold, action, bonus in active.points.milestones():
                if total_sales < threshold:
                    break
                label = "First sale" if action is RewardAction.FIRST_SALE else f"{threshold} sales milestone"
                result = self.grant(
                    uow,
                    vendor_id,
                    action,
                    bonus,
                    f"{label} bonus",
                    reference_type="vendor",
                    reference_id=vendor_id,
                    idempotency_key=action.value,
                    settings=active,
                )
                if not result.duplicate:
                    granted.append(result)
        return granted

    def award_fast_shipping(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        line_item_id: int,
        order_number: str,
        settings: Optional[RewardSettings] = None,
    ) -> GrantResult:
        active = settings or self.settings
        return self.grant(
            uow,
            vendor_id,
            RewardAction.FAST_SHIPPING,
            active.points.fast_shipping,
            f"Shipped within {active.fast_shipping_hours} hours on order {order_number}",
            reference_type="order_line_item",
            reference_id=line_item_id,
            idempotency_key=f"fast_shipping:item:{line_item_id}",
            settings=active,
        )

    def record_review(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        review_id: int,
        product_name: str,
        rating: int,
        settings: Optional[RewardSettings] = None,
    ) -> Optional[GrantResult]:
        """Only five-star reviews earn points; duplicates are prevented by the review's own uniqueness."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("Rating must be an integer between 1 and 5", {"rating": rating})
        if rating != 5:
            return None
        active = settings or self.settings
        return self.grant(
            uow,
            vendor_id,
            RewardAction.FIVE_STAR_REVIEW,
            active.points.five_star_review,
            f"5-star review for {product_name}",
            reference_type="review",
            reference_id=review_id,
            settings=active,
        )

    def award_competition_created(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        competition_id: int,
        title: str,
        settings: Optional[RewardSettings] = None,
    ) -> GrantResult:
        active = settings or self.settings
        return self.grant(
            uow,
            vendor_id,
            RewardAction.COMPETITION_CREATED,
            active.points.competition_created,
            f"Created competition: {title}",
            reference_type="competition",
            reference_id=competition_id,
            settings=active,
        )

    def adjust_points(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        delta: int,
        reason: str,
        actor_id: int,
        settings: Optional[RewardSettings] = None,
    ) -> GrantResult:
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValidationError("Point adjustment must be a non-zero integer", {"delta": delta})
        if not reason or not str(reason).strip():
            raise ValidationError("A reason is required for manual point adjustments")
        action = RewardAction.MANUAL_ADDITION if delta > 0 else RewardAction.MANUAL_DEDUCTION
        result = self.grant(
            uow,
            vendor_id,
            action,
            delta,
            f"Admin adjustment by user {actor_id}: {str(reason).strip()}",
            reference_type="admin",
            reference_id=actor_id,
            actor_id=actor_id,
            settings=settings,
        )
        self.logger.info(
            "Manual point adjustment for vendor %s by %s",
            vendor_id,
            actor_id,
            extra={"requested_delta": delta, "applied_delta": result.points_applied},
        )
        return result

    def refresh_tier(self, uow: UnitOfWork, vendor_id: int, settings: Optional[RewardSettings] = None) -> VendorTier:
        """Re-derive the stored tier from current points, e.g. after thresholds change."""
        active = settings or self.settings
        with uow.atomic() as session:
            vendor = lock_vendor(session, vendor_id)
            old_tier = VendorTier(vendor.tier)
            new_tier = self.resolver.tier_for(vendor.reward_points, active)
            if new_tier != old_tier:
                vendor.tier = new_tier
                vendor.tier_updated_at = self.clock()
                vendor_name, points = vendor.name, vendor.reward_points
                uow.on_commit(lambda: self._publish_tier_change(vendor_id, vendor_name, old_tier, new_tier, points))
        return new_tier

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def get_tier_info(self, uow: UnitOfWork, vendor_id: int, settings: Optional[RewardSettings] = None) -> TierInfo:
        vendor = uow.session.get(Vendor, vendor_id)
        if vendor is None:
            raise NotFoundError("Vendor not found", {"vendor_id": vendor_id})
        return self.resolver.describe(vendor.reward_points, settings)

    def get_reward_history(
        self,
        uow: UnitOfWork,
        vendor_id: int,
        action_type: Optional[RewardAction | str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        criteria = [RewardLedgerEntry.vendorID == vendor_id]
        if action_type:
            try:
                criteria.append(RewardLedgerEntry.action_type == RewardAction(action_type))
            except ValueError as exc:
                raise ValidationError("Unknown reward action type", {"action_type": action_type}) from exc

        session = uow.session
        total = session.execute(select(func.count(RewardLedgerEntry.entryID)).where(*criteria)).scalar_one()
        entries = session.execute(
            select(RewardLedgerEntry)
            .where(*criteria)
            .order_by(RewardLedgerEntry.created_at.desc(), RewardLedgerEntry.entryID.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
        return {
            "entries": [_entry_to_dict(entry) for entry in entries],
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        }

    def get_reward_summary(self, uow: UnitOfWork, vendor_id: int) -> Dict[str, int]:
        return self._summarize(uow.session, [RewardLedgerEntry.vendorID == vendor_id])

    def get_monthly_report(self, uow: UnitOfWork, vendor_id: int, year: int, month: int) -> Dict[str, int]:
        if not 1 <= month <= 12:
            raise ValidationError("Month must be between 1 and 12", {"month": month})
        return self._summarize(
            uow.session,
            [
                RewardLedgerEntry.vendorID == vendor_id,
                extract("year", RewardLedgerEntry.created_at) == year,
                extract("month", RewardLedgerEntry.created_at) == month,
            ],
        )

    def _summarize(self, session: Session, criteria: list) -> Dict[str, int]:
        columns = [
            func.coalesce(
                func.sum(case((RewardLedgerEntry.action_type.in_(actions), RewardLedgerEntry.points), else_=0)),
                0,
            ).label(label)
            for label, actions in _SUMMARY_CATEGORIES.items()
        ]
        columns.append(
            func.coalesce(
                func.sum(case((RewardLedgerEntry.points > 0, RewardLedgerEntry.points), else_=0)), 0
            ).label("total_earned")
        )
        columns.append(func.coalesce(func.sum(RewardLedgerEntry.points), 0).label("net_points"))
        columns.append(func.count(RewardLedgerEntry.entryID).label("total_activities"))
        row = session.execute(select(*columns).where(*criteria)).one()
        return {key: int(value) for key, value in row._mapping.items()}

    def get_leaderboard(self, uow: UnitOfWork, limit: int = 10) -> List[Dict[str, Any]]:
        vendors = uow.session.execute(
            select(Vendor)
            .where(Vendor.status == VendorStatus.APPROVED)
            .order_by(Vendor.reward_points.desc(), Vendor.vendorID)
            .limit(max(1, limit))
        ).scalars().all()
        return [
            {
                "rank": rank,
                "vendor_id": vendor.vendorID,
                "name": vendor.name,
                "reward_points": vendor.reward_points,
                "tier": VendorTier(vendor.tier).value,
                "total_sales": vendor.total_sales,
            }
            for rank, vendor in enumerate(vendors, start=1)
        ]

    def get_platform_statistics(self, uow: UnitOfWork) -> Dict[str, Any]:
        session = uow.session
        approved = Vendor.status == VendorStatus.APPROVED
        total_points, average_points, vendor_count = session.execute(
            select(
                func.coalesce(func.sum(Vendor.reward_points), 0),
                func.coalesce(func.avg(Vendor.reward_points), 0),
                func.count(Vendor.vendorID),
            ).where(approved)
        ).one()
        distribution = {tier.value: 0 for tier in TIER_ORDER}
        for tier, count in session.execute(
            select(Vendor.tier, func.count(Vendor.vendorID)).where(approved).group_by(Vendor.tier)
        ):
            distribution[VendorTier(tier).value] = count
        entries = session.execute(select(func.count(RewardLedgerEntry.entryID))).scalar_one()
        return {
            "vendor_count": vendor_count,
            "total_points": int(total_points),
            "average_points": round(float(average_points), 2),
            "tier_distribution": distribution,
            "ledger_entries": entries,
        }


def _entry_to_dict(entry: RewardLedgerEntry) -> Dict[str, Any]:
    created_at: Optional[datetime] = entry.created_at
    return {
        "id": entry.entryID,
        "vendor_id": entry.vendorID,
        "action_type": RewardAction(entry.action_type).value,
        "points": entry.points,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "created_at": created_at.isoformat() if created_at else None,
    }
