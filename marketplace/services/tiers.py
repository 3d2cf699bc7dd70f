"""
Tier & commission resolution.

Everything here is a pure function of points, thresholds and commission
configuration; nothing touches the database.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Mapping, Optional

from marketplace.models import VendorTier
from marketplace.settings import (
    DEFAULT_TIER_THRESHOLDS,
    TIER_ORDER,
    CommissionConfig,
    RewardSettings,
)

CENT = Decimal("0.01")

_TIER_BENEFITS: Dict[VendorTier, List[str]] = {
    VendorTier.BRONZE: [
        "Basic marketplace features",
        "5% platform commission",
        "Standard listing visibility",
        "Email support",
    ],
    VendorTier.SILVER: [
        "All Bronze benefits",
        "3% platform commission (save 2%)",
        "Verified club badge",
        "Homepage featuring eligibility",
        "Priority customer support",
        "Basic analytics dashboard",
    ],
    VendorTier.GOLD: [
        "All Silver benefits",
        "2% platform commission (save 3%)",
        "Free featured product posts (1/month)",
        "Advanced analytics dashboard",
        "Early access to new features",
        "Promotional tools access",
    ],
    VendorTier.PLATINUM: [
        "All Gold benefits",
        "1% platform commission (best rate)",
        "Unlimited featured posts",
        "Premium badge",
        "Revenue sharing opportunities",
        "Dedicated account manager",
        "Priority in search results",
        "Custom branding options",
    ],
}


def quantize_money(amount: Decimal | int | str) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def resolve_tier(points: int, thresholds: Mapping[VendorTier, int] = DEFAULT_TIER_THRESHOLDS) -> VendorTier:
    """Highest tier whose threshold is at or below ``points``."""
    resolved = VendorTier.BRONZE
    for tier in TIER_ORDER:
        if max(points, 0) >= thresholds[tier]:
            resolved = tier
    return resolved


def net_amount(gross: Decimal, rate: Decimal) -> Decimal:
    return quantize_money(Decimal(gross) * (Decimal(1) - Decimal(rate)))


@dataclass(frozen=True)
class TierProgress:
    current_tier: VendorTier
    next_tier: Optional[VendorTier]
    points_to_next: int
    percentage: int

    @property
    def is_max_tier(self) -> bool:
        return self.next_tier is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_tier": self.current_tier.value,
            "next_tier": self.next_tier.value if self.next_tier else None,
            "points_to_next": self.points_to_next,
            "percentage": self.percentage,
            "is_max_tier": self.is_max_tier,
        }


def tier_progress(points: int, thresholds: Mapping[VendorTier, int] = DEFAULT_TIER_THRESHOLDS) -> TierProgress:
    """Display-only progress toward the next tier."""
    current = resolve_tier(points, thresholds)
    index = TIER_ORDER.index(current)
    if index == len(TIER_ORDER) - 1:
        return TierProgress(current, None, 0, 100)

    next_tier = TIER_ORDER[index + 1]
    floor = thresholds[current]
    ceiling = thresholds[next_tier]
    percentage = round((max(points, 0) - floor) / (ceiling - floor) * 100)
    return TierProgress(
        current_tier=current,
        next_tier=next_tier,
        points_to_next=max(0, ceiling - points),
        percentage=max(0, min(100, percentage)),
    )


def tier_benefits(tier: VendorTier | str) -> List[str]:
    try:
        return list(_TIER_BENEFITS[VendorTier(tier)])
    except ValueError:
        return list(_TIER_BENEFITS[VendorTier.BRONZE])


def calculate_earnings(gross: Decimal | int | str, tier: VendorTier | str, commission: CommissionConfig) -> Dict[str, Any]:
    gross_amount = quantize_money(gross)
    rate = commission.rate_for(tier)
    vendor_net = net_amount(gross_amount, rate)
    return {
        "gross": gross_amount,
        "net": vendor_net,
        "platform_commission": gross_amount - vendor_net,
        "commission_rate": rate,
        "commission_percentage": f"{(rate * 100).quantize(Decimal('0.1'))}%",
    }


@dataclass(frozen=True)
class TierInfo:
    tier: VendorTier
    points: int
    commission_rate: Decimal
    progress: TierProgress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "points": self.points,
            "commission_rate": str(self.commission_rate),
            "progress": self.progress.to_dict(),
            "benefits": tier_benefits(self.tier),
        }


class TierResolver:
    """Binds the pure functions above to one ``RewardSettings`` instance."""

    def __init__(self, settings: RewardSettings) -> None:
        self.settings = settings

    def tier_for(self, points: int, settings: Optional[RewardSettings] = None) -> VendorTier:
        return resolve_tier(points, (settings or self.settings).tier_thresholds)

    def commission_rate(self, tier: VendorTier | str, settings: Optional[RewardSettings] = None) -> Decimal:
        return (settings or self.settings).commission.rate_for(tier)

    def describe(self, points: int, settings: Optional[RewardSettings] = None) -> TierInfo:
        active = settings or self.settings
        tier = resolve_tier(points, active.tier_thresholds)
        return TierInfo(
            tier=tier,
            points=points,
            commission_rate=active.commission.rate_for(tier),
            progress=tier_progress(points, active.tier_thresholds),
        )
