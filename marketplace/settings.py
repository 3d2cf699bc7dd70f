"""
Reward, tier and commission settings.

Settings are an immutable value object built once (from ``Config`` or from the
``PlatformSetting`` table) and handed to the services explicitly. Each key that
is missing or malformed falls back to its default on its own; every fallback is
logged and counted, never raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from marketplace.config import Config
from marketplace.errors import ConfigurationFallback
from marketplace.models import RewardAction, VendorTier
from marketplace.observability import increment_counter

logger = logging.getLogger(__name__)

TIER_ORDER: Tuple[VendorTier, ...] = (
    VendorTier.BRONZE,
    VendorTier.SILVER,
    VendorTier.GOLD,
    VendorTier.PLATINUM,
)

DEFAULT_TIER_THRESHOLDS: Mapping[VendorTier, int] = MappingProxyType({
    VendorTier.BRONZE: 0,
    VendorTier.SILVER: 500,
    VendorTier.GOLD: 1500,
    VendorTier.PLATINUM: 5000,
})

DEFAULT_COMMISSION_RATES: Mapping[VendorTier, Decimal] = MappingProxyType({
    VendorTier.BRONZE: Decimal("0.05"),
    VendorTier.SILVER: Decimal("0.03"),
    VendorTier.GOLD: Decimal("0.02"),
    VendorTier.PLATINUM: Decimal("0.01"),
})

DEFAULT_FAST_SHIPPING_HOURS = 24


def report_fallback(key: str, reason: str, raw: Any = None) -> ConfigurationFallback:
    """Log and count a configuration fallback; returns the error for callers that want it."""
    fallback = ConfigurationFallback(
        f"Configuration '{key}' {reason}; using default",
        {"key": key, "raw_value": raw},
    )
    increment_counter("configuration_fallback_total", labels={"key": key})
    logger.warning(fallback.message, extra={"config_key": key, "raw_value": repr(raw)})
    return fallback


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_rate(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0 or rate >= 1:
        return None
    return rate


@dataclass(frozen=True)
class PointRules:
    per_sale_unit: int = 10
    sale_unit_amount: int = 100
    five_star_review: int = 20
    fast_shipping: int = 5
    competition_created: int = 100
    first_sale: int = 50
    milestone_10: int = 100
    milestone_50: int = 500
    milestone_100: int = 1000

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], source: str = "reward_points") -> "PointRules":
        defaults = cls()
        if raw is None:
            return defaults
        if not isinstance(raw, Mapping):
            report_fallback(source, "is not a mapping", raw)
            return defaults

        values: Dict[str, int] = {}
        for name in cls.__dataclass_fields__:
            if name not in raw:
                continue
            parsed = _as_int(raw[name])
            if parsed is None or parsed < 0:
                report_fallback(f"{source}.{name}", "is malformed", raw[name])
                continue
            values[name] = parsed
        if values.get("sale_unit_amount") == 0:
            report_fallback(f"{source}.sale_unit_amount", "must be positive", 0)
            values.pop("sale_unit_amount")
        return replace(defaults, **values)

    def sale_points(self, subtotal: Decimal) -> int:
        """floor(subtotal / unit amount) * points per unit."""
        units = int(Decimal(subtotal) // Decimal(self.sale_unit_amount))
        return max(0, units) * self.per_sale_unit

    def milestones(self) -> Tuple[Tuple[int, RewardAction, int], ...]:
        """(completed sale count, action, bonus) in ascending order."""
        return (
            (1, RewardAction.FIRST_SALE, self.first_sale),
            (10, RewardAction.MILESTONE_10, self.milestone_10),
            (50, RewardAction.MILESTONE_50, self.milestone_50),
            (100, RewardAction.MILESTONE_100, self.milestone_100),
        )


@dataclass(frozen=True)
class CommissionConfig:
    """Tier -> commission fraction with a per-tier fallback to the hard defaults."""

    rates: Mapping[VendorTier, Decimal] = field(default_factory=lambda: DEFAULT_COMMISSION_RATES)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]], source: str = "commission_rates") -> "CommissionConfig":
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            report_fallback(source, "is not a mapping", raw)
            return cls()

        rates: Dict[VendorTier, Decimal] = {}
        for tier in TIER_ORDER:
            candidate = raw.get(tier.value)
            rate = _as_rate(candidate)
            if rate is None:
                report_fallback(f"{source}.{tier.value}", "is missing or malformed", candidate)
                rate = DEFAULT_COMMISSION_RATES[tier]
            rates[tier] = rate
        return cls(rates=MappingProxyType(rates))

    def rate_for(self, tier: VendorTier | str) -> Decimal:
        tier_enum = VendorTier(tier)
        rate = _as_rate(self.rates.get(tier_enum))
        if rate is None:
            report_fallback(f"commission_rates.{tier_enum.value}", "is missing or malformed", self.rates.get(tier_enum))
            return DEFAULT_COMMISSION_RATES[tier_enum]
        return rate


def parse_tier_thresholds(raw: Optional[Mapping[str, Any]], source: str = "tier_thresholds") -> Mapping[VendorTier, int]:
    if raw is None:
        return DEFAULT_TIER_THRESHOLDS
    if not isinstance(raw, Mapping):
        report_fallback(source, "is not a mapping", raw)
        return DEFAULT_TIER_THRESHOLDS

    thresholds: Dict[VendorTier, int] = {VendorTier.BRONZE: 0}
    for tier in TIER_ORDER[1:]:
        candidate = raw.get(tier.value)
        parsed = _as_int(candidate)
        if parsed is None or parsed <= 0:
            report_fallback(f"{source}.{tier.value}", "is missing or malformed", candidate)
            parsed = DEFAULT_TIER_THRESHOLDS[tier]
        thresholds[tier] = parsed

    ordered = [thresholds[tier] for tier in TIER_ORDER]
    if any(lower >= upper for lower, upper in zip(ordered, ordered[1:])):
        report_fallback(source, "is not strictly increasing", dict(raw))
        return DEFAULT_TIER_THRESHOLDS
    return MappingProxyType(thresholds)


@dataclass(frozen=True)
class RewardSettings:
    points: PointRules = field(default_factory=PointRules)
    tier_thresholds: Mapping[VendorTier, int] = field(default_factory=lambda: DEFAULT_TIER_THRESHOLDS)
    commission: CommissionConfig = field(default_factory=CommissionConfig)
    fast_shipping_hours: int = DEFAULT_FAST_SHIPPING_HOURS

    @classmethod
    def from_config(cls, config: type[Config] = Config) -> "RewardSettings":
        points = PointRules.from_mapping(
            {
                "per_sale_unit": config.POINTS_PER_SALE_UNIT,
                "sale_unit_amount": config.SALE_POINTS_UNIT_AMOUNT,
                "five_star_review": config.POINTS_FIVE_STAR_REVIEW,
                "fast_shipping": config.POINTS_FAST_SHIPPING,
                "competition_created": config.POINTS_COMPETITION_CREATED,
                "first_sale": config.POINTS_FIRST_SALE,
                "milestone_10": config.POINTS_MILESTONE_10,
                "milestone_50": config.POINTS_MILESTONE_50,
                "milestone_100": config.POINTS_MILESTONE_100,
            }
        )
        thresholds = parse_tier_thresholds(
            {
                VendorTier.SILVER.value: config.TIER_THRESHOLD_SILVER,
                VendorTier.GOLD.value: config.TIER_THRESHOLD_GOLD,
                VendorTier.PLATINUM.value: config.TIER_THRESHOLD_PLATINUM,
            }
        )
        commission = CommissionConfig.from_mapping(
            {
                VendorTier.BRONZE.value: config.COMMISSION_RATE_BRONZE,
                VendorTier.SILVER.value: config.COMMISSION_RATE_SILVER,
                VendorTier.GOLD.value: config.COMMISSION_RATE_GOLD,
                VendorTier.PLATINUM.value: config.COMMISSION_RATE_PLATINUM,
            }
        )
        return cls(
            points=points,
            tier_thresholds=thresholds,
            commission=commission,
            fast_shipping_hours=_fast_shipping_hours(config.FAST_SHIPPING_HOURS),
        )

    def with_commission(self, rates: Mapping[str, Any]) -> "RewardSettings":
        return replace(self, commission=CommissionConfig.from_mapping(rates))


def _fast_shipping_hours(raw: Any) -> int:
    parsed = _as_int(raw)
    if parsed is None or parsed <= 0:
        report_fallback("fast_shipping_hours", "is missing or malformed", raw)
        return DEFAULT_FAST_SHIPPING_HOURS
    return parsed
