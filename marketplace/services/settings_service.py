from __future__ import annotations

import json
import logging
from dataclasses import asdict, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select

from marketplace.clock import Clock, utcnow
from marketplace.database import UnitOfWork
from marketplace.errors import ValidationError
from marketplace.models import PlatformSetting
from marketplace.settings import (
    TIER_ORDER,
    CommissionConfig,
    PointRules,
    RewardSettings,
    parse_tier_thresholds,
    report_fallback,
)

REWARD_POINTS = "reward_points"
TIER_THRESHOLDS = "tier_thresholds"
COMMISSION_RATES = "commission_rates"
FAST_SHIPPING_HOURS = "fast_shipping_hours"

SETTING_KEYS = (REWARD_POINTS, TIER_THRESHOLDS, COMMISSION_RATES, FAST_SHIPPING_HOURS)


def _percent_to_fraction(value: Any) -> Optional[Decimal]:
    # Commission rates are stored as percentages, e.g. {"bronze": 5}
    if value is None or isinstance(value, bool):
        return None
    try:
        percent = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not percent.is_finite():
        return None
    return percent / Decimal(100)


class SettingsService:
    """
    Builds ``RewardSettings`` from the ``PlatformSetting`` table.

    A key with no row keeps the value from ``base``. A row that cannot be
    parsed falls back field by field to the hard defaults, and each such
    fallback is logged and counted.
    """

    def __init__(self, base: Optional[RewardSettings] = None, clock: Clock = utcnow) -> None:
        self.base = base or RewardSettings.from_config()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def get_all(self, uow: UnitOfWork) -> Dict[str, Any]:
        rows = uow.session.execute(select(PlatformSetting).order_by(PlatformSetting.key)).scalars()
        settings: Dict[str, Any] = {}
        for row in rows:
            try:
                settings[row.key] = json.loads(row.value)
            except json.JSONDecodeError:
                report_fallback(row.key, "is not valid JSON", row.value)
        return settings

    def load(self, uow: UnitOfWork) -> RewardSettings:
        stored = self.get_all(uow)
        settings = self.base

        if REWARD_POINTS in stored:
            raw = stored[REWARD_POINTS]
            if isinstance(raw, Mapping):
                raw = {**asdict(settings.points), **raw}
            settings = replace(settings, points=PointRules.from_mapping(raw, REWARD_POINTS))

        if TIER_THRESHOLDS in stored:
            settings = replace(settings, tier_thresholds=parse_tier_thresholds(stored[TIER_THRESHOLDS], TIER_THRESHOLDS))

        if COMMISSION_RATES in stored:
            raw = stored[COMMISSION_RATES]
            fractions = (
                {tier: _percent_to_fraction(value) for tier, value in raw.items()}
                if isinstance(raw, Mapping)
                else raw
            )
            settings = replace(settings, commission=CommissionConfig.from_mapping(fractions, COMMISSION_RATES))

        if FAST_SHIPPING_HOURS in stored:
            hours = stored[FAST_SHIPPING_HOURS]
            if isinstance(hours, int) and not isinstance(hours, bool) and hours > 0:
                settings = replace(settings, fast_shipping_hours=hours)
            else:
                report_fallback(FAST_SHIPPING_HOURS, "is malformed", hours)

        return settings

    def update_setting(
        self,
        uow: UnitOfWork,
        key: str,
        value: Any,
        description: Optional[str] = None,
    ) -> PlatformSetting:
        """Insert or replace one setting after validating its shape."""
        if key not in SETTING_KEYS:
            raise ValidationError("Unknown setting key", {"key": key, "allowed": list(SETTING_KEYS)})
        _VALIDATORS[key](value)

        with uow.atomic() as session:
            row = session.execute(
                select(PlatformSetting).where(PlatformSetting.key == key).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                row = PlatformSetting(key=key, value=json.dumps(value), description=description)
                session.add(row)
            else:
                row.value = json.dumps(value)
                row.updated_at = self.clock()
                if description is not None:
                    row.description = description
        self.logger.info("Platform setting %s updated", key, extra={"setting_value": value})
        return row


def _validate_reward_points(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValidationError("reward_points must be an object")
    allowed = {item.name for item in fields(PointRules)}
    for name, points in value.items():
        if name not in allowed:
            raise ValidationError("Unknown reward rule", {"rule": name, "allowed": sorted(allowed)})
        if isinstance(points, bool) or not isinstance(points, int) or points < 0:
            raise ValidationError("Reward points must be non-negative integers", {"rule": name})
    if value.get("sale_unit_amount") == 0:
        raise ValidationError("sale_unit_amount must be positive")


def _validate_tier_thresholds(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValidationError("tier_thresholds must be an object")
    ordered = [0]
    for tier in TIER_ORDER[1:]:
        threshold = value.get(tier.value)
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold <= 0:
            raise ValidationError("Tier thresholds must be positive integers", {"tier": tier.value})
        ordered.append(threshold)
    if any(lower >= upper for lower, upper in zip(ordered, ordered[1:])):
        raise ValidationError("Tier thresholds must be strictly increasing", {"thresholds": dict(value)})


def _validate_commission_rates(value: Any) -> None:
    if not isinstance(value, Mapping):
        raise ValidationError("commission_rates must be an object")
    for tier in TIER_ORDER:
        fraction = _percent_to_fraction(value.get(tier.value))
        if fraction is None or fraction < 0 or fraction >= 1:
            raise ValidationError(
                "Commission rates are percentages between 0 and 100",
                {"tier": tier.value, "value": value.get(tier.value)},
            )


def _validate_fast_shipping_hours(value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError("fast_shipping_hours must be a positive integer")


_VALIDATORS = {
    REWARD_POINTS: _validate_reward_points,
    TIER_THRESHOLDS: _validate_tier_thresholds,
    COMMISSION_RATES: _validate_commission_rates,
    FAST_SHIPPING_HOURS: _validate_fast_shipping_hours,
}
