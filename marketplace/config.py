"""Centralized configuration for the marketplace settlement service."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

BASE_DIR: Final[Path] = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"

# Load environment variables once, prioritizing runtime env over file values
load_dotenv(dotenv_path=ENV_PATH, override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _str_to_list(value: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
    if not value:
        return default
    items = tuple(part.strip() for part in value.split(",") if part.strip())
    return items or default


def _determine_database_url() -> str:
    """
    Return a connection string using the following precedence:
    1. Explicit DATABASE_URL
    2. Individual DB_* components (for PostgreSQL)
    3. Local SQLite fallback (for onboarding / tests)
    """
    explicit_url = os.getenv("DATABASE_URL")
    if explicit_url:
        return explicit_url

    username = os.getenv("DB_USERNAME")
    password = os.getenv("DB_PASSWORD")
    host = os.getenv("DB_HOST")
    port = os.getenv("DB_PORT")
    name = os.getenv("DB_NAME")

    if all([username, password, host, port, name]):
        driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
        return f"{driver}://{username}:{password}@{host}:{port}/{name}"

    fallback_path = BASE_DIR / "db" / "marketplace.db"
    fallback_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{fallback_path.as_posix()}"


_DEFAULT_LOW_COST_DISTRICTS = (
    "Dhaka",
    "Gazipur",
    "Narayanganj",
    "Narsingdi",
    "Manikganj",
    "Munshiganj",
)


class Config:
    """Default runtime configuration shared across Flask, services, and scripts."""

    APP_NAME: Final[str] = os.getenv("APP_NAME", "Club Marketplace Settlement")
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"), default=False)

    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Database
    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"), default=False)
    DB_POOL_SIZE: Final[int] = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: Final[int] = int(os.getenv("DB_MAX_OVERFLOW", "20"))

    # Observability
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")
    OBSERVABILITY_ENABLED: Final[bool] = _str_to_bool(os.getenv("OBSERVABILITY_ENABLED"), default=True)

    # Checkout
    SHIPPING_COST_INSIDE_REGION: Final[str] = os.getenv("SHIPPING_COST_INSIDE_REGION", "60")
    SHIPPING_COST_OUTSIDE_REGION: Final[str] = os.getenv("SHIPPING_COST_OUTSIDE_REGION", "100")
    LOW_COST_SHIPPING_DISTRICTS: Final[tuple[str, ...]] = _str_to_list(
        os.getenv("LOW_COST_SHIPPING_DISTRICTS"), _DEFAULT_LOW_COST_DISTRICTS
    )
    ORDER_NUMBER_PREFIX: Final[str] = os.getenv("ORDER_NUMBER_PREFIX", "BD")
    ORDER_NUMBER_MAX_ATTEMPTS: Final[int] = int(os.getenv("ORDER_NUMBER_MAX_ATTEMPTS", "5"))

    # Reward points
    POINTS_PER_SALE_UNIT: Final[int] = int(os.getenv("POINTS_PER_SALE_UNIT", "10"))
    SALE_POINTS_UNIT_AMOUNT: Final[int] = int(os.getenv("SALE_POINTS_UNIT_AMOUNT", "100"))
    POINTS_FIVE_STAR_REVIEW: Final[int] = int(os.getenv("POINTS_FIVE_STAR_REVIEW", "20"))
    POINTS_FAST_SHIPPING: Final[int] = int(os.getenv("POINTS_FAST_SHIPPING", "5"))
    POINTS_COMPETITION_CREATED: Final[int] = int(os.getenv("POINTS_COMPETITION_CREATED", "100"))
    POINTS_FIRST_SALE: Final[int] = int(os.getenv("POINTS_FIRST_SALE", "50"))
    POINTS_MILESTONE_10: Final[int] = int(os.getenv("POINTS_MILESTONE_10", "100"))
    POINTS_MILESTONE_50: Final[int] = int(os.getenv("POINTS_MILESTONE_50", "500"))
    POINTS_MILESTONE_100: Final[int] = int(os.getenv("POINTS_MILESTONE_100", "1000"))
    FAST_SHIPPING_HOURS: Final[int] = int(os.getenv("FAST_SHIPPING_HOURS", "24"))

    # Tiers & commission
    TIER_THRESHOLD_SILVER: Final[int] = int(os.getenv("TIER_THRESHOLD_SILVER", "500"))
    TIER_THRESHOLD_GOLD: Final[int] = int(os.getenv("TIER_THRESHOLD_GOLD", "1500"))
    TIER_THRESHOLD_PLATINUM: Final[int] = int(os.getenv("TIER_THRESHOLD_PLATINUM", "5000"))
    COMMISSION_RATE_BRONZE: Final[str] = os.getenv("COMMISSION_RATE_BRONZE", "0.05")
    COMMISSION_RATE_SILVER: Final[str] = os.getenv("COMMISSION_RATE_SILVER", "0.03")
    COMMISSION_RATE_GOLD: Final[str] = os.getenv("COMMISSION_RATE_GOLD", "0.02")
    COMMISSION_RATE_PLATINUM: Final[str] = os.getenv("COMMISSION_RATE_PLATINUM", "0.01")

    # Payouts
    DEFAULT_PAYOUT_METHOD: Final[str] = os.getenv("DEFAULT_PAYOUT_METHOD", "bank_transfer")

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Apply core configuration to a Flask app instance."""
        app.config["SECRET_KEY"] = cls.SECRET_KEY
        app.config["ENV"] = cls.APP_ENV
        app.config["DEBUG"] = cls.DEBUG
        app.config["TESTING"] = cls.TESTING
        app.config["SQLALCHEMY_DATABASE_URI"] = cls.DATABASE_URL
        app.config["SQLALCHEMY_ECHO"] = cls.SQL_ECHO
        app.config["STRUCTURED_LOGS_ENABLED"] = cls.STRUCTURED_LOGS_ENABLED
        app.config["OBSERVABILITY_ENABLED"] = cls.OBSERVABILITY_ENABLED
        app.config["FAST_SHIPPING_HOURS"] = cls.FAST_SHIPPING_HOURS
        app.config["DEFAULT_PAYOUT_METHOD"] = cls.DEFAULT_PAYOUT_METHOD
