from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from marketplace.database import engine as default_engine

# Tables the order -> reward -> payout pipeline writes to
SETTLEMENT_TABLES = (
    "Vendor",
    "Product",
    "Order",
    "OrderLineItem",
    "RewardLedgerEntry",
    "Payout",
    "PlatformSetting",
)


def check_database_health(bind: Optional[Engine] = None) -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with (bind or default_engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_settlement_tables(
    bind: Optional[Engine] = None,
    tables: Iterable[str] = SETTLEMENT_TABLES,
) -> Dict[str, Any]:
    """Report whether every settlement table exists."""
    try:
        existing = set(inspect(bind or default_engine).get_table_names())
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}
    missing = [table for table in tables if table not in existing]
    if missing:
        return {"status": "DOWN", "missing": missing}
    return {"status": "UP"}
