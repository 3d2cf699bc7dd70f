"""Exception hierarchy for the settlement core.

Services raise these; the HTTP adapter turns them into JSON error bodies using
``http_status`` and ``to_dict``. ``details`` carries structured context that is
safe to log and to return to trusted callers.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class MarketplaceError(Exception):
    """Base exception for every failure raised by the settlement core."""

    http_status = 500
    code = "MARKETPLACE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(MarketplaceError):
    """Malformed input, rejected before any write."""

    http_status = 400
    code = "VALIDATION_ERROR"


class NotFoundError(MarketplaceError):
    http_status = 404
    code = "NOT_FOUND"


class InsufficientStock(MarketplaceError):
    http_status = 409
    code = "INSUFFICIENT_STOCK"


class ProductUnavailable(MarketplaceError):
    """The product exists but is not in an active listing state."""

    http_status = 409
    code = "PRODUCT_UNAVAILABLE"


class InvalidStateTransition(MarketplaceError):
    http_status = 409
    code = "INVALID_STATE_TRANSITION"


class ConcurrencyConflict(MarketplaceError):
    """Lost a race on a conditional update or a uniqueness constraint."""

    http_status = 409
    code = "CONCURRENCY_CONFLICT"


class ConfigurationFallback(MarketplaceError):
    """Configuration was missing or malformed and defaults were used instead.

    Never raised out of the core. Instances are built so the fallback can be
    logged with the same structured shape as real failures.
    """

    code = "CONFIGURATION_FALLBACK"
