"""
In-memory vendor notifications.

Stands in for the transactional email channel: tier changes and processed
payouts are published here so dashboards (and tests) can read them back. One
instance is built at startup and injected into the services that publish.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from threading import Lock
from typing import Any, Dict, List, Optional

from marketplace.observability import increment_counter, record_event


@dataclass
class Notification:
    id: str
    vendor_id: int
    notification_type: str
    title: str
    message: str
    reference_id: Optional[int] = None
    reference_type: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor_id": self.vendor_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "reference_id": self.reference_id,
            "reference_type": self.reference_type,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


class NotificationService:
    """Per-vendor notification inbox, newest first, bounded in size."""

    def __init__(self, max_per_vendor: int = 50) -> None:
        self._lock = Lock()
        self._notifications: Dict[int, List[Notification]] = defaultdict(list)
        self._ids = count(1)
        self._max_per_vendor = max_per_vendor
        self.logger = logging.getLogger(__name__)

    def add_notification(
        self,
        vendor_id: int,
        notification_type: str,
        title: str,
        message: str,
        reference_id: Optional[int] = None,
        reference_type: Optional[str] = None,
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=f"notif_{next(self._ids)}",
                vendor_id=vendor_id,
                notification_type=notification_type,
                title=title,
                message=message,
                reference_id=reference_id,
                reference_type=reference_type,
            )
            inbox = self._notifications[vendor_id]
            inbox.insert(0, notification)
            del inbox[self._max_per_vendor:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info(
            "Notification created for vendor %d: %s",
            vendor_id,
            title,
            extra={"notification_type": notification_type},
        )
        return notification

    def get_notifications(self, vendor_id: int, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        with self._lock:
            notifications = list(self._notifications.get(vendor_id, []))
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, vendor_id: int) -> int:
        with self._lock:
            return sum(1 for n in self._notifications.get(vendor_id, []) if not n.read)

    def mark_all_as_read(self, vendor_id: int) -> int:
        now = datetime.now(timezone.utc)
        marked = 0
        with self._lock:
            for notification in self._notifications.get(vendor_id, []):
                if not notification.read:
                    notification.read = True
                    notification.read_at = now
                    marked += 1
        return marked

    # ------------------------------------------------------------------
    # Settlement events
    # ------------------------------------------------------------------
    def notify_tier_changed(self, vendor_id: int, vendor_name: str, old_tier: str, new_tier: str, points: int) -> Notification:
        direction = "upgraded" if _TIER_RANK.get(new_tier, 0) > _TIER_RANK.get(old_tier, 0) else "moved"
        return self.add_notification(
            vendor_id=vendor_id,
            notification_type="tier_changed",
            title=f"Tier {direction} to {new_tier.title()}",
            message=f"{vendor_name} {direction} from {old_tier.title()} to {new_tier.title()} with {points} points.",
            reference_id=vendor_id,
            reference_type="vendor",
        )

    def notify_payout_processed(self, vendor_id: int, payout_id: int, amount: Decimal, method: str, reference: Optional[str]) -> Notification:
        record_event(
            "payout_processed",
            {"vendor_id": vendor_id, "payout_id": payout_id, "amount": str(amount), "method": method},
        )
        suffix = f" (ref {reference})" if reference else ""
        return self.add_notification(
            vendor_id=vendor_id,
            notification_type="payout_processed",
            title="Payout processed",
            message=f"A payout of {amount} via {method}{suffix} has been sent.",
            reference_id=payout_id,
            reference_type="payout",
        )


_TIER_RANK = {"bronze": 0, "silver": 1, "gold": 2, "platinum": 3}
