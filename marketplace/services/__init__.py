from .inventory_service import InventoryLedger
from .notification_service import NotificationService
from .order_service import OrderService
from .payout_service import PayoutService
from .reward_service import RewardService
from .settings_service import SettingsService
from .tiers import TierResolver

__all__ = [
    "InventoryLedger",
    "NotificationService",
    "OrderService",
    "PayoutService",
    "RewardService",
    "SettingsService",
    "TierResolver",
]
