"""
Data models package
"""

from .candle import Candle
from .notification import NotificationEvent, NotificationPriority, NotificationType
from .order import Order, OrderPurpose, OrderSide, OrderStatus, OrderType
from .position import Position
from .regime import RegimeResult

__all__ = [
    "Candle",
    "Order",
    "OrderType",
    "OrderSide",
    "OrderStatus",
    "OrderPurpose",
    "Position",
    "RegimeResult",
    "NotificationEvent",
    "NotificationPriority",
    "NotificationType",
]
