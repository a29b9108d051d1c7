"""
Outbound notification relays.

Usage:
    relay = CompositeNotificationRelay([
        LoggingNotificationRelay(),
        TelegramNotificationRelay(token, chat_id),
    ])
    await relay.publish(NotificationEvent(NotificationType.SYSTEM_START, "started"))
"""

from .formatter import NotificationFormatter
from .relay import CompositeNotificationRelay, LoggingNotificationRelay, NotificationRelay
from .telegram import TelegramNotificationRelay

__all__ = [
    "NotificationRelay",
    "LoggingNotificationRelay",
    "CompositeNotificationRelay",
    "TelegramNotificationRelay",
    "NotificationFormatter",
]
