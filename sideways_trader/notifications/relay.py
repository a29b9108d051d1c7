"""
Notification relays: fire-and-forget sinks for lifecycle events.

The trading core calls ``publish`` right after a state transition and never
waits on delivery outcome; relays must not raise.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterable, List

from sideways_trader.models.notification import NotificationEvent, NotificationPriority
from sideways_trader.utils.logger import TradingLogger

_LOG_LEVELS = {
    NotificationPriority.LOW: logging.DEBUG,
    NotificationPriority.NORMAL: logging.INFO,
    NotificationPriority.HIGH: logging.WARNING,
    NotificationPriority.CRITICAL: logging.ERROR,
}


class NotificationRelay(ABC):
    """Abstract sink for NotificationEvent."""

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        """Deliver (or drop) an event. Must not raise."""
        ...


class LoggingNotificationRelay(NotificationRelay):
    """
    Writes events to the application log.

    Position and order events are also written to the structured trade log.
    """

    _TRADE_EVENTS = frozenset({
        "order_placed",
        "order_filled",
        "order_cancelled",
        "order_failed",
        "position_opened",
        "position_closed",
    })

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def publish(self, event: NotificationEvent) -> None:
        level = _LOG_LEVELS.get(event.priority, logging.INFO)
        prefix = f"[{event.event_type.value}]"
        if event.symbol:
            prefix += f" {event.symbol}"
        self.logger.log(level, f"{prefix} {event.message}")

        if event.event_type.value in self._TRADE_EVENTS:
            TradingLogger.log_trade(event.event_type.name, {
                'symbol': event.symbol,
                'price': event.price,
                'quantity': event.quantity,
                'pnl': event.pnl,
                **event.data,
            })


class CompositeNotificationRelay(NotificationRelay):
    """Fans one event out to several relays; a failing relay does not block the rest."""

    def __init__(self, relays: Iterable[NotificationRelay]):
        self.relays: List[NotificationRelay] = list(relays)
        self.logger = logging.getLogger(__name__)

    async def publish(self, event: NotificationEvent) -> None:
        for relay in self.relays:
            try:
                await relay.publish(event)
            except Exception as e:
                self.logger.error(
                    f"Relay {type(relay).__name__} failed for {event.event_type.value}: {e}",
                    exc_info=True,
                )
