"""
Lifecycle notification events published to a NotificationRelay
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class NotificationType(Enum):
    """Lifecycle events emitted by the trading core."""

    ORDER_PLACED = "order_placed"
    ORDER_FILLED = "order_filled"
    ORDER_CANCELLED = "order_cancelled"
    ORDER_FAILED = "order_failed"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    SIDEWAYS_DETECTED = "sideways_detected"
    MARKET_ANALYSIS = "market_analysis"
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    CONNECTION_LOST = "connection_lost"
    ERROR = "error"


class NotificationPriority(Enum):
    LOW = 0       # Market analysis, general info
    NORMAL = 1    # Order confirmations, position updates
    HIGH = 2      # Failed orders, start/stop
    CRITICAL = 3  # System failures, connection issues


_DEFAULT_PRIORITY: Dict[NotificationType, NotificationPriority] = {
    NotificationType.ORDER_FAILED: NotificationPriority.HIGH,
    NotificationType.ORDER_CANCELLED: NotificationPriority.LOW,
    NotificationType.MARKET_ANALYSIS: NotificationPriority.LOW,
    NotificationType.SYSTEM_START: NotificationPriority.HIGH,
    NotificationType.SYSTEM_STOP: NotificationPriority.HIGH,
    NotificationType.CONNECTION_LOST: NotificationPriority.CRITICAL,
    NotificationType.ERROR: NotificationPriority.CRITICAL,
}


def priority_for(event_type: NotificationType) -> NotificationPriority:
    return _DEFAULT_PRIORITY.get(event_type, NotificationPriority.NORMAL)


@dataclass
class NotificationEvent:
    """
    Typed lifecycle event.

    Attributes:
        event_type: What happened
        message: Human-readable summary
        symbol: Trading pair, empty for system events
        price: Relevant price (fill, entry, current)
        quantity: Relevant quantity
        pnl: Realized P&L for closed positions
        data: Extra context (order id, reason, error details)
        priority: Defaults to the type's priority
        timestamp: Event time (UTC)
    """

    event_type: NotificationType
    message: str = ""
    symbol: str = ""
    price: Optional[float] = None
    quantity: Optional[float] = None
    pnl: Optional[float] = None
    data: Dict[str, Any] = field(default_factory=dict)
    priority: Optional[NotificationPriority] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.priority is None:
            self.priority = priority_for(self.event_type)
