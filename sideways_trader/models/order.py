"""
Order model
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class OrderType(Enum):
    """Order types"""
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderSide(Enum):
    """Order sides"""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderStatus(Enum):
    """Order status"""
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({
    OrderStatus.FILLED,
    OrderStatus.CANCELED,
    OrderStatus.REJECTED,
    OrderStatus.EXPIRED,
})


class OrderPurpose(Enum):
    """Why an order was sent: to open a position or to close one"""
    ENTRY = "ENTRY"
    EXIT = "EXIT"


@dataclass
class Order:
    """
    Exchange order.

    ``price`` is the requested limit price (or the fill price for market
    orders once known); ``avg_price`` is the exchange-reported average
    execution price and stays 0.0 until something is filled.
    """
    symbol: str
    order_type: OrderType
    side: OrderSide
    quantity: float
    price: Optional[float] = None
    stop_price: Optional[float] = None
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    status: OrderStatus = OrderStatus.NEW
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    filled_quantity: float = 0.0
    avg_price: float = 0.0
    purpose: Optional[OrderPurpose] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_filled(self) -> bool:
        return self.status == OrderStatus.FILLED

    @property
    def fill_price(self) -> Optional[float]:
        """Best known execution price, or None if nothing executed yet."""
        if self.avg_price > 0:
            return self.avg_price
        if self.is_filled and self.price:
            return self.price
        return None

    @property
    def executed_quantity(self) -> float:
        """Filled quantity, falling back to the ordered quantity for fills without detail."""
        if self.filled_quantity > 0:
            return self.filled_quantity
        return self.quantity if self.is_filled else 0.0
