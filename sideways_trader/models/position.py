"""
Position model
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from sideways_trader.models.order import OrderSide


@dataclass
class Position:
    """
    Open market exposure for one symbol.

    Only PositionLedger creates and mutates positions; everyone else works
    on copies.

    Attributes:
        symbol: Trading pair
        side: 'LONG' or 'SHORT'
        quantity: Position size in base asset
        entry_price: Average entry price
        entry_time: Position open time (UTC)
        is_active: False once the position has been closed
        exit_price: Fill price of the closing order
        exit_time: Close time (UTC)
        realized_pnl: (exit - entry) * quantity, sign-flipped for SHORT
        close_reason: 'min_profit', 'time_expiry', 'manual', ...
    """

    symbol: str
    side: str  # 'LONG' or 'SHORT'
    quantity: float
    entry_price: float
    entry_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_active: bool = True
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    realized_pnl: Optional[float] = None
    close_reason: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate position parameters."""
        if self.side not in ("LONG", "SHORT"):
            raise ValueError(f"Side must be 'LONG' or 'SHORT', got {self.side}")
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be > 0, got {self.quantity}")
        if self.entry_price <= 0:
            raise ValueError(f"Entry price must be > 0, got {self.entry_price}")

    @property
    def entry_side(self) -> OrderSide:
        return OrderSide.BUY if self.side == "LONG" else OrderSide.SELL

    @property
    def close_side(self) -> OrderSide:
        """Order side that flattens this position."""
        return self.entry_side.opposite

    @property
    def notional_value(self) -> float:
        """Total position value (quantity * entry_price)."""
        return self.quantity * self.entry_price

    def profit_ratio(self, price: float) -> float:
        """Unrealized return relative to entry, positive when in profit."""
        ratio = (price - self.entry_price) / self.entry_price
        return ratio if self.side == "LONG" else -ratio

    def pnl_at(self, price: float) -> float:
        """Quote-currency P&L if the whole position traded at ``price``."""
        pnl = (price - self.entry_price) * self.quantity
        return pnl if self.side == "LONG" else -pnl

    def unrealized_pnl(self, price: float) -> float:
        return self.pnl_at(price) if self.is_active else 0.0

    def age(self, now: Optional[datetime] = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return now - self.entry_time
