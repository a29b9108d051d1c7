"""
Candlestick data model
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Candle:
    """
    One closed OHLCV bar of the traded symbol.

    The regime detector only reads high, low and close; open and volume are
    kept so paper fills and logs see the whole bar. Sequences handed to the
    core are ordered oldest first.

    Attributes:
        symbol: Trading pair (e.g., 'BTCUSDT')
        interval: Binance interval string derived from period_minutes ('15m', '1h')
        open_time: Bar opening timestamp (UTC)
        open, high, low, close: Prices in quote currency
        volume: Traded volume in base asset
        close_time: Bar closing timestamp (UTC)
    """

    symbol: str
    interval: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: datetime

    def __post_init__(self) -> None:
        body_top = max(self.open, self.close)
        body_bottom = min(self.open, self.close)
        if self.high < body_top or self.low > body_bottom:
            raise ValueError(
                f"{self.symbol} {self.interval} bar at {self.open_time}: "
                f"high/low ({self.high}/{self.low}) do not enclose "
                f"open/close ({self.open}/{self.close})"
            )
        if self.volume < 0:
            raise ValueError(f"Volume ({self.volume}) cannot be negative")
