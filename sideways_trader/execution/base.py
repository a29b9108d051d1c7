"""Abstract base class for exchange access.

The trading core is written against ExchangeGateway only. Implementations:
BinanceGateway (live USDT-M futures) and PaperExchange (simulated fills).
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from sideways_trader.models.candle import Candle
    from sideways_trader.models.order import Order, OrderPurpose, OrderSide


class ExchangeGateway(ABC):
    """Abstract interface for market data, balances and orders.

    Every method may fail; failures are raised as ExchangeError (or a
    subclass) carrying the exchange error code, never as raw SDK errors.
    """

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check that the exchange is reachable and credentials work.

        Returns:
            True when reachable, False otherwise
        """
        ...

    @abstractmethod
    async def get_candles(self, symbol: str, interval: str, limit: int) -> List["Candle"]:
        """Fetch the most recent candles.

        Args:
            symbol: Trading pair
            interval: Kline interval ('15m', '1h', ...)
            limit: Number of candles

        Returns:
            Candles ordered oldest to newest
        """
        ...

    @abstractmethod
    async def get_current_price(self, symbol: str) -> float:
        """Latest traded price for a symbol."""
        ...

    @abstractmethod
    async def get_balance(self, asset: str) -> float:
        """Available balance of an asset (e.g. 'USDT')."""
        ...

    @abstractmethod
    async def place_market_order(
        self,
        symbol: str,
        side: "OrderSide",
        quantity: float,
        purpose: Optional["OrderPurpose"] = None,
    ) -> "Order":
        """Submit a market order.

        Args:
            symbol: Trading pair
            side: BUY or SELL
            quantity: Base-asset quantity (already lot-rounded)
            purpose: ENTRY or EXIT; EXIT orders only reduce exposure

        Returns:
            The order as acknowledged by the exchange
        """
        ...

    @abstractmethod
    async def place_limit_order(
        self,
        symbol: str,
        side: "OrderSide",
        quantity: float,
        price: float,
    ) -> "Order":
        """Submit a GTC limit order."""
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        """Cancel an open order.

        Returns:
            True if the exchange accepted the cancellation
        """
        ...

    @abstractmethod
    async def get_order(self, symbol: str, order_id: str) -> Optional["Order"]:
        """Current state of an order, or None if the exchange does not know it."""
        ...

    @abstractmethod
    async def get_open_orders(self, symbol: str) -> List["Order"]:
        """All non-terminal orders for a symbol."""
        ...

    @abstractmethod
    async def calculate_order_quantity(
        self,
        symbol: str,
        notional: float,
        price: Optional[float] = None,
    ) -> float:
        """Convert a quote-currency notional into a lot-rounded quantity.

        Args:
            symbol: Trading pair
            notional: Order value in quote currency
            price: Price to convert at; current price when omitted

        Returns:
            Quantity floored to the symbol's lot step (may be 0.0)
        """
        ...
