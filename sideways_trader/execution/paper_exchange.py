"""Paper-trading exchange: simulated fills against real or fed market data.

Implements ExchangeGateway so the trading core runs unchanged without
touching a real account. Every order and position change is written to a
Ledger.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import requests
from binance.error import ClientError, ServerError
from binance.um_futures import UMFutures

from sideways_trader.core.exceptions import (
    DataCollectionError,
    OrderExecutionError,
    OrderRejectedError,
    ValidationError,
)
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.execution.binance_gateway import floor_to_step, parse_kline
from sideways_trader.models.candle import Candle
from sideways_trader.models.order import Order, OrderPurpose, OrderSide, OrderStatus, OrderType
from sideways_trader.models.position import Position
from sideways_trader.storage.base import Ledger


class PaperExchange(ExchangeGateway):
    """In-memory exchange for paper trading.

    Market orders fill instantly at the current price adjusted for slippage;
    limit orders rest until a later price crosses them. Positions are netted
    per symbol (one-way mode). Fees are charged on every fill.

    Attributes:
        _balance: Quote-asset balance including realized PnL and fees
        _initial_balance: Starting balance
        _fee_rate: Fee rate per fill (default 0.04% = taker fee)
        _slippage_bps: Slippage in basis points for market orders
        _positions: Simulated net positions by symbol
        _orders: Every order ever placed, by order id
        _candles: Candles fed in-process, by symbol
        _prices: Explicit price overrides, by symbol
    """

    def __init__(
        self,
        ledger: Optional[Ledger] = None,
        initial_balance: float = 10000.0,
        fee_rate: float = 0.0004,
        slippage_bps: float = 1.0,
        step_size: float = 0.001,
        quote_asset: str = "USDT",
        market_client: Optional[UMFutures] = None,
    ):
        self.ledger = ledger
        self.quote_asset = quote_asset
        self.market_client = market_client
        self._initial_balance = initial_balance
        self._balance = initial_balance
        self._fee_rate = fee_rate
        self._slippage_bps = slippage_bps
        self._step_size = step_size
        self._positions: Dict[str, Position] = {}
        self._orders: Dict[str, Order] = {}
        self._order_counter = 0
        self._candles: Dict[str, List[Candle]] = {}
        self._prices: Dict[str, float] = {}
        self._realized_pnl = 0.0
        self._total_fees = 0.0
        self.logger = logging.getLogger(__name__)

    # ── Market data feed ─────────────────────────────────────────

    def feed_candles(self, symbol: str, candles: Sequence[Candle]) -> None:
        """Replace the candle history for a symbol and match resting orders."""
        self._candles[symbol] = list(candles)
        self._prices.pop(symbol, None)
        if candles:
            self._match_limit_orders(symbol, candles[-1].close)

    def set_price(self, symbol: str, price: float) -> None:
        """Override the current price for a symbol and match resting orders."""
        if price <= 0:
            raise ValueError(f"Price must be > 0, got {price}")
        self._prices[symbol] = price
        self._match_limit_orders(symbol, price)

    async def _public(self, method_name: str, **params) -> Any:
        if self.market_client is None:
            raise DataCollectionError(
                f"No market data for {params.get('symbol')}: feed candles or configure a market client"
            )
        try:
            return await asyncio.to_thread(getattr(self.market_client, method_name), **params)
        except (ClientError, ServerError, requests.RequestException) as e:
            raise DataCollectionError(f"{method_name} failed: {e}") from e

    # ── Simulation helpers ───────────────────────────────────────

    def _next_order_id(self) -> str:
        self._order_counter += 1
        return f"PAPER-{self._order_counter}"

    def _apply_slippage(self, price: float, is_buy: bool) -> float:
        """Buys fill slightly higher, sells slightly lower."""
        direction = 1 if is_buy else -1
        return price * (1 + self._slippage_bps / 10000 * direction)

    def _charge_fee(self, quantity: float, price: float) -> float:
        fee = quantity * price * self._fee_rate
        self._total_fees += fee
        self._balance -= fee
        return fee

    def _margin_in_use(self) -> float:
        return sum(p.notional_value for p in self._positions.values())

    def _record_order(self, order: Order) -> None:
        self._orders[order.order_id] = order
        self._persist("record_order", order)

    def _persist(self, method_name: str, record: Any) -> None:
        """Write to the ledger; a storage failure never undoes a simulated fill."""
        if self.ledger is None:
            return
        try:
            getattr(self.ledger, method_name)(record)
        except Exception as e:
            self.logger.error(f"[PAPER] Ledger {method_name} failed: {e}", exc_info=True)

    def _apply_fill(self, symbol: str, side: OrderSide, quantity: float, price: float) -> None:
        """Net a fill into the simulated position for ``symbol``."""
        now = datetime.now(timezone.utc)
        fill_side = "LONG" if side == OrderSide.BUY else "SHORT"
        position = self._positions.get(symbol)

        if position is None:
            self._open_position(symbol, fill_side, quantity, price, now)
            return

        if position.side == fill_side:
            total = position.quantity + quantity
            position.entry_price = (
                position.entry_price * position.quantity + price * quantity
            ) / total
            position.quantity = total
            self._persist("update_position", position)
            return

        closed_qty = min(quantity, position.quantity)
        pnl = replace(position, quantity=closed_qty).pnl_at(price)
        self._realized_pnl += pnl
        self._balance += pnl
        remaining = position.quantity - closed_qty

        if remaining > 1e-12:
            position.quantity = remaining
            self._persist("update_position", position)
        else:
            position.is_active = False
            position.exit_price = price
            position.exit_time = now
            position.realized_pnl = position.pnl_at(price)
            position.close_reason = "exit_order"
            del self._positions[symbol]
            self._persist("update_position", position)
            self.logger.info(
                f"[PAPER] {symbol} {position.side} closed @ {price:.2f}, pnl={pnl:.4f}"
            )

        excess = quantity - closed_qty
        if excess > 1e-12:
            self._open_position(symbol, fill_side, excess, price, now)

    def _open_position(
        self, symbol: str, side: str, quantity: float, price: float, now: datetime
    ) -> None:
        position = Position(
            symbol=symbol, side=side, quantity=quantity, entry_price=price, entry_time=now
        )
        self._positions[symbol] = position
        self._persist("record_position", position)
        self.logger.info(f"[PAPER] {symbol} {side} opened: {quantity} @ {price:.2f}")

    def _match_limit_orders(self, symbol: str, price: float) -> None:
        for order in list(self._orders.values()):
            if order.symbol != symbol or order.order_type != OrderType.LIMIT or order.is_terminal:
                continue
            crosses = (
                price <= order.price if order.side == OrderSide.BUY else price >= order.price
            )
            if not crosses:
                continue
            self._charge_fee(order.quantity, order.price)
            self._apply_fill(symbol, order.side, order.quantity, order.price)
            order.status = OrderStatus.FILLED
            order.filled_quantity = order.quantity
            order.avg_price = order.price
            self._record_order(order)
            self.logger.info(f"[PAPER] Limit order {order.order_id} filled @ {order.price}")

    # ── ExchangeGateway ──────────────────────────────────────────

    async def test_connection(self) -> bool:
        if self.market_client is None:
            return True
        try:
            await self._public("ping")
        except DataCollectionError as e:
            self.logger.error(f"Market data connection failed: {e}")
            return False
        return True

    async def get_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        if symbol in self._candles:
            return self._candles[symbol][-limit:]
        raw = await self._public("klines", symbol=symbol, interval=interval, limit=limit)
        return [parse_kline(k, symbol, interval) for k in raw]

    async def get_current_price(self, symbol: str) -> float:
        if symbol in self._prices:
            return self._prices[symbol]
        if self._candles.get(symbol):
            return self._candles[symbol][-1].close
        data = await self._public("ticker_price", symbol=symbol)
        try:
            return float(data["price"])
        except (KeyError, TypeError, ValueError) as e:
            raise DataCollectionError(f"Invalid ticker response for {symbol}: {e}") from e

    async def get_balance(self, asset: str) -> float:
        if asset != self.quote_asset:
            return 0.0
        return max(self._balance - self._margin_in_use(), 0.0)

    async def place_market_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        purpose: Optional[OrderPurpose] = None,
    ) -> Order:
        if quantity <= 0:
            raise ValidationError(f"Order quantity must be > 0, got {quantity}")

        position = self._positions.get(symbol)
        if purpose == OrderPurpose.EXIT:
            # Reduce-only: never flips or opens exposure
            if position is None or position.entry_side == side:
                raise OrderRejectedError(
                    f"Reduce-only {side.value} order rejected: no opposing position for {symbol}"
                )
            quantity = min(quantity, position.quantity)

        market_price = await self.get_current_price(symbol)
        fill_price = self._apply_slippage(market_price, side == OrderSide.BUY)

        if purpose != OrderPurpose.EXIT:
            # Same quoted price the engine sized the order with
            required = quantity * market_price
            available = await self.get_balance(self.quote_asset)
            if required > available:
                raise OrderRejectedError(
                    f"Insufficient paper balance: need {required:.2f}, have {available:.2f}"
                )

        self._charge_fee(quantity, fill_price)
        self._apply_fill(symbol, side, quantity, fill_price)

        order = Order(
            symbol=symbol,
            order_type=OrderType.MARKET,
            side=side,
            quantity=quantity,
            price=fill_price,
            order_id=self._next_order_id(),
            status=OrderStatus.FILLED,
            filled_quantity=quantity,
            avg_price=fill_price,
            purpose=purpose,
        )
        self._record_order(order)
        self.logger.info(
            f"[PAPER] {side.value} {quantity} {symbol} filled @ {fill_price:.2f} "
            f"(balance={self._balance:.2f})"
        )
        return replace(order)

    async def place_limit_order(
        self,
        symbol: str,
        side: OrderSide,
        quantity: float,
        price: float,
    ) -> Order:
        if quantity <= 0:
            raise ValidationError(f"Order quantity must be > 0, got {quantity}")
        if price <= 0:
            raise ValidationError(f"Limit price must be > 0, got {price}")

        order = Order(
            symbol=symbol,
            order_type=OrderType.LIMIT,
            side=side,
            quantity=quantity,
            price=price,
            order_id=self._next_order_id(),
        )
        self._record_order(order)
        self.logger.info(f"[PAPER] Limit {side.value} {quantity} {symbol} @ {price} resting")
        return replace(order)

    async def cancel_order(self, symbol: str, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol or order.is_terminal:
            return False
        order.status = OrderStatus.CANCELED
        self._record_order(order)
        return True

    async def get_order(self, symbol: str, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            return None
        return replace(order)

    async def get_open_orders(self, symbol: str) -> List[Order]:
        return [
            replace(o) for o in self._orders.values()
            if o.symbol == symbol and not o.is_terminal
        ]

    async def calculate_order_quantity(
        self,
        symbol: str,
        notional: float,
        price: Optional[float] = None,
    ) -> float:
        if notional <= 0:
            raise ValidationError(f"Notional must be > 0, got {notional}")
        if price is None:
            price = await self.get_current_price(symbol)
        if price <= 0:
            raise OrderExecutionError(f"Cannot size order at price {price}")
        return floor_to_step(notional / price, self._step_size)

    # ── Reporting ────────────────────────────────────────────────

    def get_simulated_position(self, symbol: str) -> Optional[Position]:
        position = self._positions.get(symbol)
        return replace(position) if position else None

    def summary(self) -> Dict[str, float]:
        return {
            "initial_balance": self._initial_balance,
            "balance": self._balance,
            "realized_pnl": self._realized_pnl,
            "total_fees": self._total_fees,
            "open_positions": len(self._positions),
        }
