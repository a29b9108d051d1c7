"""
TradingDecisionEngine: per-cycle sideways range strategy.

Each cycle fetches candles, classifies the regime and, in a sideways market,
first manages the existing position and only then considers a new entry.
"""

import logging
from enum import Enum
from typing import Optional

from sideways_trader.analysis.regime_detector import RegimeDetector
from sideways_trader.core.exceptions import ExchangeError, PositionConflictError
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.execution.position_ledger import PositionLedger
from sideways_trader.models.notification import NotificationEvent, NotificationType
from sideways_trader.models.order import OrderPurpose, OrderSide
from sideways_trader.models.regime import RegimeResult
from sideways_trader.notifications.relay import NotificationRelay
from sideways_trader.utils.config import TradingConfig
from sideways_trader.utils.logger import log_execution_time


class CycleAction(Enum):
    """Outcome of one analyze_market call."""
    NO_ACTION = "no_action"
    HOLD = "hold"
    EXITED = "exited"
    EXIT_PENDING = "exit_pending"
    ENTERED = "entered"
    ENTRY_PENDING = "entry_pending"


class TradingDecisionEngine:
    """
    Decides hold / enter / exit for the configured symbol.

    State per symbol is implicit in the ledger:
        Idle -> (sideways, price near support, balance ok) -> Holding
        Holding -> (profit >= min_profit_percent) -> Idle
        Holding -> (age >= max_position_hold_hours, via ledger.monitor) -> Idle

    Exit evaluation always runs before entry evaluation, and a cycle that
    started with a position never opens a new one. Exchange errors are
    logged and turn the cycle into a no-op; nothing propagates to the loop.
    """

    def __init__(
        self,
        config: TradingConfig,
        gateway: ExchangeGateway,
        ledger: PositionLedger,
        detector: Optional[RegimeDetector] = None,
        notifier: Optional[NotificationRelay] = None,
    ) -> None:
        self.config = config
        self.gateway = gateway
        self.ledger = ledger
        self.detector = detector or RegimeDetector()
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)

        self.last_regime: Optional[RegimeResult] = None
        self.last_price: Optional[float] = None

    async def analyze_market(self) -> CycleAction:
        symbol = self.config.symbol
        with log_execution_time(f"analyze_market[{symbol}]"):
            try:
                candles = await self.gateway.get_candles(
                    symbol, self.config.interval, self.config.candle_limit
                )
            except ExchangeError as e:
                self.logger.error(f"Candle fetch failed for {symbol}, skipping cycle: {e}")
                return CycleAction.NO_ACTION

            if not candles:
                self.logger.warning(f"No candles for {symbol}, skipping cycle")
                return CycleAction.NO_ACTION

            regime = self.detector.classify(
                candles, self.config.analysis_periods, self.config.sideways_threshold
            )
            # One price snapshot serves exit, entry and sizing this cycle
            price = candles[-1].close
            self.last_regime = regime
            self.last_price = price

            if not regime.is_sideways:
                self.logger.info(
                    f"{symbol} not sideways (price={price:.2f}, "
                    f"in_range={regime.in_range}, touches={regime.multiple_touches}, "
                    f"not_trending={regime.not_trending}, "
                    f"insufficient={regime.insufficient_data})"
                )
                await self._notify(NotificationEvent(
                    event_type=NotificationType.MARKET_ANALYSIS,
                    message=f"{symbol} not sideways",
                    symbol=symbol,
                    price=price,
                    data={
                        "range_ratio": regime.range_ratio,
                        "trend_ratio": regime.trend_ratio,
                        "insufficient_data": regime.insufficient_data,
                    },
                ))
                if self.config.manage_exits_outside_range:
                    action = await self._manage_existing_position(symbol, price)
                    return action or CycleAction.NO_ACTION
                return CycleAction.NO_ACTION

            self.logger.info(
                f"{symbol} sideways: support={regime.support:.2f} "
                f"resistance={regime.resistance:.2f} price={price:.2f}"
            )
            await self._notify(NotificationEvent(
                event_type=NotificationType.SIDEWAYS_DETECTED,
                message=f"Range {regime.support:.2f} - {regime.resistance:.2f}",
                symbol=symbol,
                price=price,
                data={"support": regime.support, "resistance": regime.resistance},
            ))

            exit_action = await self._manage_existing_position(symbol, price)
            if exit_action is not None:
                return exit_action

            if self.ledger.has_pending_order(symbol):
                self.logger.info(f"{symbol} has an outstanding order, no new entry")
                return CycleAction.NO_ACTION

            return await self._evaluate_entry(symbol, price, regime)

    async def _manage_existing_position(self, symbol: str, price: float) -> Optional[CycleAction]:
        """
        Close the active position once its profit reaches the target.

        Returns None when there was no position at all.
        """
        position = self.ledger.get_active_position(symbol)
        if position is None:
            return None

        profit_ratio = position.profit_ratio(price)
        if profit_ratio >= self.config.min_profit_percent:
            self.logger.info(
                f"{symbol} profit {profit_ratio:.4%} >= {self.config.min_profit_percent:.4%}, closing"
            )
            if await self.ledger.close_position(symbol, reason="min_profit"):
                closed = self.ledger.last_closed_position(symbol)
                if closed is not None:
                    self.logger.info(
                        f"{symbol} realized P&L: {closed.realized_pnl:.4f} "
                        f"(entry={closed.entry_price:.2f}, exit={closed.exit_price:.2f}, "
                        f"qty={closed.quantity})"
                    )
                return CycleAction.EXITED
            if self.ledger.has_pending_order(symbol, OrderPurpose.EXIT):
                return CycleAction.EXIT_PENDING
            return CycleAction.HOLD

        if profit_ratio < 0:
            self.logger.info(
                f"{symbol} {position.side} below zero ({profit_ratio:.4%}), holding"
            )
        else:
            self.logger.info(
                f"{symbol} {position.side} below target ({profit_ratio:.4%} < "
                f"{self.config.min_profit_percent:.4%}), holding"
            )
        return CycleAction.HOLD

    async def _evaluate_entry(self, symbol: str, price: float, regime: RegimeResult) -> CycleAction:
        buy_level = regime.support * (1 + self.config.buy_distance_from_support)
        if price <= buy_level:
            self.logger.info(f"{symbol} price {price:.2f} <= buy level {buy_level:.2f}")
            return await self._enter(symbol, OrderSide.BUY, price)

        sell_level = regime.resistance * (1 - self.config.sell_distance_from_resistance)
        if price >= sell_level:
            if self.config.enable_short_entries:
                self.logger.info(f"{symbol} price {price:.2f} >= sell level {sell_level:.2f}")
                return await self._enter(symbol, OrderSide.SELL, price)
            self.logger.info(
                f"{symbol} price {price:.2f} near resistance {regime.resistance:.2f}, "
                f"short entries disabled"
            )
            return CycleAction.NO_ACTION

        self.logger.debug(
            f"{symbol} price {price:.2f} mid-range ({buy_level:.2f} / {sell_level:.2f})"
        )
        return CycleAction.NO_ACTION

    async def _enter(self, symbol: str, side: OrderSide, price: float) -> CycleAction:
        order_size = self.config.order_size
        quote = self.config.quote_asset

        try:
            balance = await self.gateway.get_balance(quote)
        except ExchangeError as e:
            self.logger.error(f"Balance query failed, skipping entry: {e}")
            return CycleAction.NO_ACTION

        if balance < order_size:
            self.logger.warning(
                f"Insufficient {quote} balance for entry: {balance:.2f} < {order_size:.2f}"
            )
            return CycleAction.NO_ACTION

        try:
            quantity = await self.gateway.calculate_order_quantity(symbol, order_size, price)
        except ExchangeError as e:
            self.logger.error(f"Quantity calculation failed, skipping entry: {e}")
            return CycleAction.NO_ACTION

        if quantity <= 0:
            self.logger.warning(
                f"{order_size} {quote} at {price:.2f} rounds to zero quantity, skipping entry"
            )
            return CycleAction.NO_ACTION

        try:
            order = await self.gateway.place_market_order(
                symbol, side, quantity, purpose=OrderPurpose.ENTRY
            )
        except ExchangeError as e:
            self.logger.error(f"Entry order {side.value} {quantity} {symbol} failed: {e}")
            await self._notify(NotificationEvent(
                event_type=NotificationType.ORDER_FAILED,
                message=str(e),
                symbol=symbol,
                quantity=quantity,
                data={"side": side.value},
            ))
            return CycleAction.NO_ACTION

        if order.purpose is None:
            order.purpose = OrderPurpose.ENTRY

        await self._notify(NotificationEvent(
            event_type=NotificationType.ORDER_PLACED,
            message=f"Entry {side.value} {quantity} {symbol}",
            symbol=symbol,
            price=order.fill_price or price,
            quantity=quantity,
            data={"order_id": order.order_id, "side": side.value, "order_type": "MARKET"},
        ))

        # A market order can end EXPIRED or CANCELED after a partial fill
        if order.is_filled or (order.is_terminal and order.executed_quantity > 0):
            entry_price = order.fill_price or price
            if not order.is_filled:
                self.logger.warning(
                    f"Entry order {order.order_id} ended {order.status.value} after a partial fill, "
                    f"holding {order.executed_quantity} of {quantity}"
                )
            await self._notify(NotificationEvent(
                event_type=NotificationType.ORDER_FILLED,
                message=f"Entry order {order.order_id} filled ({order.executed_quantity}/{quantity})",
                symbol=symbol,
                price=entry_price,
                quantity=order.executed_quantity,
                data={"order_id": order.order_id, "side": side.value},
            ))
            position_side = "LONG" if side == OrderSide.BUY else "SHORT"
            try:
                await self.ledger.create_position(
                    symbol, position_side, order.executed_quantity, entry_price
                )
            except PositionConflictError as e:
                self.logger.warning(f"Entry filled but position rejected: {e}")
                return CycleAction.NO_ACTION
            return CycleAction.ENTERED

        if order.is_terminal:
            self.logger.error(
                f"Entry order {order.order_id} ended {order.status.value}, no position opened"
            )
            await self._notify(NotificationEvent(
                event_type=NotificationType.ORDER_FAILED,
                message=f"Entry order {order.status.value}",
                symbol=symbol,
                quantity=quantity,
                data={"order_id": order.order_id, "side": side.value},
            ))
            return CycleAction.NO_ACTION

        self.ledger.register_order(order)
        self.logger.info(f"Entry order {order.order_id} {order.status.value}, awaiting fill")
        return CycleAction.ENTRY_PENDING

    async def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(event)
        except Exception as e:
            self.logger.error(f"Notification {event.event_type.value} failed: {e}")
