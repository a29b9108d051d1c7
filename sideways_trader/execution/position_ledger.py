"""
PositionLedger: authoritative registry of active positions and orders.

Holds at most one active position per symbol. Only the ledger creates,
mutates and closes positions; callers receive copies.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sideways_trader.core.exceptions import ExchangeError, PositionConflictError
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.models.notification import NotificationEvent, NotificationType
from sideways_trader.models.order import Order, OrderPurpose, OrderSide
from sideways_trader.models.position import Position
from sideways_trader.notifications.relay import NotificationRelay
from sideways_trader.utils.config import TradingConfig


class PositionLedger:
    """
    Position lifecycle owner.

    Position creation is a synchronous check-then-act and therefore atomic
    on the event loop. Closing awaits the exchange, so it is serialized per
    symbol with an ``asyncio.Lock``; a close is also refused while an exit
    order for the same symbol is still outstanding.

    Attributes:
        _active_positions: Active position by symbol
        _active_orders: Non-terminal orders by order id
        _pending_close_reasons: Close reason by outstanding exit order id
        _closed_positions: Closed positions, oldest first
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        config: TradingConfig,
        notifier: Optional[NotificationRelay] = None,
    ):
        self.gateway = gateway
        self.config = config
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)

        self._active_positions: Dict[str, Position] = {}
        self._active_orders: Dict[str, Order] = {}
        self._pending_close_reasons: Dict[str, str] = {}
        self._closed_positions: List[Position] = []
        self._close_locks: Dict[str, asyncio.Lock] = {}

    # ── Positions ────────────────────────────────────────────────

    async def create_position(
        self,
        symbol: str,
        side: str,
        quantity: float,
        entry_price: float,
        entry_time: Optional[datetime] = None,
    ) -> Position:
        """
        Register a new active position.

        Raises:
            PositionConflictError: An active position already exists for symbol
            ValueError: Invalid side, quantity or price
        """
        if symbol in self._active_positions:
            self.logger.warning(
                f"Rejected second position for {symbol}: "
                f"{self._active_positions[symbol].side} already active"
            )
            raise PositionConflictError(symbol)

        position = Position(
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            entry_time=entry_time or datetime.now(timezone.utc),
        )
        self._active_positions[symbol] = position

        self.logger.info(
            f"Position opened: {symbol} {side} {quantity} @ {entry_price:.2f}"
        )
        await self._notify(NotificationEvent(
            event_type=NotificationType.POSITION_OPENED,
            message=f"{side} {quantity} {symbol} @ {entry_price:.2f}",
            symbol=symbol,
            price=entry_price,
            quantity=quantity,
            data={"side": side},
        ))
        return replace(position)

    def get_active_position(self, symbol: str) -> Optional[Position]:
        position = self._active_positions.get(symbol)
        return replace(position) if position else None

    def has_active_position(self, symbol: str) -> bool:
        return symbol in self._active_positions

    def get_all_active_positions(self) -> List[Position]:
        return [replace(p) for p in self._active_positions.values()]

    def get_closed_positions(self) -> List[Position]:
        return [replace(p) for p in self._closed_positions]

    def last_closed_position(self, symbol: str) -> Optional[Position]:
        for position in reversed(self._closed_positions):
            if position.symbol == symbol:
                return replace(position)
        return None

    async def get_position_pnl(self, symbol: str) -> float:
        """Unrealized P&L of the active position at the current price."""
        position = self._active_positions.get(symbol)
        if position is None:
            return 0.0
        price = await self.gateway.get_current_price(symbol)
        return position.unrealized_pnl(price)

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        if symbol not in self._close_locks:
            self._close_locks[symbol] = asyncio.Lock()
        return self._close_locks[symbol]

    async def close_position(self, symbol: str, reason: str = "manual") -> bool:
        """
        Close the active position with an opposing market order.

        Returns:
            True only when the closing order filled and the position left the
            active set. On gateway failure the position stays active.
        """
        async with self._lock_for(symbol):
            position = self._active_positions.get(symbol)
            if position is None:
                self.logger.warning(f"close_position: no active position for {symbol}")
                return False

            if self.has_pending_order(symbol, OrderPurpose.EXIT):
                self.logger.info(f"close_position: exit order already pending for {symbol}")
                return False

            self.logger.info(
                f"Closing {symbol} {position.side} {position.quantity} (reason={reason})"
            )
            try:
                order = await self.gateway.place_market_order(
                    symbol, position.close_side, position.quantity, purpose=OrderPurpose.EXIT
                )
            except ExchangeError as e:
                self.logger.error(
                    f"Failed to close {symbol} position, it stays active: {e}"
                )
                await self._notify(NotificationEvent(
                    event_type=NotificationType.ORDER_FAILED,
                    message=str(e),
                    symbol=symbol,
                    quantity=position.quantity,
                    data={"side": position.close_side.value, "reason": reason},
                ))
                return False

            if order.purpose is None:
                order.purpose = OrderPurpose.EXIT

            if order.is_filled:
                await self._complete_close(position, order, reason)
                return True

            if order.is_terminal and order.executed_quantity > 0:
                await self._apply_partial_exit(position, order, reason)
                return not self.has_active_position(symbol)

            if order.is_terminal:
                self.logger.error(
                    f"Exit order {order.order_id} for {symbol} ended {order.status.value}, "
                    f"position stays active"
                )
                await self._notify(NotificationEvent(
                    event_type=NotificationType.ORDER_FAILED,
                    message=f"Exit order {order.status.value}",
                    symbol=symbol,
                    quantity=order.quantity,
                    data={"order_id": order.order_id, "side": order.side.value, "reason": reason},
                ))
                return False

            self.register_order(order)
            self._pending_close_reasons[order.order_id] = reason
            self.logger.info(
                f"Exit order {order.order_id} for {symbol} is {order.status.value}, "
                f"waiting for fill"
            )
            return False

    async def _complete_close(self, position: Position, order: Order, reason: str) -> None:
        exit_price = order.fill_price
        if exit_price is None:
            try:
                exit_price = await self.gateway.get_current_price(position.symbol)
            except ExchangeError as e:
                self.logger.warning(
                    f"No fill price for exit order {order.order_id} and price lookup failed "
                    f"({e}); using entry price"
                )
                exit_price = position.entry_price

        position.is_active = False
        position.exit_price = exit_price
        position.exit_time = datetime.now(timezone.utc)
        position.realized_pnl = position.pnl_at(exit_price)
        position.close_reason = reason

        self._active_positions.pop(position.symbol, None)
        self._closed_positions.append(position)

        self.logger.info(
            f"Position closed: {position.symbol} {position.side} "
            f"entry={position.entry_price:.2f} exit={exit_price:.2f} "
            f"pnl={position.realized_pnl:.4f} ({reason})"
        )
        await self._notify(NotificationEvent(
            event_type=NotificationType.ORDER_FILLED,
            message=f"Exit order {order.order_id} filled",
            symbol=position.symbol,
            price=exit_price,
            quantity=order.executed_quantity,
            data={"order_id": order.order_id, "side": order.side.value},
        ))
        await self._notify(NotificationEvent(
            event_type=NotificationType.POSITION_CLOSED,
            message=f"{position.side} closed ({reason})",
            symbol=position.symbol,
            price=exit_price,
            quantity=position.quantity,
            pnl=position.realized_pnl,
            data={
                "side": position.side,
                "entry_price": position.entry_price,
                "reason": reason,
            },
        ))

    async def _apply_partial_exit(self, position: Position, order: Order, reason: str) -> None:
        """Shrink the position by what a terminal, partly filled exit order sold."""
        remaining = position.quantity - order.executed_quantity
        if remaining <= 1e-12:
            await self._complete_close(position, order, reason)
            return
        position.quantity = remaining
        self.logger.warning(
            f"Exit order {order.order_id} ended {order.status.value} after a partial fill, "
            f"{remaining} {position.symbol} still held"
        )

    async def monitor(self, now: Optional[datetime] = None) -> None:
        """
        Refresh outstanding orders, then force-close positions held too long.

        Age-based closing ignores profit. One failing position never blocks
        the others.
        """
        now = now or datetime.now(timezone.utc)
        await self.refresh_orders()

        max_age = timedelta(hours=self.config.max_position_hold_hours)
        for symbol, position in list(self._active_positions.items()):
            try:
                age = position.age(now)
                if age < max_age:
                    continue
                self.logger.warning(
                    f"{symbol} position held {age} (max {max_age}), forcing close"
                )
                if not await self.close_position(symbol, reason="time_expiry"):
                    self.logger.warning(f"Forced close of {symbol} not completed this cycle")
            except Exception as e:
                self.logger.error(f"Error monitoring {symbol} position: {e}", exc_info=True)

    # ── Orders ───────────────────────────────────────────────────

    def register_order(self, order: Order) -> None:
        """Track a non-terminal order; terminal orders are dropped."""
        if order.order_id is None:
            raise ValueError("Cannot register an order without order_id")
        if order.is_terminal:
            self._active_orders.pop(order.order_id, None)
            return
        self._active_orders[order.order_id] = order

    def get_order(self, order_id: str) -> Optional[Order]:
        order = self._active_orders.get(order_id)
        return replace(order) if order else None

    def get_all_active_orders(self) -> List[Order]:
        return [replace(o) for o in self._active_orders.values()]

    def has_pending_order(self, symbol: str, purpose: Optional[OrderPurpose] = None) -> bool:
        return any(
            o.symbol == symbol and (purpose is None or o.purpose == purpose)
            for o in self._active_orders.values()
        )

    async def refresh_orders(self) -> None:
        """Poll every tracked order and prune the ones that reached a terminal status."""
        for order_id, tracked in list(self._active_orders.items()):
            try:
                latest = await self.gateway.get_order(tracked.symbol, order_id)
            except ExchangeError as e:
                self.logger.warning(f"Order {order_id} status poll failed: {e}")
                continue

            if latest is None:
                self.logger.warning(f"Order {order_id} unknown to the exchange, still tracked")
                continue

            if latest.purpose is None:
                latest.purpose = tracked.purpose

            if not latest.is_terminal:
                self._active_orders[order_id] = latest
                continue

            try:
                await self._on_order_terminal(latest)
            except Exception as e:
                # Still tracked, the next poll settles it again
                self.logger.error(f"Error handling terminal order {order_id}: {e}", exc_info=True)
                continue
            del self._active_orders[order_id]
            self._pending_close_reasons.pop(order_id, None)

    async def _on_order_terminal(self, order: Order) -> None:
        """
        Settle an order that reached a terminal status.

        Raising leaves the order tracked so the next refresh retries it;
        nothing is mutated before the last call that can fail.
        """
        reason = self._pending_close_reasons.get(order.order_id, "manual")
        filled_qty = order.executed_quantity
        self.logger.info(
            f"Order {order.order_id} {order.symbol} {order.side.value} -> {order.status.value} "
            f"(filled {filled_qty})"
        )

        if filled_qty <= 0:
            await self._notify(NotificationEvent(
                event_type=NotificationType.ORDER_CANCELLED,
                message=f"Order {order.status.value}",
                symbol=order.symbol,
                quantity=order.quantity,
                data={"order_id": order.order_id, "side": order.side.value},
            ))
            return

        if order.purpose == OrderPurpose.EXIT:
            position = self._active_positions.get(order.symbol)
            if position is None:
                self.logger.warning(f"Exit order {order.order_id} filled without active position")
                return
            if order.is_filled:
                await self._complete_close(position, order, reason)
            else:
                await self._apply_partial_exit(position, order, reason)
            return

        entry_price = order.fill_price or order.price
        if order.purpose == OrderPurpose.ENTRY and not entry_price:
            entry_price = await self.gateway.get_current_price(order.symbol)

        if not order.is_filled:
            self.logger.warning(
                f"Order {order.order_id} ended {order.status.value} after a partial fill "
                f"of {filled_qty}/{order.quantity}"
            )
        await self._notify(NotificationEvent(
            event_type=NotificationType.ORDER_FILLED,
            message=f"Order {order.order_id} filled ({filled_qty}/{order.quantity})",
            symbol=order.symbol,
            price=entry_price,
            quantity=filled_qty,
            data={"order_id": order.order_id, "side": order.side.value},
        ))

        if order.purpose == OrderPurpose.ENTRY:
            side = "LONG" if order.side == OrderSide.BUY else "SHORT"
            try:
                await self.create_position(order.symbol, side, filled_qty, entry_price)
            except PositionConflictError:
                self.logger.warning(
                    f"Entry order {order.order_id} filled but {order.symbol} already has a position"
                )

    async def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(event)
        except Exception as e:
            self.logger.error(f"Notification {event.event_type.value} failed: {e}")
