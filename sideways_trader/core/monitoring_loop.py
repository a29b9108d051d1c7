"""
MonitoringLoop: the single scheduler driving every trading cycle.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sideways_trader.core.exceptions import ExchangeError, StartupError
from sideways_trader.core.trading_engine import TradingDecisionEngine
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.execution.position_ledger import PositionLedger
from sideways_trader.models.notification import NotificationEvent, NotificationType
from sideways_trader.notifications.relay import NotificationRelay
from sideways_trader.utils.config import MonitoringConfig


class MonitoringLoop:
    """
    Periodic driver: analyze_market -> ledger.monitor -> position report -> sleep.

    Lifecycle:
        ```python
        loop = MonitoringLoop(gateway, engine, ledger, MonitoringConfig())
        await loop.run()   # returns after loop.stop() or task cancellation
        ```

    A failed connectivity check at startup aborts the run with StartupError.
    Inside the loop every exception is logged, published as ERROR and
    followed by the shorter error backoff; only stop()/cancellation ends it.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        engine: TradingDecisionEngine,
        ledger: PositionLedger,
        config: MonitoringConfig,
        notifier: Optional[NotificationRelay] = None,
    ) -> None:
        self.gateway = gateway
        self.engine = engine
        self.ledger = ledger
        self.config = config
        self.notifier = notifier
        self.logger = logging.getLogger(__name__)

        self._stop_event = asyncio.Event()
        self._running = False
        self.cycle_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Request shutdown; a sleeping loop wakes up immediately."""
        self.logger.info("Stop requested")
        self._stop_event.set()

    async def start(self) -> float:
        """
        Verify connectivity and report the starting balance.

        Returns:
            Starting quote-asset balance

        Raises:
            StartupError: Exchange unreachable or balance unavailable
        """
        quote = self.engine.config.quote_asset
        try:
            connected = await self.gateway.test_connection()
        except ExchangeError as e:
            self.logger.error(f"Connection test raised: {e}")
            connected = False

        if not connected:
            await self._notify(NotificationEvent(
                event_type=NotificationType.CONNECTION_LOST,
                message="Failed to connect to the exchange, trading not started",
            ))
            raise StartupError("Exchange connection test failed")

        try:
            balance = await self.gateway.get_balance(quote)
        except ExchangeError as e:
            await self._notify(NotificationEvent(
                event_type=NotificationType.CONNECTION_LOST,
                message=f"Balance query failed at startup: {e}",
            ))
            raise StartupError(f"Cannot read starting balance: {e}") from e

        self.logger.info(f"Starting balance: {balance:.2f} {quote}")
        await self._report_open_orders()
        await self._notify(NotificationEvent(
            event_type=NotificationType.SYSTEM_START,
            message=(
                f"Trading bot started for {self.engine.config.symbol}. "
                f"Initial balance: {balance:.2f} {quote}"
            ),
            symbol=self.engine.config.symbol,
            data={"balance": balance},
        ))
        return balance

    async def _report_open_orders(self) -> None:
        """Warn about exchange orders this process did not place; they are not managed."""
        symbol = self.engine.config.symbol
        try:
            orders = await self.gateway.get_open_orders(symbol)
        except ExchangeError as e:
            self.logger.warning(f"Open order check for {symbol} failed: {e}")
            return
        for order in orders:
            self.logger.warning(
                f"Unmanaged open order {order.order_id} for {symbol}: "
                f"{order.order_type.value} {order.side.value} {order.quantity} @ {order.price}"
            )

    async def run(self) -> None:
        await self.start()

        self._running = True
        self.logger.info(
            f"Monitoring loop started (interval={self.config.interval_minutes}m, "
            f"error backoff={self.config.error_backoff_minutes}m)"
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.run_once()
                    delay = self.config.interval_seconds
                except Exception as e:
                    self.error_count += 1
                    self.logger.error(f"Monitoring cycle failed: {e}", exc_info=True)
                    await self._notify(NotificationEvent(
                        event_type=NotificationType.ERROR,
                        message=f"Monitoring cycle failed: {e}",
                        data={"error_type": type(e).__name__},
                    ))
                    delay = self.config.error_backoff_seconds
                await self._sleep(delay)
        finally:
            self._running = False
            self.logger.info(
                f"Monitoring loop stopped after {self.cycle_count} cycles "
                f"({self.error_count} errors)"
            )
            await self._notify(NotificationEvent(
                event_type=NotificationType.SYSTEM_STOP,
                message="Trading bot stopped",
                data={"cycles": self.cycle_count, "errors": self.error_count},
            ))

    async def run_once(self) -> None:
        """One full cycle; stops between steps once stop() was requested."""
        now = datetime.now(timezone.utc)
        self.cycle_count += 1

        await self.engine.analyze_market()
        if self._stop_event.is_set():
            return

        await self.ledger.monitor(now)
        if self._stop_event.is_set():
            return

        await self._log_positions()

    async def _log_positions(self) -> None:
        positions = self.ledger.get_all_active_positions()
        if not positions:
            self.logger.info("No active positions")
            return
        for position in positions:
            try:
                pnl = await self.ledger.get_position_pnl(position.symbol)
            except ExchangeError as e:
                self.logger.warning(f"Price lookup for {position.symbol} failed: {e}")
                continue
            self.logger.info(
                f"Active {position.symbol} {position.side} {position.quantity} "
                f"@ {position.entry_price:.2f} | pnl={pnl:.4f} "
                f"({pnl / position.notional_value:.4%}) age={position.age()}"
            )

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _notify(self, event: NotificationEvent) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.publish(event)
        except Exception as e:
            self.logger.error(f"Notification {event.event_type.value} failed: {e}")
