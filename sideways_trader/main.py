"""
Application entry point: wires configuration, gateway, core and loop.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from binance.um_futures import UMFutures

from sideways_trader.analysis.regime_detector import RegimeDetector
from sideways_trader.core.audit_logger import AuditLogger
from sideways_trader.core.exceptions import StartupError, TradingSystemError
from sideways_trader.core.monitoring_loop import MonitoringLoop
from sideways_trader.core.trading_engine import TradingDecisionEngine
from sideways_trader.execution.base import ExchangeGateway
from sideways_trader.execution.binance_gateway import MAINNET_URL, BinanceGateway
from sideways_trader.execution.paper_exchange import PaperExchange
from sideways_trader.execution.position_ledger import PositionLedger
from sideways_trader.models.notification import NotificationPriority
from sideways_trader.notifications.relay import (
    CompositeNotificationRelay,
    LoggingNotificationRelay,
    NotificationRelay,
)
from sideways_trader.notifications.telegram import TelegramNotificationRelay
from sideways_trader.storage.sqlite_ledger import SQLiteLedger
from sideways_trader.utils.config import ConfigManager
from sideways_trader.utils.logger import TradingLogger


class TradingBot:
    """
    Owns every component of one trading run.

    Lifecycle:
        1. initialize() - load config, set up logging, build components
        2. run() - drive the MonitoringLoop until stop or cancellation
        3. shutdown() - request the loop to stop
    """

    def __init__(self, config_dir: str = "configs", paper: Optional[bool] = None) -> None:
        self.config_dir = config_dir
        self.paper_override = paper

        self.config_manager: Optional[ConfigManager] = None
        self.gateway: Optional[ExchangeGateway] = None
        self.notifier: Optional[NotificationRelay] = None
        self.ledger: Optional[PositionLedger] = None
        self.engine: Optional[TradingDecisionEngine] = None
        self.loop: Optional[MonitoringLoop] = None
        self.storage: Optional[SQLiteLedger] = None
        self.logger = logging.getLogger(__name__)

    def initialize(self) -> None:
        """
        Build components in dependency order.

        Raises:
            ConfigurationError: Missing or invalid configuration
        """
        self.config_manager = ConfigManager(self.config_dir, paper_override=self.paper_override)
        trading_config = self.config_manager.trading_config
        paper_config = self.config_manager.paper_config

        TradingLogger(self.config_manager.logging_config.__dict__)

        mode = "PAPER" if self.config_manager.is_paper else (
            "TESTNET" if self.config_manager.is_testnet else "MAINNET"
        )
        self.logger.info("=" * 50)
        self.logger.info("Sideways Range Trader Starting...")
        self.logger.info(f"Mode: {mode}")
        self.logger.info(f"Symbol: {trading_config.symbol} ({trading_config.interval})")
        self.logger.info(f"Order size: {trading_config.order_size} {trading_config.quote_asset}")
        self.logger.info(
            f"Window: {trading_config.analysis_periods} candles, "
            f"range threshold {trading_config.sideways_threshold:.2%}"
        )
        self.logger.info(
            f"Min profit: {trading_config.min_profit_percent:.2%}, "
            f"max hold: {trading_config.max_position_hold_hours}h"
        )
        self.logger.info("=" * 50)

        if self.config_manager.is_paper:
            self.storage = SQLiteLedger(paper_config.db_path)
            self.gateway = PaperExchange(
                ledger=self.storage,
                initial_balance=paper_config.initial_balance,
                fee_rate=paper_config.fee_rate,
                slippage_bps=paper_config.slippage_bps,
                step_size=paper_config.step_size,
                quote_asset=trading_config.quote_asset,
                # Public endpoints only: real market data, simulated orders
                market_client=UMFutures(base_url=MAINNET_URL),
            )
        else:
            api_config = self.config_manager.api_config
            self.gateway = BinanceGateway(
                api_key=api_config.api_key,
                api_secret=api_config.api_secret,
                is_testnet=api_config.is_testnet,
                audit_logger=AuditLogger(),
            )

        self.notifier = self._build_notifier()
        self.ledger = PositionLedger(self.gateway, trading_config, self.notifier)
        self.engine = TradingDecisionEngine(
            trading_config, self.gateway, self.ledger, RegimeDetector(), self.notifier
        )
        self.loop = MonitoringLoop(
            self.gateway,
            self.engine,
            self.ledger,
            self.config_manager.monitoring_config,
            self.notifier,
        )
        self.logger.info("All components initialized successfully")

    def _build_notifier(self) -> NotificationRelay:
        relays: List[NotificationRelay] = [LoggingNotificationRelay()]
        config = self.config_manager.notification_config
        if config.telegram_enabled:
            relays.append(TelegramNotificationRelay(
                token=config.telegram_token,
                chat_id=config.telegram_chat_id,
                min_priority=NotificationPriority[config.min_priority],
            ))
            self.logger.info(f"Telegram notifications enabled (min priority {config.min_priority})")
        return CompositeNotificationRelay(relays)

    async def run(self) -> None:
        if self.loop is None:
            raise RuntimeError("initialize() must be called before run()")

        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                event_loop.add_signal_handler(sig, self.shutdown)
            except NotImplementedError:
                # Windows: fall back to KeyboardInterrupt
                pass

        try:
            await self.loop.run()
        finally:
            if isinstance(self.gateway, PaperExchange):
                self.logger.info(f"Paper trading summary: {self.gateway.summary()}")
            if self.storage is not None:
                self.storage.close()

    def shutdown(self) -> None:
        self.logger.info("Shutdown requested")
        if self.loop is not None:
            self.loop.stop()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sideways range trading bot")
    parser.add_argument(
        "--config-dir", default="configs",
        help="Directory holding trading_config.ini and api_keys.ini (default: configs)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--paper", dest="paper", action="store_true", default=None,
                      help="Force paper trading")
    mode.add_argument("--live", dest="paper", action="store_false",
                      help="Trade against Binance (testnet unless configured otherwise)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Console entry point.

    Exits with status 1 on configuration errors, fatal startup failures and
    any other unexpected error.
    """
    args = parse_args(argv)
    bot = TradingBot(config_dir=args.config_dir, paper=args.paper)

    try:
        bot.initialize()
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        logging.info("Interrupted")
    except StartupError as e:
        logging.critical(f"Startup failed: {e}")
        sys.exit(1)
    except TradingSystemError as e:
        logging.critical(f"Fatal error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
