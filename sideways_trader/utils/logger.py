"""
Process-wide logging setup and the JSON trade journal

Three sinks are attached to the root logger:
- stdout for the operator (INFO+)
- logs/trading.log, size-rotated, everything at DEBUG+
- logs/trades.log, rotated at midnight, fed only by the 'trades' logger
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Generator

TRADE_LOGGER_NAME = 'trades'

LINE_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
TRADE_LOG_RETENTION_DAYS = 30

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class TradeLogFilter(logging.Filter):
    """Pass only records emitted on the trade journal logger."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.name == TRADE_LOGGER_NAME


class TradingLogger:
    """
    Installs the bot's log handlers on the root logger

    Constructing it twice replaces the handlers instead of stacking them,
    so a restarted bot inside the same process does not double-log.
    """

    def __init__(self, config: dict):
        """
        Args:
            config: LoggingConfig as a dict with keys:
                - log_level: str (DEBUG, INFO, WARNING, ERROR)
                - log_dir: str, relative paths are taken from the project root

        Raises:
            OSError: If the log directory cannot be created
        """
        self.log_level = config.get('log_level', 'INFO')

        log_dir = Path(config.get('log_dir', 'logs'))
        self.log_dir = log_dir if log_dir.is_absolute() else PROJECT_ROOT / log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_logging()

    def _setup_logging(self) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.log_level.upper()))
        root_logger.handlers.clear()

        for handler in self._build_handlers():
            root_logger.addHandler(handler)

    def _build_handlers(self) -> list:
        line_format = logging.Formatter(LINE_FORMAT)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(line_format)

        cycle_handler = RotatingFileHandler(
            self.log_dir / 'trading.log',
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUPS
        )
        cycle_handler.setLevel(logging.DEBUG)
        cycle_handler.setFormatter(line_format)

        # Bare JSON lines, one per trade event
        journal_handler = TimedRotatingFileHandler(
            self.log_dir / 'trades.log',
            when='midnight',
            backupCount=TRADE_LOG_RETENTION_DAYS
        )
        journal_handler.setLevel(logging.INFO)
        journal_handler.addFilter(TradeLogFilter())

        return [console_handler, cycle_handler, journal_handler]

    @staticmethod
    def log_trade(action: str, data: dict) -> None:
        """
        Append one event to the trade journal

        Args:
            action: Event name, e.g. POSITION_OPENED or POSITION_CLOSED
            data: Event fields; enums and datetimes are serialized

        Example:
            TradingLogger.log_trade('POSITION_CLOSED', {
                'symbol': 'BTCUSDT',
                'entry_price': 19050.0,
                'exit_price': 19150.0,
                'pnl': 0.52,
                'reason': 'min_profit'
            })
        """
        entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'action': action,
            **data
        }
        logging.getLogger(TRADE_LOGGER_NAME).info(json.dumps(entry, default=_journal_value))


def _journal_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, 'value'):
        return value.value
    return str(value)


@contextmanager
def log_execution_time(operation: str) -> Generator[None, None, None]:
    """Log how long the wrapped block took, at DEBUG, even when it raises."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        logging.getLogger(__name__).debug(f"{operation} completed in {elapsed:.3f}s")
