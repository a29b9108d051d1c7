"""
Custom exceptions for the trading system
"""

from typing import Optional


class TradingSystemError(Exception):
    """Base exception for trading system errors"""


class ConfigurationError(TradingSystemError):
    """Configuration related errors"""


class StartupError(TradingSystemError):
    """Fatal startup failure (exchange unreachable, bad credentials)"""


class PositionConflictError(TradingSystemError):
    """Attempt to open a second active position for a symbol"""

    def __init__(self, symbol: str):
        super().__init__(f"Active position already exists for {symbol}")
        self.symbol = symbol


class ExchangeError(TradingSystemError):
    """
    Failure reported by an ExchangeGateway.

    Attributes:
        error_code: Exchange error code (e.g. -1003), if known
        status_code: HTTP status code, if known
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[int] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code


class DataCollectionError(ExchangeError):
    """Market data (candles, prices) could not be fetched"""


class OrderExecutionError(ExchangeError):
    """Order execution errors"""


class ValidationError(OrderExecutionError):
    """Order parameters rejected before reaching the exchange"""


class RateLimitError(OrderExecutionError):
    """Rate limit exceeded"""


class OrderRejectedError(OrderExecutionError):
    """Order rejected by the exchange"""
