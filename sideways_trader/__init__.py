"""
Sideways range trader for Binance USDT-M futures
Main package initialization
"""

__version__ = "0.1.0"

from sideways_trader.utils.config import ConfigManager, TradingConfig

__all__ = ["ConfigManager", "TradingConfig"]
