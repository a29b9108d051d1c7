"""
Configuration management with INI files and environment overrides
"""

import os
from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from sideways_trader.core.exceptions import ConfigurationError

# Binance kline intervals keyed by candle period in minutes
PERIOD_INTERVALS: Dict[int, str] = {
    1: "1m",
    3: "3m",
    5: "5m",
    15: "15m",
    30: "30m",
    60: "1h",
    120: "2h",
    240: "4h",
    1440: "1d",
}


@dataclass
class APIConfig:
    """Binance API configuration"""
    api_key: str
    api_secret: str
    is_testnet: bool = True

    def __post_init__(self):
        # Security: Never log API keys
        if not self.api_key or not self.api_secret:
            raise ConfigurationError("API key and secret are required")


@dataclass(frozen=True)
class TradingConfig:
    """
    Immutable per-run strategy parameters.

    Loaded once at startup and never mutated by the trading core.
    """

    class ParamSchema(BaseModel):
        """Pydantic schema for sideways-strategy parameters."""
        symbol: str = Field("BTCUSDT", min_length=1)
        order_size: float = Field(10.0, gt=0, description="Order notional in quote currency")
        period_minutes: int = Field(15, gt=0)
        analysis_periods: int = Field(20, ge=2)
        sideways_threshold: float = Field(0.02, gt=0, lt=1)
        buy_distance_from_support: float = Field(0.005, ge=0, lt=1)
        sell_distance_from_resistance: float = Field(0.005, ge=0, lt=1)
        min_profit_percent: float = Field(0.003, gt=0, lt=1)
        max_position_hold_hours: float = Field(24, gt=0)
        quote_asset: str = Field("USDT", min_length=1)
        candle_margin: int = Field(10, ge=0)
        enable_short_entries: bool = False
        manage_exits_outside_range: bool = False

    symbol: str = "BTCUSDT"
    order_size: float = 10.0
    period_minutes: int = 15
    analysis_periods: int = 20
    sideways_threshold: float = 0.02
    buy_distance_from_support: float = 0.005
    sell_distance_from_resistance: float = 0.005
    min_profit_percent: float = 0.003
    max_position_hold_hours: float = 24
    quote_asset: str = "USDT"
    candle_margin: int = 10
    enable_short_entries: bool = False
    manage_exits_outside_range: bool = False

    def __post_init__(self):
        if self.period_minutes not in PERIOD_INTERVALS:
            raise ConfigurationError(
                f"Unsupported period_minutes {self.period_minutes}. "
                f"Must be one of {sorted(PERIOD_INTERVALS)}"
            )
        if self.order_size <= 0:
            raise ConfigurationError(f"order_size must be > 0, got {self.order_size}")
        if not 0 < self.sideways_threshold < 1:
            raise ConfigurationError(
                f"sideways_threshold must be in (0, 1), got {self.sideways_threshold}"
            )
        if not 0 < self.min_profit_percent < 1:
            raise ConfigurationError(
                f"min_profit_percent must be in (0, 1), got {self.min_profit_percent}"
            )

    @classmethod
    def from_validated_params(cls, params: "TradingConfig.ParamSchema") -> "TradingConfig":
        """Create instance from Pydantic-validated params."""
        data = params.model_dump()
        data["symbol"] = data["symbol"].upper()
        data["quote_asset"] = data["quote_asset"].upper()
        return cls(**data)

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "TradingConfig":
        """Validate raw (string) values and build the config."""
        try:
            params = cls.ParamSchema(**raw)
        except PydanticValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid trading configuration: {problems}") from e
        return cls.from_validated_params(params)

    @property
    def interval(self) -> str:
        """Binance kline interval for period_minutes."""
        return PERIOD_INTERVALS[self.period_minutes]

    @property
    def candle_limit(self) -> int:
        """Number of candles fetched per analysis cycle."""
        return self.analysis_periods + self.candle_margin


@dataclass
class MonitoringConfig:
    """Scheduler timing"""
    interval_minutes: float = 5.0
    error_backoff_minutes: float = 1.0

    def __post_init__(self):
        if self.interval_minutes <= 0:
            raise ConfigurationError(
                f"interval_minutes must be > 0, got {self.interval_minutes}"
            )
        if self.error_backoff_minutes <= 0:
            raise ConfigurationError(
                f"error_backoff_minutes must be > 0, got {self.error_backoff_minutes}"
            )

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def error_backoff_seconds(self) -> float:
        return self.error_backoff_minutes * 60


@dataclass
class PaperConfig:
    """Paper-trading simulator settings"""
    enabled: bool = True
    initial_balance: float = 10000.0
    fee_rate: float = 0.0004
    slippage_bps: float = 1.0
    step_size: float = 0.001
    db_path: str = "data/paper_ledger.db"

    def __post_init__(self):
        if self.initial_balance < 0:
            raise ConfigurationError(
                f"initial_balance cannot be negative, got {self.initial_balance}"
            )
        if self.step_size <= 0:
            raise ConfigurationError(f"step_size must be > 0, got {self.step_size}")
        if not 0 <= self.fee_rate < 1:
            raise ConfigurationError(f"fee_rate must be in [0, 1), got {self.fee_rate}")


@dataclass
class NotificationConfig:
    """Outbound notification settings"""
    telegram_enabled: bool = False
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    min_priority: str = "NORMAL"

    def __post_init__(self):
        valid = ["LOW", "NORMAL", "HIGH", "CRITICAL"]
        if self.min_priority.upper() not in valid:
            raise ConfigurationError(
                f"Invalid min_priority: {self.min_priority}. Must be one of {valid}"
            )
        if self.telegram_enabled and not (self.telegram_token and self.telegram_chat_id):
            raise ConfigurationError(
                "Telegram notifications enabled but TELEGRAM_BOT_TOKEN / "
                "TELEGRAM_CHAT_ID are not set"
            )


@dataclass
class LoggingConfig:
    """Logging system configuration"""
    log_level: str = "INFO"
    log_dir: str = "logs"

    def __post_init__(self):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ConfigurationError(
                f"Invalid log level: {self.log_level}. "
                f"Must be one of {valid_levels}"
            )


class ConfigManager:
    """
    Manages system configuration from INI files with environment overrides
    """

    def __init__(self, config_dir: str = "configs", paper_override: Optional[bool] = None):
        self.config_dir = Path(config_dir)
        self._paper_override = paper_override
        self._parser = self._read_trading_ini()

        self._trading_config = self._load_trading_config()
        self._monitoring_config = self._load_monitoring_config()
        self._paper_config = self._load_paper_config()
        self._notification_config = self._load_notification_config()
        self._logging_config = self._load_logging_config()
        # Credentials are only needed for live trading
        self._api_config = None if self._paper_config.enabled else self._load_api_config()

    def _read_trading_ini(self) -> ConfigParser:
        config_file = self.config_dir / "trading_config.ini"
        if not config_file.exists():
            raise ConfigurationError(
                f"Trading configuration not found: {config_file}"
            )

        config = ConfigParser()
        config.read(config_file)

        if "trading" not in config:
            raise ConfigurationError("Invalid trading_config.ini: [trading] section not found")
        return config

    def _section(self, name: str) -> Optional[SectionProxy]:
        return self._parser[name] if name in self._parser else None

    def _load_api_config(self) -> APIConfig:
        """
        Load API configuration with environment variable overrides
        Automatically selects testnet or mainnet credentials based on use_testnet flag

        Priority: ENV > INI file (environment-specific)
        """
        is_testnet_env = os.getenv("BINANCE_USE_TESTNET")
        api_key_env = os.getenv("BINANCE_API_KEY")
        api_secret_env = os.getenv("BINANCE_API_SECRET")

        if api_key_env and api_secret_env:
            is_testnet = is_testnet_env.lower() == "true" if is_testnet_env else True
            return APIConfig(
                api_key=api_key_env,
                api_secret=api_secret_env,
                is_testnet=is_testnet
            )

        config_file = self.config_dir / "api_keys.ini"
        if not config_file.exists():
            raise ConfigurationError(
                f"API configuration not found. Either:\n"
                f"1. Set BINANCE_API_KEY, BINANCE_API_SECRET environment variables, or\n"
                f"2. Create {config_file} from api_keys.ini.example"
            )

        config = ConfigParser()
        config.read(config_file)

        if "binance" not in config:
            raise ConfigurationError("Invalid api_keys.ini: [binance] section not found")

        is_testnet = config["binance"].getboolean("use_testnet", True)
        if is_testnet_env is not None:
            is_testnet = is_testnet_env.lower() == "true"

        env_section = "binance.testnet" if is_testnet else "binance.mainnet"
        if env_section not in config:
            raise ConfigurationError(
                f"Invalid api_keys.ini: [{env_section}] section not found. "
                f"Please update your config file using api_keys.ini.example as reference."
            )

        api_key = config[env_section].get("api_key")
        api_secret = config[env_section].get("api_secret")

        # Placeholder values from the example file are not credentials
        if not api_key or api_key.startswith("your_"):
            raise ConfigurationError(
                f"Invalid API key in [{env_section}]. Please set your actual credentials."
            )
        if not api_secret or api_secret.startswith("your_"):
            raise ConfigurationError(
                f"Invalid API secret in [{env_section}]. Please set your actual credentials."
            )

        return APIConfig(api_key=api_key, api_secret=api_secret, is_testnet=is_testnet)

    def _load_trading_config(self) -> TradingConfig:
        """Load [trading] through the pydantic schema"""
        raw = dict(self._parser["trading"])
        return TradingConfig.from_mapping(raw)

    def _load_monitoring_config(self) -> MonitoringConfig:
        section = self._section("monitoring")
        if section is None:
            return MonitoringConfig()
        try:
            return MonitoringConfig(
                interval_minutes=section.getfloat("interval_minutes", 5.0),
                error_backoff_minutes=section.getfloat("error_backoff_minutes", 1.0),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid [monitoring] section: {e}") from e

    def _load_paper_config(self) -> PaperConfig:
        section = self._section("paper")
        try:
            paper = PaperConfig() if section is None else PaperConfig(
                enabled=section.getboolean("enabled", True),
                initial_balance=section.getfloat("initial_balance", 10000.0),
                fee_rate=section.getfloat("fee_rate", 0.0004),
                slippage_bps=section.getfloat("slippage_bps", 1.0),
                step_size=section.getfloat("step_size", 0.001),
                db_path=section.get("db_path", "data/paper_ledger.db"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid [paper] section: {e}") from e

        if self._paper_override is not None:
            paper.enabled = self._paper_override
        return paper

    def _load_notification_config(self) -> NotificationConfig:
        section = self._section("notifications")
        enabled = section.getboolean("telegram_enabled", False) if section else False
        min_priority = section.get("min_priority", "NORMAL") if section else "NORMAL"
        return NotificationConfig(
            telegram_enabled=enabled,
            telegram_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("TELEGRAM_CHAT_ID"),
            min_priority=min_priority.upper(),
        )

    def _load_logging_config(self) -> LoggingConfig:
        """Load logging configuration from INI file"""
        section = self._section("logging")
        if section is None:
            return LoggingConfig()  # Use defaults

        return LoggingConfig(
            log_level=section.get("log_level", "INFO"),
            log_dir=section.get("log_dir", "logs")
        )

    @property
    def is_paper(self) -> bool:
        return self._paper_config.enabled

    @property
    def is_testnet(self) -> bool:
        """Check if running in testnet mode"""
        return self._api_config is not None and self._api_config.is_testnet

    @property
    def api_config(self) -> Optional[APIConfig]:
        """Get API configuration (None in paper mode)"""
        return self._api_config

    @property
    def trading_config(self) -> TradingConfig:
        return self._trading_config

    @property
    def monitoring_config(self) -> MonitoringConfig:
        return self._monitoring_config

    @property
    def paper_config(self) -> PaperConfig:
        return self._paper_config

    @property
    def notification_config(self) -> NotificationConfig:
        return self._notification_config

    @property
    def logging_config(self) -> LoggingConfig:
        return self._logging_config
