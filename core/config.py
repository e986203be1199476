"""
config.py - Bot Configuration

Built-in defaults, deep-merged with config.yaml (next to this module), then with environment
overrides (see core.environment), then with command line overrides.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from core.environment import read_env_overrides

logger = logging.getLogger(__name__)


DEFAULT_CONFIG_PATH = str(Path(__file__).resolve().parent / "config.yaml")

_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'trading': {
        'dry_run': True,
        'allowed_symbols': [],
        'max_open_positions': 3,
        'max_daily_trades': 10,
        'signal_queue_size': 100,
    },
    'risk': {
        'position_size_percent': 10.0,
        'leverage': 5.0,
    },
    'trading_hours': {
        'start_hour': 0,
        'end_hour': 24,
    },
    'exchange': {
        'api_key': None,
        'api_secret': None,
        'testnet': True,
        'position_mode': 'ONE_WAY',
        'timeout': 10.0,
        'max_attempts': 3,
    },
    'telegram': {
        'bot_token': None,
        'channel_id': '',
        'poll_timeout': 30,
    },
    'monitoring': {
        'log_level': 'INFO',
        'log_file': 'logs/signal_bot.log',
        'reconcile_interval_seconds': 30.0,
        'close_confirm_timeout_seconds': 120.0,
        'daily_report_hour_utc': 23,
    },
    'api': {
        'enabled': False,
        'host': '127.0.0.1',
        'port': 8000,
    },
}


def default_config() -> Dict[str, Dict[str, Any]]:
    return copy.deepcopy(_DEFAULTS)


def deep_merge(base: Dict[str, Any], override: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return base updated recursively with override; neither input is modified."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class TradingSettings:
    dry_run: bool = True
    allowed_symbols: List[str] = field(default_factory=list)
    max_open_positions: int = 3
    max_daily_trades: int = 10
    signal_queue_size: int = 100


@dataclass
class RiskSettings:
    position_size_percent: float = 10.0
    leverage: float = 5.0


@dataclass
class TradingHoursSettings:
    start_hour: int = 0
    end_hour: int = 24


@dataclass
class ExchangeSettings:
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)
    testnet: bool = True
    position_mode: str = 'ONE_WAY'
    timeout: float = 10.0
    max_attempts: int = 3

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass
class TelegramSettings:
    bot_token: Optional[str] = field(default=None, repr=False)
    channel_id: str = ''
    poll_timeout: int = 30

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.channel_id)


@dataclass
class MonitoringSettings:
    log_level: str = 'INFO'
    log_file: Optional[str] = 'logs/signal_bot.log'
    reconcile_interval_seconds: float = 30.0
    close_confirm_timeout_seconds: float = 120.0
    daily_report_hour_utc: int = 23


@dataclass
class ApiSettings:
    enabled: bool = False
    host: str = '127.0.0.1'
    port: int = 8000


def _build(cls, section: str, values: Mapping[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"[CONFIG] Ignoring unknown keys in '{section}': {sorted(unknown)}")
    return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class BotConfig:
    """Complete, validated bot configuration."""
    trading: TradingSettings = field(default_factory=TradingSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    trading_hours: TradingHoursSettings = field(default_factory=TradingHoursSettings)
    exchange: ExchangeSettings = field(default_factory=ExchangeSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BotConfig":
        merged = deep_merge(default_config(), data)
        config = cls(
            trading=_build(TradingSettings, 'trading', merged['trading']),
            risk=_build(RiskSettings, 'risk', merged['risk']),
            trading_hours=_build(TradingHoursSettings, 'trading_hours', merged['trading_hours']),
            exchange=_build(ExchangeSettings, 'exchange', merged['exchange']),
            telegram=_build(TelegramSettings, 'telegram', merged['telegram']),
            monitoring=_build(MonitoringSettings, 'monitoring', merged['monitoring']),
            api=_build(ApiSettings, 'api', merged['api']),
        )
        config.trading.allowed_symbols = [str(s).strip().upper() for s in config.trading.allowed_symbols or []]
        config.exchange.position_mode = str(config.exchange.position_mode).upper()
        config.telegram.channel_id = str(config.telegram.channel_id or '')
        return config

    def validate(self) -> None:
        """Raise ValueError describing every out-of-range setting."""
        errors = []
        if not 0 < self.risk.position_size_percent <= 100:
            errors.append(f"risk.position_size_percent must be in (0, 100], got {self.risk.position_size_percent}")
        if self.risk.leverage < 1:
            errors.append(f"risk.leverage must be >= 1, got {self.risk.leverage}")
        if self.trading.max_open_positions < 1:
            errors.append(f"trading.max_open_positions must be >= 1, got {self.trading.max_open_positions}")
        if self.trading.max_daily_trades < 1:
            errors.append(f"trading.max_daily_trades must be >= 1, got {self.trading.max_daily_trades}")
        if self.trading.signal_queue_size < 1:
            errors.append(f"trading.signal_queue_size must be >= 1, got {self.trading.signal_queue_size}")
        if not 0 <= self.trading_hours.start_hour <= 23:
            errors.append(f"trading_hours.start_hour must be within 0-23, got {self.trading_hours.start_hour}")
        if not 0 <= self.trading_hours.end_hour <= 24:
            errors.append(f"trading_hours.end_hour must be within 0-24, got {self.trading_hours.end_hour}")
        if self.exchange.position_mode not in ('ONE_WAY', 'HEDGE'):
            errors.append(f"exchange.position_mode must be ONE_WAY or HEDGE, got {self.exchange.position_mode}")
        if self.exchange.timeout <= 0:
            errors.append(f"exchange.timeout must be positive, got {self.exchange.timeout}")
        if self.monitoring.reconcile_interval_seconds <= 0:
            errors.append(
                f"monitoring.reconcile_interval_seconds must be positive, "
                f"got {self.monitoring.reconcile_interval_seconds}"
            )
        if self.monitoring.close_confirm_timeout_seconds <= 0:
            errors.append(
                f"monitoring.close_confirm_timeout_seconds must be positive, "
                f"got {self.monitoring.close_confirm_timeout_seconds}"
            )
        if not 0 <= self.monitoring.daily_report_hour_utc <= 23:
            errors.append(
                f"monitoring.daily_report_hour_utc must be within 0-23, got {self.monitoring.daily_report_hour_utc}"
            )
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the configuration without secrets."""
        return {
            'dry_run': self.trading.dry_run,
            'allowed_symbols': self.trading.allowed_symbols or 'ALL',
            'position_size_percent': self.risk.position_size_percent,
            'leverage': self.risk.leverage,
            'max_open_positions': self.trading.max_open_positions,
            'max_daily_trades': self.trading.max_daily_trades,
            'trading_hours': f"{self.trading_hours.start_hour}:00-{self.trading_hours.end_hour}:00 UTC",
            'testnet': self.exchange.testnet,
            'position_mode': self.exchange.position_mode,
            'channel_id': self.telegram.channel_id,
        }


def load_config(
    path: Optional[str] = DEFAULT_CONFIG_PATH,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> BotConfig:
    """
    Build the bot configuration.

    Raises:
        ValueError: unreadable YAML, bad environment value, or invalid settings
    """
    data = default_config()
    config_file = Path(path) if path else None
    if config_file is None or not config_file.exists():
        logger.warning(f"[CONFIG] Config file {path} not found, using defaults")
    else:
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid configuration file {path}: {exc}") from exc
        if not isinstance(loaded, Mapping):
            raise ValueError(f"Invalid configuration file {path}: top level must be a mapping")
        data = deep_merge(data, loaded)
        logger.info(f"[CONFIG] Configuration loaded from {path}")

    data = deep_merge(data, read_env_overrides(environ))
    data = deep_merge(data, overrides)

    config = BotConfig.from_dict(data)
    config.validate()
    return config
