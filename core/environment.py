"""
environment.py - Environment and Credentials Loading

Loads the .env file (python-dotenv) and maps the bot's environment variables
onto configuration overrides. Secrets (exchange keys, bot token) are only
ever read from the environment, never from the YAML config.
"""

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: str) -> bool:
    """Parse a boolean environment value; raises ValueError if unrecognised."""
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def parse_symbol_list(value: str) -> list:
    return [s.strip().upper() for s in value.split(",") if s.strip()]


# env var -> (config section, key, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "BYBIT_API_KEY": ("exchange", "api_key", str),
    "BYBIT_API_SECRET": ("exchange", "api_secret", str),
    "BYBIT_TESTNET": ("exchange", "testnet", parse_bool),
    "BYBIT_POSITION_MODE": ("exchange", "position_mode", lambda v: v.strip().upper()),
    "TELEGRAM_BOT_TOKEN": ("telegram", "bot_token", str),
    "TELEGRAM_CHANNEL_ID": ("telegram", "channel_id", str),
    "DRY_RUN": ("trading", "dry_run", parse_bool),
    "ALLOWED_SYMBOLS": ("trading", "allowed_symbols", parse_symbol_list),
    "MAX_OPEN_POSITIONS": ("trading", "max_open_positions", int),
    "MAX_DAILY_TRADES": ("trading", "max_daily_trades", int),
    "POSITION_SIZE_PERCENT": ("risk", "position_size_percent", float),
    "LEVERAGE": ("risk", "leverage", float),
    "TRADING_START_HOUR": ("trading_hours", "start_hour", int),
    "TRADING_END_HOUR": ("trading_hours", "end_hour", int),
    "LOG_LEVEL": ("monitoring", "log_level", lambda v: v.strip().upper()),
}

SECRET_KEYS = frozenset({"api_key", "api_secret", "bot_token"})


def load_env_file(env_file: Optional[str] = ".env") -> bool:
    """
    Load variables from a .env file into the process environment.

    Existing environment variables win over the file.

    Returns:
        True if the file existed and was loaded
    """
    if not env_file or not Path(env_file).exists():
        logger.info(f"[CONFIG] No environment file at {env_file}, using process environment")
        return False
    load_dotenv(env_file, override=False)
    logger.info(f"[CONFIG] Loaded environment variables from {env_file}")
    return True


def read_env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Collect configuration overrides from environment variables.

    Empty values are ignored. A value that cannot be parsed raises ValueError
    naming the variable.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Dict[str, Any]] = {}
    for var, (section, key, parser) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        try:
            value = parser(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {var}: {exc}") from exc
        overrides.setdefault(section, {})[key] = value
        shown = "***" if key in SECRET_KEYS else value
        logger.debug(f"[CONFIG] {var} -> {section}.{key} = {shown}")
    return overrides
