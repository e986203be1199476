"""
Logging setup and trade journal for the signal bot.

Responsibilities:
- Configure process logging once at startup (console and optional rotating file).
- Keep a structured journal of lifecycle events (signals, trades, errors) with
  secrets scrubbed, plus an in-memory tail of recent entries for the status API.

Usage:
    from monitoring.logger import configure_logging, log_event, log_trade

    configure_logging(level="INFO", log_file="logs/bot.log")
    log_event("signal.received", {"symbol": "BTCUSDT", "direction": "LONG"})
    log_trade({"event": "position_opened", "symbol": "BTCUSDT", "quantity": 0.002})
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import threading
import time
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_DEFAULT_SENSITIVE_KEYS = frozenset({"api_key", "api_secret", "secret", "password", "token", "bot_token"})

_DEFAULT_RECENT_CACHE_SIZE = 200

# Chatty third-party loggers kept at WARNING unless running at DEBUG
_NOISY_LOGGERS = ("ccxt", "aiohttp", "asyncio", "urllib3", "uvicorn.access")


def _as_kv_str(event: str, payload: Optional[Dict[str, Any]]) -> str:
    if not payload:
        return event
    try:
        return f"{event} {json.dumps(payload, separators=(',', ':'), default=str)}"
    except (TypeError, ValueError):
        return f"{event} {payload}"


def scrub_secrets(payload: Optional[Dict[str, Any]], sensitive_keys: Optional[Iterable[str]] = None) -> Optional[Dict[str, Any]]:
    """
    Return a shallow copy of payload with sensitive fields redacted.

    Args:
        payload: structured payload dictionary (may be None)
        sensitive_keys: optional iterable of keys to redact (case-insensitive)
    """
    if payload is None:
        return None
    keys = set(k.lower() for k in (sensitive_keys or _DEFAULT_SENSITIVE_KEYS))
    return {k: ("<REDACTED>" if k.lower() in keys else v) for k, v in payload.items()}


def _normalize_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def configure_logging(
    level: str | int = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console: bool = True,
) -> None:
    """
    Configure root logging handlers. Safe to call again; old handlers are replaced.

    Args:
        level: logging level name or int
        log_file: optional path to rotating log file
        max_bytes: rotation size in bytes
        backup_count: number of rotated files to keep
        console: enable console handler
    """
    lvl = _normalize_level(level)
    root = logging.getLogger()
    root.setLevel(lvl)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(formatter)
        root.addHandler(ch)
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        fh.setFormatter(formatter)
        root.addHandler(fh)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(lvl if lvl <= logging.DEBUG else logging.WARNING)

    _journal.set_level(lvl)
    logging.getLogger(__name__).debug(f"[LOG] Logging configured: level={logging.getLevelName(lvl)} file={log_file}")


class TradeJournal:
    """
    Structured journal of lifecycle events.

    Entries go to the `signalbot.journal` logger (which propagates to the
    root handlers) and into a bounded in-memory deque, newest first.
    """

    def __init__(self, name: str = "signalbot.journal", max_recent: int = _DEFAULT_RECENT_CACHE_SIZE):
        self._lock = threading.RLock()
        self._logger = logging.getLogger(name)
        self._recent: deque = deque(maxlen=max_recent)

    def set_level(self, level: int) -> None:
        self._logger.setLevel(level)

    def _record_recent(self, kind: str, event: str, payload: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            self._recent.appendleft({"ts": int(time.time()), "kind": kind, "event": event, "payload": payload})

    def get_recent(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            entries = list(self._recent)
        return entries if limit is None else entries[:limit]

    def clear(self) -> None:
        with self._lock:
            self._recent.clear()

    def log_event(self, event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
        payload_safe = scrub_secrets(payload)
        self._logger.log(_normalize_level(level), _as_kv_str(event, payload_safe))
        self._record_recent("event", event, payload_safe)

    def log_trade(self, trade: Dict[str, Any]) -> None:
        trade_safe = scrub_secrets(trade)
        self._logger.info(_as_kv_str("trade", trade_safe))
        self._record_recent("trade", str(trade_safe.get("event", "trade")), trade_safe)

    def log_error(self, event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None, exc_info: Any = None) -> None:
        payload_safe = scrub_secrets(payload)
        full_msg = f"{event} {message or ''}".strip()
        self._logger.error(_as_kv_str(full_msg, payload_safe), exc_info=exc_info)
        self._record_recent("error", event, {"message": message, "payload": payload_safe})


_journal = TradeJournal()


def get_journal() -> TradeJournal:
    return _journal


def log_event(event: str, payload: Optional[Dict[str, Any]] = None, level: str | int = "INFO") -> None:
    _journal.log_event(event, payload, level)


def log_trade(trade: Dict[str, Any]) -> None:
    _journal.log_trade(trade)


def log_error(event: str, message: Optional[str] = None, payload: Optional[Dict[str, Any]] = None, exc_info: Any = None) -> None:
    _journal.log_error(event, message, payload, exc_info)
