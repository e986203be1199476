"""
validator.py - Open Signal Gate

Checks an open signal against the trading rules, in a fixed order; the first
failing rule decides the outcome. Close signals are not validated here: the
orchestrator only checks that a matching position is tracked.

Rules:
    1. symbol         - symbol is on the allow-list (an empty list allows all)
    2. direction      - direction is LONG or SHORT
    3. trading_hours  - current time is inside the UTC trading window
    4. position_exists- no position is already tracked for the symbol
    5. max_positions  - open positions are below the configured maximum
    6. max_daily_trades - today's trades are below the daily cap
    7. balance        - the balance query succeeds and balance is positive
    8. instrument     - the instrument exists and is trading
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from core.state import RunningStatistics
from data.exchange import InstrumentInfo
from signals.models import Direction, Signal
from signals.trading_hours import TradingHours

logger = logging.getLogger(__name__)


RULE_SYMBOL = "symbol"
RULE_DIRECTION = "direction"
RULE_TRADING_HOURS = "trading_hours"
RULE_POSITION_EXISTS = "position_exists"
RULE_MAX_POSITIONS = "max_positions"
RULE_MAX_DAILY_TRADES = "max_daily_trades"
RULE_BALANCE = "balance"
RULE_INSTRUMENT = "instrument"


@dataclass
class ValidationResult:
    """
    Outcome of validating an open signal.

    On success `balance` and `instrument` hold the values fetched by the
    last two rules so the caller does not query them again.
    """
    valid: bool
    reason: Optional[str] = None
    info: Dict[str, Any] = field(default_factory=dict)
    rule: Optional[str] = None
    balance: Optional[float] = None
    instrument: Optional[InstrumentInfo] = None

    @classmethod
    def reject(cls, rule: str, reason: str, info: Optional[Dict[str, Any]] = None) -> "ValidationResult":
        return cls(valid=False, reason=reason, info=info or {}, rule=rule)

    @property
    def is_trading_hours_rejection(self) -> bool:
        return not self.valid and self.rule == RULE_TRADING_HOURS


class SignalValidator:
    """Applies the open-signal rules against live tracker and exchange state."""

    def __init__(
        self,
        allowed_symbols: Iterable[str],
        trading_hours: TradingHours,
        max_open_positions: int,
        max_daily_trades: int,
        tracker,
        gateway,
        statistics: RunningStatistics,
    ):
        self.allowed_symbols = frozenset(s.strip().upper() for s in allowed_symbols if s and s.strip())
        self.trading_hours = trading_hours
        self.max_open_positions = max_open_positions
        self.max_daily_trades = max_daily_trades
        self.tracker = tracker
        self.gateway = gateway
        self.statistics = statistics

    def is_symbol_allowed(self, symbol: str) -> bool:
        return not self.allowed_symbols or symbol.upper() in self.allowed_symbols

    async def validate(self, signal: Signal, now: Optional[datetime] = None) -> ValidationResult:
        symbol = signal.symbol

        if not self.is_symbol_allowed(symbol):
            return ValidationResult.reject(RULE_SYMBOL, f"Symbol {symbol} not in allowed list")

        if Direction.parse(signal.direction) is None:
            return ValidationResult.reject(RULE_DIRECTION, f"Invalid direction: {signal.direction}")

        if not self.trading_hours.is_active(now):
            return ValidationResult.reject(
                RULE_TRADING_HOURS, "Outside trading hours", self.trading_hours.info(now)
            )

        if self.tracker.has_open_position(symbol):
            return ValidationResult.reject(RULE_POSITION_EXISTS, f"Open position already exists for {symbol}")

        if self.tracker.get_open_positions_count() >= self.max_open_positions:
            return ValidationResult.reject(
                RULE_MAX_POSITIONS, f"Maximum open positions ({self.max_open_positions}) reached"
            )

        if self.statistics.daily_trades >= self.max_daily_trades:
            return ValidationResult.reject(
                RULE_MAX_DAILY_TRADES, f"Maximum daily trades ({self.max_daily_trades}) reached"
            )

        try:
            balance = await self.gateway.get_balance()
        except Exception as exc:
            logger.warning(f"[VALIDATOR] Balance check failed for {symbol}: {exc}")
            return ValidationResult.reject(RULE_BALANCE, f"Error checking balance: {exc}")
        self.statistics.update_balance(balance)
        if balance <= 0:
            return ValidationResult.reject(RULE_BALANCE, "Insufficient balance", {'balance': balance})

        try:
            instrument = await self.gateway.get_instrument(symbol)
        except Exception as exc:
            logger.warning(f"[VALIDATOR] Instrument lookup failed for {symbol}: {exc}")
            return ValidationResult.reject(RULE_INSTRUMENT, f"Symbol {symbol} not found or error: {exc}")
        if not instrument.is_tradable:
            return ValidationResult.reject(RULE_INSTRUMENT, f"Symbol {symbol} is not trading")

        logger.debug(f"[VALIDATOR] {symbol} {signal.direction} passed all checks")
        return ValidationResult(valid=True, balance=balance, instrument=instrument)
