"""
state.py - Running Statistics

Process-wide trading counters with a daily rollover. One instance is created
at startup and handed to the orchestrator and the position tracker; every
mutation goes through a lock-guarded method.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class StatisticsSnapshot:
    """Immutable copy of the counters at one instant."""
    total_signals: int
    signals_ignored: int
    daily_trades: int
    total_trades: int
    win_trades: int
    lose_trades: int
    total_profit: float
    start_balance: float
    current_balance: float
    last_reset_date: date

    @property
    def win_rate(self) -> float:
        """Wins as a percentage of closed trades."""
        closed = self.win_trades + self.lose_trades
        return (self.win_trades / closed) * 100 if closed else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['last_reset_date'] = self.last_reset_date.isoformat()
        data['win_rate'] = self.win_rate
        return data


class RunningStatistics:
    """
    Thread-safe counters for signals, trades and balance.

    Signal and daily counters are owned by the orchestrator; trade results
    (wins, losses, realized profit) are recorded by the position tracker.
    """

    def __init__(self, start_balance: float = 0.0, today: Optional[date] = None):
        self._lock = Lock()
        self._total_signals = 0
        self._signals_ignored = 0
        self._daily_trades = 0
        self._total_trades = 0
        self._win_trades = 0
        self._lose_trades = 0
        self._total_profit = 0.0
        self._start_balance = float(start_balance)
        self._current_balance = float(start_balance)
        self._last_reset_date = today or utc_today()

    # Balance

    def set_start_balance(self, balance: float) -> None:
        with self._lock:
            self._start_balance = float(balance)
            self._current_balance = float(balance)

    def update_balance(self, balance: float) -> None:
        with self._lock:
            self._current_balance = float(balance)

    @property
    def start_balance(self) -> float:
        with self._lock:
            return self._start_balance

    @property
    def current_balance(self) -> float:
        with self._lock:
            return self._current_balance

    # Signals

    def record_signal(self) -> None:
        with self._lock:
            self._total_signals += 1

    def record_signal_ignored(self) -> None:
        with self._lock:
            self._signals_ignored += 1

    @property
    def daily_trades(self) -> int:
        with self._lock:
            return self._daily_trades

    # Trades

    def record_trade_opened(self) -> None:
        with self._lock:
            self._total_trades += 1
            self._daily_trades += 1

    def record_trade_result(self, pnl: float) -> bool:
        """Register a closed trade. Returns True if it counted as a win (pnl >= 0)."""
        with self._lock:
            won = pnl >= 0
            if won:
                self._win_trades += 1
            else:
                self._lose_trades += 1
            self._total_profit += pnl
            return won

    # Daily rollover

    def rollover_if_new_day(self, today: Optional[date] = None) -> bool:
        """
        Clear daily counters if the UTC date has advanced past the last reset.

        Returns True if a rollover happened; position-derived counters are
        then reset by the caller through the tracker.
        """
        today = today or utc_today()
        with self._lock:
            if today <= self._last_reset_date:
                return False
            self._daily_trades = 0
            self._signals_ignored = 0
            self._last_reset_date = today
            return True

    def reset_trade_counters(self) -> None:
        with self._lock:
            self._total_trades = 0
            self._win_trades = 0
            self._lose_trades = 0
            self._total_profit = 0.0

    def snapshot(self) -> StatisticsSnapshot:
        with self._lock:
            return StatisticsSnapshot(
                total_signals=self._total_signals,
                signals_ignored=self._signals_ignored,
                daily_trades=self._daily_trades,
                total_trades=self._total_trades,
                win_trades=self._win_trades,
                lose_trades=self._lose_trades,
                total_profit=self._total_profit,
                start_balance=self._start_balance,
                current_balance=self._current_balance,
                last_reset_date=self._last_reset_date,
            )

    def __repr__(self) -> str:
        s = self.snapshot()
        return (f"RunningStatistics(signals={s.total_signals}, trades={s.total_trades}, "
                f"daily={s.daily_trades}, wins={s.win_trades}, losses={s.lose_trades})")
