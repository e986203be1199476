"""
trading_hours.py - UTC Trading Window

A window is [start_hour, end_hour) in UTC. A start after the end wraps past
midnight (22 -> 6 is open overnight); equal hours mean the window never
closes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def format_duration(delta: timedelta) -> str:
    """Render a duration as 'Xh Ym' (or 'Ym' below one hour)."""
    total_minutes = max(0, int(delta.total_seconds() // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


@dataclass(frozen=True)
class TradingHours:
    start_hour: int = 0
    end_hour: int = 24

    def __post_init__(self):
        if not 0 <= self.start_hour <= 23:
            raise ValueError(f"start_hour must be within 0-23, got {self.start_hour}")
        if not 0 <= self.end_hour <= 24:
            raise ValueError(f"end_hour must be within 0-24, got {self.end_hour}")

    @property
    def always_open(self) -> bool:
        return self.start_hour % 24 == self.end_hour % 24

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Return True if `now` (UTC) falls inside the window."""
        now = now or datetime.now(timezone.utc)
        if self.always_open:
            return True
        hour = now.astimezone(timezone.utc).hour
        end = self.end_hour % 24
        if self.start_hour < end:
            return self.start_hour <= hour < end
        return hour >= self.start_hour or hour < end

    def time_until_open(self, now: Optional[datetime] = None) -> timedelta:
        """Time until the window next opens; zero while it is open."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        if self.is_active(now):
            return timedelta(0)
        next_open = now.replace(hour=self.start_hour, minute=0, second=0, microsecond=0)
        if next_open <= now:
            next_open += timedelta(days=1)
        return next_open - now

    def describe(self) -> str:
        return f"{self.start_hour}:00-{self.end_hour}:00"

    def info(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Operator-facing details for an out-of-hours rejection."""
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        return {
            'current_time': f"{now.hour}:{now.minute:02d}",
            'trading_hours': self.describe(),
            'next_trading': format_duration(self.time_until_open(now)),
        }
