"""
models.py - Trading Signal Types

Typed representation of the open/close instructions published by the spread
monitor channel. A signal is either an OpenSignal or a CloseSignal; consumers
dispatch on the concrete type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


class Direction(Enum):
    """Position direction."""
    LONG = "LONG"
    SHORT = "SHORT"

    @classmethod
    def parse(cls, value: Any) -> Optional["Direction"]:
        """Decode a direction case-insensitively, None if not LONG/SHORT."""
        if isinstance(value, Direction):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls[value.strip().upper()]
        except KeyError:
            return None

    @property
    def order_side(self) -> str:
        """Order side that opens exposure in this direction."""
        return "buy" if self is Direction.LONG else "sell"

    @property
    def close_side(self) -> str:
        """Order side that reduces exposure in this direction."""
        return "sell" if self is Direction.LONG else "buy"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1

    def __str__(self):
        return self.value


class SignalKind(Enum):
    """Signal types."""
    OPEN = "OPEN"
    CLOSE = "CLOSE"

    def __str__(self):
        return self.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OpenSignal:
    """
    Instruction to open a position.

    Attributes:
        symbol: Exchange instrument id, upper-cased (e.g. BTCUSDT)
        direction: LONG or SHORT
        last_price: Last traded price reported by the monitor
        index_price: Index price reported by the monitor
        spread_percent: Spread between last and index price, in percent
        observed_at: Signal time (arrival time if the message carried none)
    """
    symbol: str
    direction: Direction
    last_price: Optional[float] = None
    index_price: Optional[float] = None
    spread_percent: Optional[float] = None
    observed_at: datetime = field(default_factory=_utcnow)

    @property
    def kind(self) -> SignalKind:
        return SignalKind.OPEN

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'last_price': self.last_price,
            'index_price': self.index_price,
            'spread_percent': self.spread_percent,
            'observed_at': self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class CloseSignal:
    """Instruction to close the position opened for the same symbol/direction."""
    symbol: str
    direction: Direction
    last_price: Optional[float] = None
    index_price: Optional[float] = None
    spread_percent: Optional[float] = None
    observed_at: datetime = field(default_factory=_utcnow)

    @property
    def kind(self) -> SignalKind:
        return SignalKind.CLOSE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'last_price': self.last_price,
            'index_price': self.index_price,
            'spread_percent': self.spread_percent,
            'observed_at': self.observed_at.isoformat(),
        }


Signal = Union[OpenSignal, CloseSignal]
