"""
parser.py - Spread Monitor Message Parser

Turns channel message text into typed signals. Two message shapes are
recognized, identified by their marker line:

    📊 SPREAD SIGNAL            ✅ SPREAD CLOSED
    SYMBOL: BTCUSDT             SYMBOL: BTCUSDT
    DIRECTION: LONG             DIRECTION: LONG
    LAST_PRICE: 65000.00        LAST_PRICE: 65000.00
    INDEX_PRICE: 64900.00       INDEX_PRICE: 65010.00
    SPREAD: 0.75%               SPREAD: 0.45%
    TIME: 2024-01-01T12:00Z     TIME: 2024-01-01T12:30Z

Only SYMBOL and DIRECTION are required. Text that is not a signal yields
None; it is not an error.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from signals.models import CloseSignal, Direction, OpenSignal, Signal, SignalKind

logger = logging.getLogger(__name__)


OPEN_MARKER = "SPREAD SIGNAL"
CLOSE_MARKER = "SPREAD CLOSED"

_SYMBOL_RE = re.compile(r"SYMBOL:[ \t]*([A-Za-z0-9_\-/.]+)", re.IGNORECASE)
_DIRECTION_RE = re.compile(r"DIRECTION:[ \t]*(LONG|SHORT)\b", re.IGNORECASE)
_LAST_PRICE_RE = re.compile(r"LAST_PRICE:[ \t]*([-+]?\d+(?:\.\d+)?)", re.IGNORECASE)
_INDEX_PRICE_RE = re.compile(r"INDEX_PRICE:[ \t]*([-+]?\d+(?:\.\d+)?)", re.IGNORECASE)
# word boundary keeps "SPREAD SIGNAL" / "SPREAD CLOSED" headers out of the match
_SPREAD_RE = re.compile(r"\bSPREAD:[ \t]*([-+]?\d+(?:\.\d+)?)", re.IGNORECASE)
_TIME_RE = re.compile(r"TIME:[ \t]*(\S+)", re.IGNORECASE)


# Reasons a text did not produce a signal
REASON_EMPTY = "empty"
REASON_NOT_A_SIGNAL = "not_a_signal"
REASON_AMBIGUOUS = "ambiguous"
REASON_MISSING_SYMBOL = "missing_symbol"
REASON_MISSING_DIRECTION = "missing_direction"


@dataclass(frozen=True)
class ParseResult:
    """Outcome of parsing one message: a signal, or the reason there is none."""
    signal: Optional[Signal] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.signal is not None


def is_signal_message(text: Optional[str]) -> bool:
    """Return True if the text carries one of the signal markers."""
    if not text:
        return False
    return OPEN_MARKER in text or CLOSE_MARKER in text


def _parse_float(match: Optional[re.Match]) -> Optional[float]:
    if not match:
        return None
    try:
        return float(match.group(1))
    except (TypeError, ValueError):
        return None


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp or an epoch value (seconds or milliseconds).

    Returns an aware UTC datetime, or None if the value cannot be parsed.
    """
    if not raw:
        return None
    value = raw.strip()
    try:
        if re.fullmatch(r"\d{9,13}", value):
            epoch = int(value)
            if epoch > 10 ** 11:
                epoch = epoch / 1000.0
            return datetime.fromtimestamp(epoch, tz=timezone.utc)
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        parsed = datetime.fromisoformat(value)
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_signal_detailed(text: Optional[str], now: Optional[datetime] = None) -> ParseResult:
    """
    Parse message text into a signal.

    Args:
        text: Raw message text (or caption)
        now: Arrival time used when the message has no parseable TIME field

    Returns:
        ParseResult with either `signal` set or `reason` explaining why not
    """
    if not text or not text.strip():
        return ParseResult(reason=REASON_EMPTY)

    has_open = OPEN_MARKER in text
    has_close = CLOSE_MARKER in text
    if not has_open and not has_close:
        return ParseResult(reason=REASON_NOT_A_SIGNAL)
    if has_open and has_close:
        logger.warning("[PARSER] Message carries both open and close markers, ignoring")
        return ParseResult(reason=REASON_AMBIGUOUS)

    kind = SignalKind.OPEN if has_open else SignalKind.CLOSE

    symbol_match = _SYMBOL_RE.search(text)
    if not symbol_match:
        logger.warning(f"[PARSER] {kind} signal: missing required field SYMBOL")
        return ParseResult(reason=REASON_MISSING_SYMBOL)

    direction_match = _DIRECTION_RE.search(text)
    direction = Direction.parse(direction_match.group(1)) if direction_match else None
    if direction is None:
        logger.warning(f"[PARSER] {kind} signal: missing required field DIRECTION")
        return ParseResult(reason=REASON_MISSING_DIRECTION)

    time_match = _TIME_RE.search(text)
    observed_at = parse_timestamp(time_match.group(1) if time_match else None)
    if observed_at is None:
        observed_at = now or datetime.now(timezone.utc)

    fields = dict(
        symbol=symbol_match.group(1).upper(),
        direction=direction,
        last_price=_parse_float(_LAST_PRICE_RE.search(text)),
        index_price=_parse_float(_INDEX_PRICE_RE.search(text)),
        spread_percent=_parse_float(_SPREAD_RE.search(text)),
        observed_at=observed_at,
    )
    signal: Signal = OpenSignal(**fields) if kind is SignalKind.OPEN else CloseSignal(**fields)

    logger.info(
        f"[PARSER] Parsed {kind} signal: {signal.symbol} {signal.direction} "
        f"spread={signal.spread_percent}%"
    )
    return ParseResult(signal=signal)


def parse_signal(text: Optional[str], now: Optional[datetime] = None) -> Optional[Signal]:
    """Parse message text, returning None if it is not a complete signal."""
    return parse_signal_detailed(text, now=now).signal


def format_signal(signal: Signal) -> str:
    """Render a signal in the channel's message format."""
    header = f"📊 {OPEN_MARKER}" if signal.kind is SignalKind.OPEN else f"✅ {CLOSE_MARKER}"
    lines = [
        header,
        f"SYMBOL: {signal.symbol}",
        f"DIRECTION: {signal.direction.value}",
    ]
    if signal.last_price is not None:
        lines.append(f"LAST_PRICE: {signal.last_price}")
    if signal.index_price is not None:
        lines.append(f"INDEX_PRICE: {signal.index_price}")
    if signal.spread_percent is not None:
        lines.append(f"SPREAD: {signal.spread_percent}%")
    lines.append(f"TIME: {signal.observed_at.isoformat()}")
    return "\n".join(lines)
