"""
position_tracker.py - Tracked Positions and Exchange Reconciliation

Holds the engine's belief about which positions are open (at most one per
symbol) and periodically compares it with the positions the exchange reports.
When a tracked position has vanished from the exchange, the exchange wins:
the realized P&L is estimated from the entry price and the latest fill, the
trade result is recorded once, the position is dropped and the operator is
notified.

Per symbol the lifecycle is NoPosition -> Open [-> Closing] -> NoPosition.
Every transition for a symbol runs under that symbol's asyncio.Lock, which
the orchestrator shares, so open/close/reconcile never interleave for the
same symbol.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from core.state import RunningStatistics
from data.exchange import ExchangePosition
from execution.gateway import OrderGateway
from monitoring.logger import log_trade
from monitoring.notifier import Notifier, format_close_unconfirmed, format_position_closed
from signals.models import Direction
from signals.trading_hours import format_duration

logger = logging.getLogger(__name__)


# seconds a submitted close may stay unconfirmed before it is released for resubmission
DEFAULT_CLOSE_CONFIRM_TIMEOUT = 120.0


class InvariantViolation(RuntimeError):
    """A requested transition would break the tracker's invariants."""


@dataclass(frozen=True)
class TrackedPosition:
    """
    The engine's belief about one open position.

    Attributes:
        symbol: Exchange symbol id, unique among tracked positions
        direction: LONG or SHORT
        entry_price: Price the position was sized and opened at
        quantity: Position quantity
        order_id: Exchange order id (DRY_RUN_<ms> for simulated positions)
        opened_at: When the open order was executed
        position_idx: 0 one-way, 1 hedge long, 2 hedge short
        position_size_notional: Nominal position value in USDT
        leverage: Leverage used for the position
        simulated: True for dry-run positions, which never reach the exchange
        registered_at: Tracker clock reading when the position was added
        close_order_id: Reduce-only close order awaiting exchange confirmation
        close_requested_at: When that close order was submitted
    """
    symbol: str
    direction: Direction
    entry_price: float
    quantity: float
    order_id: str
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    position_idx: int = 0
    position_size_notional: Optional[float] = None
    leverage: float = 1.0
    simulated: bool = False
    registered_at: float = 0.0
    close_order_id: Optional[str] = None
    close_requested_at: Optional[datetime] = None

    @property
    def is_closing(self) -> bool:
        return self.close_order_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'order_id': self.order_id,
            'opened_at': self.opened_at.isoformat(),
            'position_idx': self.position_idx,
            'position_size_notional': self.position_size_notional,
            'leverage': self.leverage,
            'simulated': self.simulated,
            'closing': self.is_closing,
            'close_order_id': self.close_order_id,
        }


@dataclass(frozen=True)
class ClosedPosition:
    """Settlement of a tracked position that is no longer open."""
    symbol: str
    direction: Direction
    entry_price: float
    exit_price: float
    quantity: float
    pnl: float
    pnl_percent: float
    won: bool
    duration: str
    closed_on_exchange: bool


def calculate_pnl(direction: Direction, entry_price: float, exit_price: float, quantity: float):
    """Return (pnl in USDT, pnl as percent of entry price move)."""
    pnl = (exit_price - entry_price) * quantity * direction.sign
    pnl_percent = ((exit_price - entry_price) / entry_price) * 100 * direction.sign if entry_price else 0.0
    return pnl, pnl_percent


class PositionTracker:
    """
    Owner of the tracked-position map and the reconciliation loop.

    The map is guarded by a threading lock (no awaits while held); lifecycle
    transitions are serialized per symbol with `symbol_lock(symbol)`.
    """

    def __init__(
        self,
        gateway: OrderGateway,
        statistics: RunningStatistics,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
        close_confirm_timeout: float = DEFAULT_CLOSE_CONFIRM_TIMEOUT,
    ):
        self.gateway = gateway
        self.statistics = statistics
        self.notifier = notifier
        self._clock = clock
        self.close_confirm_timeout = close_confirm_timeout
        self._positions: Dict[str, TrackedPosition] = {}
        self._lock = Lock()
        self._symbol_locks: Dict[str, asyncio.Lock] = {}
        self._monitor_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.ticks = 0
        self.failed_ticks = 0

    # -----------------------
    # Per-symbol serialization
    # -----------------------
    def symbol_lock(self, symbol: str) -> asyncio.Lock:
        with self._lock:
            lock = self._symbol_locks.get(symbol)
            if lock is None:
                lock = asyncio.Lock()
                self._symbol_locks[symbol] = lock
            return lock

    # -----------------------
    # Tracked positions
    # -----------------------
    def has_open_position(self, symbol: str) -> bool:
        with self._lock:
            return symbol in self._positions

    def get_open_position(self, symbol: str) -> Optional[TrackedPosition]:
        with self._lock:
            return self._positions.get(symbol)

    def get_open_positions(self) -> List[TrackedPosition]:
        with self._lock:
            return list(self._positions.values())

    def get_open_positions_count(self) -> int:
        with self._lock:
            return len(self._positions)

    def add_open_position(self, position: TrackedPosition) -> TrackedPosition:
        """
        Start tracking a position.

        Raises:
            InvariantViolation: the symbol already has a tracked position
        """
        with self._lock:
            if position.symbol in self._positions:
                raise InvariantViolation(f"Position for {position.symbol} is already tracked")
            tracked = replace(position, registered_at=self._clock())
            self._positions[position.symbol] = tracked
        logger.info(
            f"[TRACKER] Tracking {tracked.symbol} {tracked.direction} "
            f"qty={tracked.quantity} @ {tracked.entry_price} (order {tracked.order_id})"
        )
        return tracked

    def remove_open_position(self, symbol: str) -> Optional[TrackedPosition]:
        with self._lock:
            removed = self._positions.pop(symbol, None)
        if removed is not None:
            logger.info(f"[TRACKER] Stopped tracking {symbol}")
        return removed

    def mark_closing(self, symbol: str, close_order_id: str) -> TrackedPosition:
        """Record that a reduce-only close was submitted; removal waits for the exchange."""
        with self._lock:
            current = self._positions.get(symbol)
            if current is None:
                raise InvariantViolation(f"No tracked position for {symbol}")
            updated = replace(
                current,
                close_order_id=close_order_id,
                close_requested_at=datetime.now(timezone.utc),
            )
            self._positions[symbol] = updated
            return updated

    def clear_closing(self, symbol: str, close_order_id: Optional[str]) -> Optional[TrackedPosition]:
        """Drop an unconfirmed close so the next close signal resubmits; no-op if the close changed."""
        with self._lock:
            current = self._positions.get(symbol)
            if current is None or not current.is_closing or current.close_order_id != close_order_id:
                return None
            updated = replace(current, close_order_id=None, close_requested_at=None)
            self._positions[symbol] = updated
            return updated

    # -----------------------
    # Statistics
    # -----------------------
    def get_statistics(self) -> Dict[str, Any]:
        snap = self.statistics.snapshot()
        return {
            'total_trades': snap.total_trades,
            'win_trades': snap.win_trades,
            'lose_trades': snap.lose_trades,
            'total_profit': snap.total_profit,
            'win_rate': snap.win_rate,
            'open_positions': self.get_open_positions_count(),
        }

    def reset_daily_statistics(self) -> None:
        self.statistics.reset_trade_counters()
        logger.info("[TRACKER] Daily position statistics reset")

    # -----------------------
    # Reconciliation
    # -----------------------
    @staticmethod
    def _matches(position: TrackedPosition, remote: ExchangePosition) -> bool:
        if position.position_idx and remote.position_idx:
            return position.position_idx == remote.position_idx
        return True

    async def reconcile_once(self) -> List[ClosedPosition]:
        """
        Run one reconciliation tick.

        Returns the positions settled as closed. A failed exchange query is
        logged and leaves local state untouched.
        """
        self.ticks += 1
        listing_taken_at = self._clock()
        try:
            remote_positions = await self.gateway.list_open_positions()
        except Exception as exc:
            self.failed_ticks += 1
            logger.error(f"[TRACKER] Reconciliation skipped, could not list positions: {exc}")
            return []

        remote_by_symbol: Dict[str, List[ExchangePosition]] = {}
        for remote in remote_positions:
            remote_by_symbol.setdefault(remote.symbol, []).append(remote)

        settled: List[ClosedPosition] = []
        for position in self.get_open_positions():
            if position.simulated:
                continue
            matches = [r for r in remote_by_symbol.get(position.symbol, []) if self._matches(position, r)]
            if matches:
                remote_size = sum(r.size for r in matches)
                if abs(remote_size - position.quantity) > 1e-12 and not position.is_closing:
                    logger.warning(
                        f"[TRACKER] Size drift on {position.symbol}: tracked={position.quantity} "
                        f"exchange={remote_size} (not corrected)"
                    )
                if position.is_closing:
                    await self._expire_stale_close(position)
                continue

            async with self.symbol_lock(position.symbol):
                current = self.get_open_position(position.symbol)
                # opened after the listing was taken: the listing cannot speak for it
                if current is None or current.registered_at > listing_taken_at:
                    continue
                try:
                    result = await self._settle_exchange_closure(current)
                except Exception as exc:
                    logger.error(f"[TRACKER] Failed to settle {current.symbol}: {exc}", exc_info=True)
                    continue
            if result is not None:
                settled.append(result)
                await self.notify_closed(result)
        return settled

    async def _expire_stale_close(self, position: TrackedPosition) -> Optional[TrackedPosition]:
        """Release a close the exchange has not confirmed within `close_confirm_timeout`."""
        if position.close_requested_at is None:
            return None
        waited = datetime.now(timezone.utc) - position.close_requested_at
        if waited < timedelta(seconds=self.close_confirm_timeout):
            return None

        async with self.symbol_lock(position.symbol):
            released = self.clear_closing(position.symbol, position.close_order_id)
        if released is None:
            return None

        logger.warning(
            f"[TRACKER] Close order {position.close_order_id} for {position.symbol} not confirmed "
            f"after {format_duration(waited)}, position still open on exchange"
        )
        log_trade({
            'event': 'close_unconfirmed',
            'symbol': position.symbol,
            'close_order_id': position.close_order_id,
            'waited_seconds': round(waited.total_seconds(), 1),
        })
        if self.notifier is not None:
            await self.notifier.send(format_close_unconfirmed(
                position.symbol, position.direction, position.close_order_id, format_duration(waited),
            ))
        return released

    async def _resolve_exit_price(self, position: TrackedPosition) -> float:
        try:
            fill_price = await self.gateway.get_last_fill_price(position.symbol, since=position.opened_at)
            if fill_price:
                return fill_price
        except Exception as exc:
            logger.warning(f"[TRACKER] Could not fetch fills for {position.symbol}: {exc}")
        try:
            return await self.gateway.get_current_price(position.symbol)
        except Exception as exc:
            logger.warning(
                f"[TRACKER] Could not fetch price for {position.symbol}, using entry price: {exc}"
            )
        return position.entry_price

    async def _settle_exchange_closure(self, position: TrackedPosition) -> Optional[ClosedPosition]:
        exit_price = await self._resolve_exit_price(position)
        return self._settle(position, exit_price, closed_on_exchange=not position.is_closing)

    def close_simulated(self, symbol: str, exit_price: float) -> Optional[ClosedPosition]:
        """Settle a dry-run position immediately; there is no exchange state to wait for."""
        position = self.get_open_position(symbol)
        if position is None:
            return None
        return self._settle(position, exit_price, closed_on_exchange=False)

    def _settle(self, position: TrackedPosition, exit_price: float, closed_on_exchange: bool) -> Optional[ClosedPosition]:
        pnl, pnl_percent = calculate_pnl(position.direction, position.entry_price, exit_price, position.quantity)

        if self.remove_open_position(position.symbol) is None:
            return None
        won = self.statistics.record_trade_result(pnl)

        duration = format_duration(datetime.now(timezone.utc) - position.opened_at)
        logger.info(
            f"[TRACKER] Position closed {'on exchange' if closed_on_exchange else 'by close signal'}: "
            f"{position.symbol} {position.direction} entry={position.entry_price} exit={exit_price} "
            f"pnl={pnl:.4f} USDT ({pnl_percent:.2f}%)"
        )
        log_trade({
            'event': 'position_closed',
            'symbol': position.symbol,
            'direction': position.direction.value,
            'entry_price': position.entry_price,
            'exit_price': exit_price,
            'quantity': position.quantity,
            'pnl': pnl,
            'closed_on_exchange': closed_on_exchange,
        })
        return ClosedPosition(
            symbol=position.symbol,
            direction=position.direction,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            pnl=pnl,
            pnl_percent=pnl_percent,
            won=won,
            duration=duration,
            closed_on_exchange=closed_on_exchange,
        )

    async def notify_closed(self, closed: ClosedPosition) -> None:
        if self.notifier is None:
            return
        await self.notifier.send(format_position_closed(
            symbol=closed.symbol,
            direction=closed.direction,
            entry_price=closed.entry_price,
            exit_price=closed.exit_price,
            pnl=closed.pnl,
            pnl_percent=closed.pnl_percent,
            duration=closed.duration,
            closed_on_exchange=closed.closed_on_exchange,
        ))

    # -----------------------
    # Monitoring loop
    # -----------------------
    @property
    def is_monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    def start_monitoring(self, interval_seconds: float = 30.0) -> asyncio.Task:
        """Start periodic reconciliation on the running event loop."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        if self.is_monitoring:
            logger.warning("[TRACKER] Monitoring already running")
            return self._monitor_task
        self._stop_event = asyncio.Event()
        self._monitor_task = asyncio.create_task(self._monitor_loop(interval_seconds, self._stop_event))
        logger.info(f"[TRACKER] Position monitoring started (every {interval_seconds}s)")
        return self._monitor_task

    def stop_monitoring(self) -> None:
        """Stop scheduling ticks. A tick already in flight runs to completion."""
        if self._stop_event is not None:
            self._stop_event.set()
            logger.info("[TRACKER] Position monitoring stopped")

    async def wait_stopped(self) -> None:
        if self._monitor_task is not None:
            await self._monitor_task

    async def _monitor_loop(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.reconcile_once()
            except Exception as exc:
                logger.error(f"[TRACKER] Reconciliation tick failed: {exc}", exc_info=True)
