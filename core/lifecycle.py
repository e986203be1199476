"""
lifecycle.py - Signal Lifecycle Orchestrator

Consumes parsed signals one at a time from a bounded queue and drives each
through validation, sizing, order execution and position tracking. Also owns
the daily rollover and the daily report.

Every signal is handled while holding its symbol's lock (shared with the
position tracker), so an open, a close and a reconciliation for the same
symbol never interleave. No exception escapes `handle_signal`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from core.state import RunningStatistics, utc_today
from execution.gateway import OrderGateway, OrderResult
from execution.position_tracker import InvariantViolation, PositionTracker, TrackedPosition
from monitoring.logger import log_error, log_event, log_trade
from monitoring.notifier import (
    Notifier,
    format_daily_report,
    format_error,
    format_position_opened,
    format_signal_ignored,
)
from risk.position_sizing import InsufficientBalanceError, PositionSizer, has_sufficient_balance
from signals.models import CloseSignal, OpenSignal, Signal
from signals.trading_hours import TradingHours
from signals.validator import SignalValidator

logger = logging.getLogger(__name__)


DEFAULT_QUEUE_SIZE = 100
REPORT_INTERVAL = timedelta(hours=24)


def seconds_until_hour(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from `now` until the next HH:00 UTC (a full day if it is exactly HH:00)."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    target = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class LifecycleOrchestrator:
    """
    Drives open and close signals end to end.

    Dependencies are injected; the orchestrator owns only the signal queue
    and its background tasks.
    """

    def __init__(
        self,
        validator: SignalValidator,
        sizer: PositionSizer,
        gateway: OrderGateway,
        tracker: PositionTracker,
        statistics: RunningStatistics,
        notifier: Notifier,
        trading_hours: TradingHours,
        dry_run: bool = False,
        report_hour_utc: int = 23,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.validator = validator
        self.sizer = sizer
        self.gateway = gateway
        self.tracker = tracker
        self.statistics = statistics
        self.notifier = notifier
        self.trading_hours = trading_hours
        self.dry_run = dry_run
        self.report_hour_utc = report_hour_utc
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._consumer_task: Optional[asyncio.Task] = None
        self._report_task: Optional[asyncio.Task] = None

    # -----------------------
    # Queue and background tasks
    # -----------------------
    async def submit(self, signal: Signal) -> None:
        """Enqueue a signal; waits while the queue is full."""
        await self.queue.put(signal)

    async def consume(self) -> None:
        while True:
            signal = await self.queue.get()
            try:
                await self.handle_signal(signal)
            finally:
                self.queue.task_done()

    def start(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self.consume())
        if self._report_task is None or self._report_task.done():
            self._report_task = asyncio.create_task(self._daily_report_loop())
        logger.info(f"[LIFECYCLE] Started (daily report at {self.report_hour_utc}:00 UTC)")

    async def stop(self) -> None:
        tasks = [t for t in (self._consumer_task, self._report_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer_task = None
        self._report_task = None

    # -----------------------
    # Signal handling
    # -----------------------
    def rollover_if_new_day(self, today: Optional[date] = None) -> bool:
        if not self.statistics.rollover_if_new_day(today or utc_today()):
            return False
        self.tracker.reset_daily_statistics()
        logger.info("[LIFECYCLE] New UTC day, daily statistics reset")
        return True

    async def handle_signal(self, signal: Signal, now: Optional[datetime] = None):
        """
        Process one signal. Returns the resulting TrackedPosition (open),
        OrderResult / ClosedPosition (close) or None when nothing happened.
        """
        self.rollover_if_new_day(now.date() if now else None)
        self.statistics.record_signal()
        log_event("signal.received", signal.to_dict() if hasattr(signal, "to_dict") else {"signal": repr(signal)})

        try:
            if isinstance(signal, OpenSignal):
                async with self.tracker.symbol_lock(signal.symbol):
                    return await self._open_position(signal, now)
            if isinstance(signal, CloseSignal):
                async with self.tracker.symbol_lock(signal.symbol):
                    return await self._close_position(signal)
            logger.warning(f"[SIGNAL] Unknown signal type {type(signal).__name__}, dropped")
            return None
        except Exception as exc:
            await self._report_failure(signal, exc)
            return None

    async def _report_failure(self, signal: Signal, exc: Exception) -> None:
        opening = isinstance(signal, OpenSignal)
        title = "ERROR OPENING POSITION" if opening else "ERROR CLOSING POSITION"
        logger.error(f"[SIGNAL] {title} for {signal.symbol} {signal.direction}: {exc}", exc_info=True)
        log_error("signal.failed", str(exc), {'symbol': signal.symbol, 'direction': str(signal.direction),
                                              'kind': 'open' if opening else 'close'})
        await self.notifier.send(format_error(
            title,
            {'Symbol': signal.symbol, 'Direction': signal.direction},
            str(exc),
        ))

    async def _open_position(self, signal: OpenSignal, now: Optional[datetime] = None) -> Optional[TrackedPosition]:
        symbol, direction = signal.symbol, signal.direction
        logger.info(f"[SIGNAL] Open signal: {symbol} {direction}")

        validation = await self.validator.validate(signal, now)
        if not validation.valid:
            logger.warning(f"[SIGNAL] Signal ignored: {symbol} {direction} - {validation.reason}")
            if validation.is_trading_hours_rejection:
                self.statistics.record_signal_ignored()
            log_event("signal.ignored", {'symbol': symbol, 'rule': validation.rule, 'reason': validation.reason})
            await self.notifier.send(format_signal_ignored(symbol, direction, validation.reason, validation.info))
            return None

        balance = validation.balance
        instrument = validation.instrument
        entry_price = await self.gateway.get_current_price(symbol)

        sizing = self.sizer.calculate(balance, entry_price, direction, instrument)
        if not has_sufficient_balance(balance, sizing.required_margin):
            raise InsufficientBalanceError(sizing.required_margin, balance)

        position_idx = self.gateway.position_idx_for(direction)
        if self.dry_run:
            order_id = f"DRY_RUN_{int(time.time() * 1000)}"
            logger.info(
                f"[DRY RUN] Would open {direction} {sizing.quantity} {symbol} @ {entry_price} "
                f"(leverage {sizing.leverage}x, positionIdx {position_idx})"
            )
        else:
            await self.gateway.set_leverage(symbol, sizing.leverage)
            result = await self.gateway.open_market_order(symbol, direction.order_side, sizing.quantity, position_idx)
            order_id = result.order_id

        try:
            position = self.tracker.add_open_position(TrackedPosition(
                symbol=symbol,
                direction=direction,
                entry_price=entry_price,
                quantity=sizing.quantity,
                order_id=order_id,
                position_idx=position_idx,
                position_size_notional=sizing.position_size_notional,
                leverage=sizing.leverage,
                simulated=self.dry_run,
            ))
        except InvariantViolation as exc:
            logger.warning(f"[TRADE] {exc}; order {order_id} not tracked twice")
            return None

        self.statistics.record_trade_opened()
        log_trade({'event': 'position_opened', 'order_id': order_id, 'dry_run': self.dry_run, **sizing.to_dict(),
                   'symbol': symbol})
        logger.info(f"[TRADE] Position opened: {symbol} {direction} qty={sizing.quantity} @ {entry_price}")

        await self.notifier.send(format_position_opened(
            symbol=symbol,
            direction=direction,
            entry_price=entry_price,
            quantity=sizing.quantity,
            leverage=sizing.leverage,
            position_size_notional=sizing.position_size_notional,
            signal_time=signal.observed_at,
        ))
        return position

    async def _close_position(self, signal: CloseSignal):
        symbol, direction = signal.symbol, signal.direction
        logger.info(f"[SIGNAL] Close signal: {symbol} {direction}")

        position = self.tracker.get_open_position(symbol)
        if position is None:
            logger.warning(f"[SIGNAL] No open position for {symbol}, close signal ignored")
            return None

        if position.is_closing:
            reason = f"Close already submitted (order {position.close_order_id}), awaiting exchange confirmation"
            logger.warning(f"[SIGNAL] {reason} ({symbol}), close signal ignored")
            await self.notifier.send(format_signal_ignored(symbol, direction, reason))
            return None

        if position.direction is not direction:
            reason = f"Direction mismatch: open position is {position.direction}, close signal is {direction}"
            logger.warning(f"[SIGNAL] {reason} ({symbol}), close signal ignored")
            await self.notifier.send(format_signal_ignored(symbol, direction, reason))
            return None

        if self.dry_run or position.simulated:
            exit_price = await self._simulated_exit_price(signal, position)
            logger.info(f"[DRY RUN] Would close {position.direction} {position.quantity} {symbol} @ {exit_price}")
            closed = self.tracker.close_simulated(symbol, exit_price)
            if closed is not None:
                await self.tracker.notify_closed(closed)
            return closed

        result: OrderResult = await self.gateway.close_market_order(
            symbol, position.direction.close_side, position.quantity, position.position_idx
        )
        self.tracker.mark_closing(symbol, result.order_id)
        log_trade({'event': 'close_submitted', 'symbol': symbol, 'order_id': result.order_id,
                   'quantity': position.quantity, 'direction': position.direction.value})
        logger.info(f"[TRADE] Close order {result.order_id} submitted for {symbol}; awaiting exchange confirmation")
        return result

    async def _simulated_exit_price(self, signal: CloseSignal, position: TrackedPosition) -> float:
        try:
            return await self.gateway.get_current_price(signal.symbol)
        except Exception as exc:
            logger.warning(f"[DRY RUN] Price unavailable for {signal.symbol}: {exc}")
        return signal.last_price or position.entry_price

    # -----------------------
    # Daily report
    # -----------------------
    async def send_daily_report(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        self.rollover_if_new_day(now.date())

        try:
            self.statistics.update_balance(await self.gateway.get_balance())
        except Exception as exc:
            logger.warning(f"[REPORT] Balance unavailable, using last known: {exc}")

        stats = self.statistics.snapshot()
        total_pnl = stats.current_balance - stats.start_balance
        roi = (total_pnl / stats.start_balance) * 100 if stats.start_balance > 0 else 0.0

        report = format_daily_report(
            stats,
            report_date=now.strftime("%Y-%m-%d"),
            trading_hours=self.trading_hours.describe(),
            total_pnl=total_pnl,
            roi=roi,
            current_balance=stats.current_balance,
        )
        logger.info(
            f"[REPORT] Daily report: signals={stats.total_signals} trades={stats.total_trades} "
            f"wins={stats.win_trades} losses={stats.lose_trades} pnl={total_pnl:.2f} roi={roi:.2f}%"
        )
        await self.notifier.send(report)
        return report

    async def _daily_report_loop(self) -> None:
        delay = seconds_until_hour(self.report_hour_utc)
        logger.info(f"[REPORT] Next daily report in {delay / 3600:.1f}h")
        await asyncio.sleep(delay)
        while True:
            try:
                await self.send_daily_report()
            except Exception as exc:
                logger.error(f"[REPORT] Daily report failed: {exc}", exc_info=True)
            await asyncio.sleep(REPORT_INTERVAL.total_seconds())
