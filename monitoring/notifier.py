"""
notifier.py - Outward Operator Notifications

Formats trading events as HTML messages for the signal channel and sends
them through the message transport. In dry-run mode nothing is sent; the
formatted text is only logged.

A failed send is logged and reported as False; it never raises into the
trading flow.
"""

from __future__ import annotations

import html
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from core.state import StatisticsSnapshot

logger = logging.getLogger(__name__)


class MessageTransport(Protocol):
    async def send_message(self, chat_id: str, text: str) -> None:
        ...


def _esc(value: Any) -> str:
    return html.escape(str(value), quote=False)


def _signed(value: float, fmt: str = "{:.2f}") -> str:
    return ("+" if value >= 0 else "") + fmt.format(value)


def _signed_usd(value: float) -> str:
    return ("+" if value >= 0 else "-") + f"${abs(value):.2f}"


def format_startup(balance: float, dry_run: bool, position_size_percent: float, leverage: float, trading_hours: str) -> str:
    return (
        "🤖 <b>TRADING BOT STARTED</b>\n\n"
        f"Balance: {balance:.2f} USDT\n"
        f"Mode: {'DRY RUN' if dry_run else 'LIVE TRADING'}\n"
        f"Position size: {position_size_percent}% | Leverage: {leverage}x\n"
        f"Trading hours: {trading_hours} UTC"
    )


def format_shutdown(open_positions: int, daily_trades: int) -> str:
    return (
        "🛑 <b>TRADING BOT STOPPED</b>\n\n"
        f"Open positions: {open_positions}\n"
        f"Total trades today: {daily_trades}"
    )


def format_signal_ignored(symbol: str, direction: Any, reason: str, info: Optional[Dict[str, Any]] = None) -> str:
    info = info or {}
    message = (
        "⏰ <b>SIGNAL IGNORED</b>\n\n"
        f"<b>Symbol:</b> {_esc(symbol)}\n"
        f"<b>Direction:</b> {_esc(direction)}\n"
        f"<b>Reason:</b> {_esc(reason)}"
    )
    if info.get('current_time'):
        message += f"\n\n<b>Current time:</b> {_esc(info['current_time'])} UTC"
    if info.get('trading_hours'):
        message += f"\n<b>Trading hours:</b> {_esc(info['trading_hours'])}"
    if info.get('next_trading'):
        message += f"\n<b>Next trading:</b> in {_esc(info['next_trading'])}"
    return message


def format_position_opened(
    symbol: str,
    direction: Any,
    entry_price: float,
    quantity: float,
    leverage: float,
    position_size_notional: Optional[float],
    signal_time: datetime,
) -> str:
    base = symbol.replace("USDT", "") if symbol else "UNKNOWN"
    emoji = "📈" if str(direction) == "LONG" else "📉"
    size = f"${position_size_notional:.2f}" if position_size_notional else "n/a"
    return (
        "✅ <b>POSITION OPENED</b>\n\n"
        f"<b>Symbol:</b> {_esc(symbol)}\n"
        f"<b>Direction:</b> {emoji} {_esc(direction)}\n"
        f"<b>Entry Price:</b> ${entry_price}\n"
        f"<b>Quantity:</b> {quantity:g} {_esc(base)}\n"
        f"<b>Leverage:</b> {leverage:g}x\n"
        f"💰 <b>Position Size:</b> {size}\n\n"
        f"Signal at: {signal_time.astimezone(timezone.utc):%Y-%m-%d %H:%M:%S} UTC"
    )


def format_position_closed(
    symbol: str,
    direction: Any,
    entry_price: float,
    exit_price: float,
    pnl: float,
    pnl_percent: float,
    duration: str,
    closed_on_exchange: bool = False,
) -> str:
    emoji = "🟢" if pnl >= 0 else "🔴"
    result = "PROFIT" if pnl >= 0 else "LOSS"
    title = f"POSITION CLOSED - {result}"
    message = (
        f"{emoji} <b>{title}</b>\n\n"
        f"<b>Symbol:</b> {_esc(symbol)}\n"
        f"<b>Direction:</b> {_esc(direction)}\n"
        f"<b>Entry:</b> ${entry_price}\n"
        f"<b>Exit:</b> ${exit_price}\n"
        f"<b>Result:</b> {_signed(pnl_percent)}% ({_signed_usd(pnl)})\n\n"
        f"<b>Duration:</b> {_esc(duration)}"
    )
    if closed_on_exchange:
        message += "\n\n⚠️ Closed on the exchange without a close signal (manual close or liquidation)"
    return message


def format_close_unconfirmed(symbol: str, direction: Any, close_order_id: Optional[str], waited: str) -> str:
    return (
        "⚠️ <b>CLOSE NOT CONFIRMED</b>\n\n"
        f"<b>Symbol:</b> {_esc(symbol)}\n"
        f"<b>Direction:</b> {_esc(direction)}\n"
        f"<b>Close order:</b> {_esc(close_order_id or 'n/a')}\n"
        f"<b>Waited:</b> {_esc(waited)}\n\n"
        "Position is still open on the exchange. The next close signal will resubmit."
    )


def format_error(title: str, fields: Dict[str, Any], error: str) -> str:
    lines = [f"❌ <b>{_esc(title)}</b>", ""]
    lines.extend(f"{_esc(k)}: {_esc(v)}" for k, v in fields.items())
    lines.append(f"Error: {_esc(error)}")
    return "\n".join(lines)


def format_daily_report(
    stats: StatisticsSnapshot,
    report_date: str,
    trading_hours: str,
    total_pnl: float,
    roi: float,
    current_balance: float,
) -> str:
    win_rate = (stats.win_trades / stats.total_trades) * 100 if stats.total_trades > 0 else 0.0
    loss_rate = (stats.lose_trades / stats.total_trades) * 100 if stats.total_trades > 0 else 0.0
    pnl_emoji = "💰" if total_pnl >= 0 else "📉"
    roi_emoji = "📈" if roi >= 0 else "📉"
    return (
        "📊 <b>DAILY REPORT</b>\n\n"
        f"<b>Date:</b> {report_date}\n"
        f"<b>Trading Hours:</b> {trading_hours} UTC\n"
        f"<b>Total Signals:</b> {stats.total_signals}\n"
        f"<b>Signals Ignored (off-hours):</b> {stats.signals_ignored}\n"
        f"<b>Total Trades:</b> {stats.total_trades}\n"
        f"✅ <b>Wins:</b> {stats.win_trades} ({win_rate:.1f}%)\n"
        f"❌ <b>Losses:</b> {stats.lose_trades} ({loss_rate:.1f}%)\n"
        f"{pnl_emoji} <b>Total P&amp;L:</b> {_signed_usd(total_pnl)}\n"
        f"{roi_emoji} <b>ROI:</b> {_signed(roi)}%\n\n"
        f"<b>Balance:</b> ${stats.start_balance:.2f} → ${current_balance:.2f}"
    )


class Notifier:
    """Sends formatted messages to one destination; silent in dry run."""

    def __init__(self, transport: Optional[MessageTransport], chat_id: str, dry_run: bool = False):
        self.transport = transport
        self.chat_id = chat_id
        self.dry_run = dry_run
        self.sent_count = 0

    @property
    def enabled(self) -> bool:
        return not self.dry_run and self.transport is not None

    async def send(self, text: str) -> bool:
        """Send a message. Returns True if it was delivered."""
        if not self.enabled:
            logger.debug(f"[NOTIFY] Suppressed (dry run): {text.splitlines()[0] if text else ''}")
            return False
        try:
            await self.transport.send_message(self.chat_id, text)
        except Exception as exc:
            logger.error(f"[NOTIFY] Error sending message: {exc}")
            return False
        self.sent_count += 1
        return True
