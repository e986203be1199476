"""
telegram.py - Telegram Bot API Transport

Inbound: long-polls `getUpdates` for posts in the configured signal channel,
parses each post and hands recognized signals to the registered handlers, in
arrival order and one at a time.

Outbound: `send_message(chat_id, text)` with HTML formatting, used by the
Notifier.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from signals.models import Signal
from signals.parser import is_signal_message, parse_signal_detailed

logger = logging.getLogger(__name__)


API_BASE = "https://api.telegram.org"
ERROR_BACKOFF_SECONDS = 5.0

SignalHandler = Callable[[Signal], Awaitable[None]]


class TelegramError(RuntimeError):
    """The Bot API answered with ok=false or an unreadable response."""


class TelegramTransport:
    """Signal channel listener and message sender over the Bot API."""

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        poll_timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        if not bot_token:
            raise ValueError("Telegram bot token is required")
        self._base = f"{API_BASE}/bot{bot_token}"
        self.channel_id = str(channel_id)
        self.poll_timeout = poll_timeout
        self._session = session
        self._owns_session = session is None
        self._handlers: List[SignalHandler] = []
        self._offset: Optional[int] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._running = False

    def on_signal(self, handler: SignalHandler) -> None:
        """Register an async handler called once per recognized signal."""
        self._handlers.append(handler)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.poll_timeout + 15)
            )
            self._owns_session = True
        return self._session

    async def _request(self, method: str, **params) -> Any:
        session = await self._get_session()
        async with session.post(f"{self._base}/{method}", json=params) as resp:
            try:
                data = await resp.json()
            except (aiohttp.ContentTypeError, ValueError) as exc:
                raise TelegramError(f"{method}: unreadable response (HTTP {resp.status})") from exc
        if not data.get("ok"):
            raise TelegramError(f"{method}: {data.get('description', 'unknown error')}")
        return data.get("result")

    async def send_message(self, chat_id: Optional[str], text: str) -> None:
        await self._request(
            "sendMessage",
            chat_id=chat_id or self.channel_id,
            text=text,
            parse_mode="HTML",
            disable_web_page_preview=True,
        )

    # -----------------------
    # Inbound
    # -----------------------
    async def dispatch_update(self, update: Dict[str, Any]) -> Optional[Signal]:
        """Parse one update and deliver its signal, if any, to every handler."""
        post = update.get("channel_post")
        if not post:
            return None
        chat_id = str((post.get("chat") or {}).get("id", ""))
        if chat_id != self.channel_id:
            logger.debug(f"[TELEGRAM] Ignoring post from chat {chat_id}")
            return None

        text = post.get("text") or post.get("caption") or ""
        if not is_signal_message(text):
            return None
        result = parse_signal_detailed(text)
        if not result.ok:
            logger.debug(f"[TELEGRAM] Post {post.get('message_id')} is not a signal ({result.reason})")
            return None

        signal = result.signal
        logger.info(f"[TELEGRAM] Signal received: {signal.kind} {signal.symbol} {signal.direction}")
        for handler in self._handlers:
            await handler(signal)
        return signal

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch of updates. Returns the number fetched."""
        updates = await self._request(
            "getUpdates",
            offset=self._offset,
            timeout=self.poll_timeout,
            allowed_updates=["channel_post"],
        ) or []
        for update in updates:
            self._offset = update["update_id"] + 1
            await self.dispatch_update(update)
        return len(updates)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"[TELEGRAM] Polling error: {exc}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

    async def start(self) -> None:
        if self._running:
            return
        me = await self._request("getMe")
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            f"[TELEGRAM] Bot @{(me or {}).get('username', '?')} listening for posts in channel {self.channel_id}"
        )

    async def stop(self) -> None:
        self._running = False
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        logger.info("[TELEGRAM] Bot stopped")
