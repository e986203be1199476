"""
Hardened async CCXT wrapper for Bybit linear (USDT-settled) perpetuals.

Guarantees provided:
- Connection lifecycle is guarded (prevent concurrent connect())
- disconnect() is idempotent
- Per-request timeout via asyncio.wait_for
- Read requests retry only on explicit network-like errors (no broad Exception)
- Adaptive backoff for rate-limit events (RateLimitExceeded)
- Order submissions are sent exactly once, never retried
- Failures surface as typed errors (ExchangeError hierarchy), never as silent defaults
- Returned data is normalized: exchange symbol ids (BTCUSDT), floats, aware UTC datetimes
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async


# Configure logger
logger = logging.getLogger(__name__)


SETTLE_COIN = "USDT"
_RET_CODE_RE = re.compile(r'"retCode"\s*:\s*(\d+)')
_RET_MSG_RE = re.compile(r'"retMsg"\s*:\s*"([^"]*)"')


class ExchangeError(RuntimeError):
    """Non-retryable exchange failure. `code` carries Bybit's retCode when known."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransientExchangeError(ExchangeError):
    """Network-like failure (timeout, rate limit, exchange unavailable)."""


class AuthenticationError(ExchangeError):
    pass


class DataValidationError(ExchangeError):
    pass


@dataclass(frozen=True)
class InstrumentInfo:
    """
    Contract metadata used for sizing.

    Attributes:
        symbol: Exchange symbol id (e.g. BTCUSDT)
        qty_step: Quantity increment
        min_qty: Minimum order quantity
        max_qty: Maximum order quantity
        tick_size: Price increment
        status: Exchange trading status (Bybit: Trading, PreLaunch, Settling, ...)
    """
    symbol: str
    qty_step: float
    min_qty: float = 0.0
    max_qty: float = float("inf")
    tick_size: Optional[float] = None
    status: str = "Trading"
    base_coin: Optional[str] = None
    quote_coin: Optional[str] = None

    @property
    def is_tradable(self) -> bool:
        return self.status == "Trading"


@dataclass(frozen=True)
class ExchangePosition:
    """An open position as reported by the exchange."""
    symbol: str
    side: str
    size: float
    entry_price: float
    mark_price: float = 0.0
    unrealised_pnl: float = 0.0
    leverage: float = 1.0
    position_idx: int = 0


@dataclass(frozen=True)
class Fill:
    """A single execution of one of our orders."""
    symbol: str
    side: str
    price: float
    quantity: float
    timestamp: datetime
    order_id: Optional[str] = None
    info: Dict[str, Any] = field(default_factory=dict, compare=False)


def to_ccxt_symbol(symbol: str, settle: str = SETTLE_COIN) -> str:
    """Map an exchange id (BTCUSDT) to the ccxt unified linear symbol (BTC/USDT:USDT)."""
    s = symbol.upper()
    if "/" in s:
        return s if ":" in s else f"{s}:{settle}"
    if s.endswith(settle) and len(s) > len(settle):
        return f"{s[:-len(settle)]}/{settle}:{settle}"
    raise DataValidationError(f"Cannot map symbol '{symbol}' to a {settle}-settled contract")


def from_ccxt_symbol(symbol: str) -> str:
    """Map a ccxt unified symbol (BTC/USDT:USDT) back to the exchange id (BTCUSDT)."""
    base_quote = symbol.split(":", 1)[0]
    return base_quote.replace("/", "").upper()


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


class BybitConnector:
    """
    Minimal hardened Bybit wrapper.

    Usage:
        conn = BybitConnector(api_key=..., secret=..., testnet=True)
        await conn.connect()
        balance = await conn.fetch_usdt_balance()
        await conn.disconnect()
    """

    DEFAULT_TIMEOUT = 10.0
    DEFAULT_MAX_ATTEMPTS = 3

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret: Optional[str] = None,
        testnet: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        client: Any = None,
    ):
        self.api_key = api_key
        self.secret = secret
        self.testnet = testnet
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self._lock = Lock()
        self._client = client
        self._connected = False
        # rate limit backoff state
        self._rate_backoff = 1.0

    # -----------------------
    # Lifecycle
    # -----------------------
    async def connect(self) -> None:
        """Create the client, load markets and verify the API answers. Prevent concurrent connects."""
        if not self._lock.acquire(blocking=False):
            raise ExchangeError("connect() already in progress")
        try:
            if self._connected:
                return
            logger.info("[BYBIT] Connecting to Bybit API...")
            if self._client is None:
                client = ccxt_async.bybit({
                    "apiKey": self.api_key,
                    "secret": self.secret,
                    "enableRateLimit": True,
                    "options": {"defaultType": "swap"},
                })
                if self.testnet:
                    client.set_sandbox_mode(True)
                self._client = client

            await self._request_with_retry(self._client.load_markets)
            server_time = await self._request_with_retry(self._client.fetch_time)
            self._connected = True
            logger.info(
                f"[BYBIT] Connected to Bybit {'TESTNET' if self.testnet else 'MAINNET'} "
                f"(server time {server_time})"
            )
        finally:
            self._lock.release()

    async def disconnect(self) -> None:
        """Disconnect (idempotent)."""
        if self._client is None:
            return
        try:
            await self._client.close()
        except Exception as exc:
            logger.warning(f"[BYBIT] Error while closing client: {exc}")
        finally:
            self._client = None
            self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def _require_client(self):
        if self._client is None:
            raise ExchangeError("Not connected")
        return self._client

    # -----------------------
    # Error normalization
    # -----------------------
    @staticmethod
    def _extract_ret_code(exc: Exception) -> Optional[int]:
        match = _RET_CODE_RE.search(str(exc))
        return int(match.group(1)) if match else None

    @staticmethod
    def _extract_ret_msg(exc: Exception) -> str:
        match = _RET_MSG_RE.search(str(exc))
        return match.group(1) if match else str(exc)

    def _translate(self, exc: Exception) -> ExchangeError:
        """Map ccxt / asyncio failures onto the ExchangeError hierarchy."""
        if isinstance(exc, ExchangeError):
            return exc
        code = self._extract_ret_code(exc)
        message = self._extract_ret_msg(exc)
        if isinstance(exc, asyncio.TimeoutError):
            return TransientExchangeError(f"Request timed out after {self.timeout}s")
        if isinstance(exc, ccxt.AuthenticationError):
            return AuthenticationError(message, code=code)
        if isinstance(exc, ccxt.NetworkError):
            return TransientExchangeError(message, code=code)
        return ExchangeError(message, code=code)

    def _is_retryable_exception(self, exc: Exception) -> bool:
        """Return True if exception is network-like and safe to retry."""
        return isinstance(exc, (ccxt.NetworkError, asyncio.TimeoutError))

    def _is_rate_limit_exception(self, exc: Exception) -> bool:
        return isinstance(exc, ccxt.RateLimitExceeded)

    # -----------------------
    # Request wrapper: timeout + retry + backoff
    # -----------------------
    async def _request_with_retry(self, coro_callable, *args, max_attempts: Optional[int] = None, **kwargs):
        """
        Execute coroutine factory with timeout + retries on network errors only.

        - adaptive backoff on rate limit: exponential backoff (base self._rate_backoff)
        - exponential backoff on timeouts and network errors
        - never retries on authentication/logical errors
        - raises the translated ExchangeError once attempts are exhausted
        """
        attempts = max_attempts or self.max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(coro_callable(*args, **kwargs), timeout=self.timeout)
            except Exception as exc:
                if not self._is_retryable_exception(exc) or attempt >= attempts:
                    raise self._translate(exc) from exc
                if self._is_rate_limit_exception(exc):
                    self._rate_backoff = min(60.0, (self._rate_backoff or 1.0) * 2.0)
                    sleep_for = self._rate_backoff
                    logger.warning(
                        f"[BYBIT] Rate limit exceeded (attempt {attempt}/{attempts}), "
                        f"backing off {sleep_for:.2f}s..."
                    )
                else:
                    sleep_for = min(10.0, 0.5 * (2 ** (attempt - 1)))
                    logger.warning(
                        f"[BYBIT] Network error (attempt {attempt}/{attempts}): {exc}, "
                        f"retrying in {sleep_for:.2f}s..."
                    )
                await asyncio.sleep(sleep_for)

    # -----------------------
    # Account
    # -----------------------
    async def fetch_usdt_balance(self) -> float:
        """Available USDT balance on the derivatives (unified) account."""
        client = self._require_client()
        balance = await self._request_with_retry(client.fetch_balance)
        free = (balance.get("free") or {}).get(SETTLE_COIN)
        if free is None:
            coin = balance.get(SETTLE_COIN) or {}
            free = coin.get("free", coin.get("total"))
        if free is None:
            logger.warning("[BYBIT] USDT not found in wallet")
            return 0.0
        available = _as_float(free)
        logger.info(f"[BYBIT] USDT Balance: {available} USDT")
        return available

    # -----------------------
    # Market data
    # -----------------------
    async def fetch_instrument(self, symbol: str) -> InstrumentInfo:
        """Lot size filter and trading status for one linear contract."""
        client = self._require_client()
        unified = to_ccxt_symbol(symbol)
        markets = getattr(client, "markets", None)
        if not markets:
            markets = await self._request_with_retry(client.load_markets)
        market = (markets or {}).get(unified)
        if market is None:
            raise ExchangeError(f"Symbol {symbol} not found")

        info = market.get("info") or {}
        lot = info.get("lotSizeFilter") or {}
        price_filter = info.get("priceFilter") or {}
        limits = (market.get("limits") or {}).get("amount") or {}
        precision = market.get("precision") or {}

        qty_step = _as_float(lot.get("qtyStep"), _as_float(precision.get("amount"), 0.0001))
        min_qty = _as_float(lot.get("minOrderQty"), _as_float(limits.get("min"), 0.0))
        max_qty = _as_float(lot.get("maxOrderQty"), _as_float(limits.get("max"), float("inf")))
        status = info.get("status") or ("Trading" if market.get("active", True) else "Closed")

        return InstrumentInfo(
            symbol=from_ccxt_symbol(unified),
            qty_step=qty_step,
            min_qty=min_qty,
            max_qty=max_qty,
            tick_size=_as_float(price_filter.get("tickSize"), _as_float(precision.get("price"), 0.0)) or None,
            status=status,
            base_coin=market.get("base"),
            quote_coin=market.get("quote"),
        )

    async def fetch_last_price(self, symbol: str) -> float:
        client = self._require_client()
        ticker = await self._request_with_retry(client.fetch_ticker, to_ccxt_symbol(symbol))
        last = _as_float((ticker or {}).get("last"), 0.0)
        if last <= 0:
            raise DataValidationError(f"Ticker for {symbol} has no last price")
        logger.info(f"[BYBIT] Current price for {symbol}: {last}")
        return last

    # -----------------------
    # Trading
    # -----------------------
    async def set_leverage(self, symbol: str, leverage: float) -> Any:
        client = self._require_client()
        return await self._request_with_retry(client.set_leverage, leverage, to_ccxt_symbol(symbol))

    async def create_market_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        position_idx: int = 0,
        reduce_only: bool = False,
    ) -> Dict[str, Any]:
        """Submit a market order once. A timeout here is ambiguous and surfaces as TransientExchangeError."""
        client = self._require_client()
        params: Dict[str, Any] = {"positionIdx": int(position_idx)}
        if reduce_only:
            params["reduceOnly"] = True
        return await self._request_with_retry(
            client.create_order,
            to_ccxt_symbol(symbol),
            "market",
            side,
            quantity,
            None,
            params,
            max_attempts=1,
        )

    async def fetch_open_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        """Positions with non-zero size, optionally for one symbol."""
        client = self._require_client()
        if symbol:
            raw = await self._request_with_retry(client.fetch_positions, [to_ccxt_symbol(symbol)])
        else:
            raw = await self._request_with_retry(client.fetch_positions, None, {"settleCoin": SETTLE_COIN})

        positions: List[ExchangePosition] = []
        for pos in raw or []:
            info = pos.get("info") or {}
            size = _as_float(pos.get("contracts"), _as_float(info.get("size")))
            if size == 0:
                continue
            raw_symbol = info.get("symbol") or from_ccxt_symbol(pos.get("symbol", ""))
            positions.append(ExchangePosition(
                symbol=raw_symbol.upper(),
                side=str(pos.get("side") or info.get("side") or "").lower(),
                size=abs(size),
                entry_price=_as_float(pos.get("entryPrice"), _as_float(info.get("avgPrice"))),
                mark_price=_as_float(pos.get("markPrice"), _as_float(info.get("markPrice"))),
                unrealised_pnl=_as_float(pos.get("unrealizedPnl"), _as_float(info.get("unrealisedPnl"))),
                leverage=_as_float(pos.get("leverage"), 1.0),
                position_idx=int(_as_float(info.get("positionIdx"), 0)),
            ))
        return positions

    async def fetch_fills(self, symbol: str, since: Optional[datetime] = None, limit: int = 50) -> List[Fill]:
        """Our executions for a symbol, oldest first."""
        client = self._require_client()
        since_ms = int(since.timestamp() * 1000) if since else None
        raw = await self._request_with_retry(client.fetch_my_trades, to_ccxt_symbol(symbol), since_ms, limit)
        fills = [
            Fill(
                symbol=symbol.upper(),
                side=str(t.get("side") or "").lower(),
                price=_as_float(t.get("price")),
                quantity=_as_float(t.get("amount")),
                timestamp=datetime.fromtimestamp((t.get("timestamp") or time.time() * 1000) / 1000.0, tz=timezone.utc),
                order_id=t.get("order"),
                info=t.get("info") or {},
            )
            for t in raw or []
        ]
        fills.sort(key=lambda f: f.timestamp)
        return fills

    def __repr__(self) -> str:
        return (f"BybitConnector(testnet={self.testnet}, connected={self._connected}, "
                f"api_key={'***' if self.api_key else None})")


def describe_error(exc: BaseException) -> str:
    """Compact one-line description of an exchange error for notifications."""
    if isinstance(exc, ExchangeError) and exc.code is not None:
        return f"{exc} (code: {exc.code})"
    return str(exc) or type(exc).__name__


def dump_order(order: Dict[str, Any]) -> str:
    return json.dumps({k: order.get(k) for k in ("id", "symbol", "side", "amount", "status")}, default=str)
