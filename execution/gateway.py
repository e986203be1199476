"""
gateway.py - Order Execution Gateway

Thin boundary between the lifecycle engine and the exchange transport.
Normalizes order responses into OrderResult and treats "leverage not
modified" as success. Does not retry: retry policy lives in the transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from data.exchange import (
    BybitConnector,
    ExchangeError,
    ExchangePosition,
    InstrumentInfo,
    dump_order,
)
from signals.models import Direction

logger = logging.getLogger(__name__)


# Bybit retCode for "leverage not modified"
LEVERAGE_NOT_MODIFIED = 110043


class PositionMode(Enum):
    """Account position mode."""
    ONE_WAY = "ONE_WAY"
    HEDGE = "HEDGE"


@dataclass
class OrderResult:
    """
    Normalized result of an order submission.

    Attributes:
        order_id: Exchange order id
        symbol: Exchange symbol id
        side: buy / sell
        quantity: Requested quantity
        reduce_only: Whether the order could only reduce exposure
        order_link_id: Client order id echoed by the exchange, if any
        raw: Unmodified exchange response
    """
    order_id: str
    symbol: str
    side: str
    quantity: float
    reduce_only: bool = False
    order_link_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'symbol': self.symbol,
            'side': self.side,
            'quantity': self.quantity,
            'reduce_only': self.reduce_only,
            'order_link_id': self.order_link_id,
        }


class OrderGateway:
    """Order submission and account queries for the lifecycle engine."""

    def __init__(self, connector: BybitConnector, position_mode: PositionMode = PositionMode.ONE_WAY):
        self.connector = connector
        self.position_mode = position_mode

    def position_idx_for(self, direction: Direction) -> int:
        """0 in one-way mode; 1 (long) / 2 (short) in hedge mode."""
        if self.position_mode is PositionMode.HEDGE:
            return 1 if direction is Direction.LONG else 2
        return 0

    async def set_leverage(self, symbol: str, leverage: float) -> bool:
        logger.info(f"[GATEWAY] Setting leverage {leverage}x for {symbol}...")
        try:
            await self.connector.set_leverage(symbol, leverage)
        except ExchangeError as exc:
            if exc.code == LEVERAGE_NOT_MODIFIED or "leverage not modified" in str(exc).lower():
                logger.info(f"[GATEWAY] Leverage already {leverage}x for {symbol}")
                return True
            logger.error(f"[GATEWAY] Error setting leverage: {exc}")
            raise
        logger.info(f"[GATEWAY] Leverage {leverage}x set for {symbol}")
        return True

    async def open_market_order(self, symbol: str, side: str, quantity: float, position_idx: int = 0) -> OrderResult:
        logger.info(f"[GATEWAY] Opening {side} market order: {quantity} {symbol}...")
        order = await self.connector.create_market_order(symbol, side, quantity, position_idx=position_idx)
        result = self._to_result(order, symbol, side, quantity, reduce_only=False)
        logger.info(f"[GATEWAY] Market order opened: Order ID {result.order_id}")
        return result

    async def close_market_order(self, symbol: str, side: str, quantity: float, position_idx: int = 0) -> OrderResult:
        """Reduce-only market order: can shrink or close exposure, never add to or flip it."""
        logger.info(f"[GATEWAY] Closing position: {side} {quantity} {symbol} (reduceOnly)...")
        order = await self.connector.create_market_order(
            symbol, side, quantity, position_idx=position_idx, reduce_only=True
        )
        result = self._to_result(order, symbol, side, quantity, reduce_only=True)
        logger.info(f"[GATEWAY] Close order submitted: Order ID {result.order_id}")
        return result

    async def get_current_price(self, symbol: str) -> float:
        return await self.connector.fetch_last_price(symbol)

    async def get_instrument(self, symbol: str) -> InstrumentInfo:
        return await self.connector.fetch_instrument(symbol)

    async def get_balance(self) -> float:
        return await self.connector.fetch_usdt_balance()

    async def list_open_positions(self) -> List[ExchangePosition]:
        return await self.connector.fetch_open_positions()

    async def get_last_fill_price(self, symbol: str, since: Optional[datetime] = None) -> Optional[float]:
        """Price of the most recent execution since `since`, None if there is none."""
        fills = await self.connector.fetch_fills(symbol, since=since)
        if not fills:
            return None
        return fills[-1].price

    @staticmethod
    def _to_result(order: Dict[str, Any], symbol: str, side: str, quantity: float, reduce_only: bool) -> OrderResult:
        order = order or {}
        info = order.get("info") or {}
        order_id = order.get("id") or info.get("orderId")
        if not order_id:
            raise ExchangeError(f"Order response for {symbol} carries no order id: {dump_order(order)}")
        return OrderResult(
            order_id=str(order_id),
            symbol=symbol,
            side=side,
            quantity=quantity,
            reduce_only=reduce_only,
            order_link_id=order.get("clientOrderId") or info.get("orderLinkId"),
            raw=order,
        )
