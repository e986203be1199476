"""
position_sizing.py - Position Size Calculator

Converts available balance, entry price and contract constraints into an
order quantity and margin requirement. Sizing is a fixed percentage of
balance at a fixed leverage. No take-profit / stop-loss levels are produced:
positions are closed only by a close signal.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

from data.exchange import InstrumentInfo
from signals.models import Direction

logger = logging.getLogger(__name__)


class InsufficientBalanceError(ValueError):
    """Final margin requirement exceeds the available balance."""

    def __init__(self, required_margin: float, balance: float):
        super().__init__(
            f"Insufficient balance. Required margin: {required_margin:.4f} USDT, "
            f"Available: {balance:.4f} USDT"
        )
        self.required_margin = required_margin
        self.balance = balance


@dataclass(frozen=True)
class PositionSizing:
    """
    Result of position sizing calculation.

    Attributes:
        entry_price: Price the quantity was sized against
        quantity: Order quantity, a multiple of the contract step
        position_size_notional: Nominal position value (balance x percent)
        leverage: Leverage applied
        required_margin: Margin for the final quantity
        direction: LONG or SHORT
    """
    entry_price: float
    quantity: float
    position_size_notional: float
    leverage: float
    required_margin: float
    direction: Direction

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_price': self.entry_price,
            'quantity': self.quantity,
            'position_size_notional': self.position_size_notional,
            'leverage': self.leverage,
            'required_margin': self.required_margin,
            'direction': self.direction.value,
        }


def _is_valid_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def round_to_step(quantity: float, step: float) -> float:
    """Round to the nearest multiple of `step` (half up), free of float noise."""
    if step <= 0:
        return quantity
    d_step = Decimal(str(step))
    steps = (Decimal(str(quantity)) / d_step).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(steps * d_step)


def has_sufficient_balance(balance: float, required_margin: float) -> bool:
    return _is_valid_number(balance) and _is_valid_number(required_margin) and balance >= required_margin


class PositionSizer:
    """Fixed-fraction position sizer for leveraged linear contracts."""

    def __init__(self, position_size_percent: float, leverage: float):
        """
        Args:
            position_size_percent: Share of balance committed per position (10 = 10%)
            leverage: Leverage applied to every position
        """
        if not 0 < position_size_percent <= 100:
            raise ValueError(f"position_size_percent must be in (0, 100], got {position_size_percent}")
        if leverage < 1:
            raise ValueError(f"leverage must be >= 1, got {leverage}")
        self.position_size_percent = float(position_size_percent)
        self.leverage = float(leverage)

    def calculate(
        self,
        balance: float,
        entry_price: float,
        direction: Direction,
        instrument: InstrumentInfo,
    ) -> PositionSizing:
        """
        Size a position.

        Raises:
            ValueError: balance or entry price not positive, or direction invalid
            InsufficientBalanceError: margin for the final quantity exceeds balance
        """
        if not _is_valid_number(balance) or balance <= 0:
            raise ValueError(f"Invalid balance: {balance}")
        if not _is_valid_number(entry_price) or entry_price <= 0:
            raise ValueError(f"Invalid entry price: {entry_price}")
        if not isinstance(direction, Direction):
            raise ValueError(f"Invalid direction: {direction}. Must be LONG or SHORT")

        leverage = self.leverage

        notional = balance * (self.position_size_percent / 100)
        logger.info(
            f"[RISK] Balance: {balance} USDT | "
            f"Position size: {self.position_size_percent}% = {notional:.4f} USDT"
        )

        nominal_margin = notional / leverage
        logger.info(f"[RISK] Leverage: {leverage}x | Required margin: {nominal_margin:.4f} USDT")

        quantity = round_to_step(notional / entry_price, instrument.qty_step)

        if quantity < instrument.min_qty:
            logger.warning(
                f"[RISK] Calculated quantity ({quantity}) < minimum ({instrument.min_qty}). Using minimum."
            )
            quantity = instrument.min_qty
        if quantity > instrument.max_qty:
            logger.warning(
                f"[RISK] Calculated quantity ({quantity}) > maximum ({instrument.max_qty}). Using maximum."
            )
            quantity = instrument.max_qty
        if quantity <= 0:
            raise ValueError(f"Calculated quantity is zero for {notional:.4f} USDT at {entry_price}")

        required_margin = (quantity * entry_price) / leverage
        if required_margin > balance:
            raise InsufficientBalanceError(required_margin, balance)

        logger.info(
            f"[RISK] Position params: {quantity} {direction} @ {entry_price} | "
            f"Size: {notional:.2f} USDT | Margin: {required_margin:.4f} USDT"
        )
        return PositionSizing(
            entry_price=entry_price,
            quantity=quantity,
            position_size_notional=notional,
            leverage=leverage,
            required_margin=required_margin,
            direction=direction,
        )
