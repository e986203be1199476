"""
Tests for fixed-fraction position sizing.
"""

import random
from decimal import Decimal

import pytest

from data.exchange import InstrumentInfo
from risk.position_sizing import (
    InsufficientBalanceError,
    PositionSizer,
    has_sufficient_balance,
    round_to_step,
)
from signals.models import Direction


BTC = InstrumentInfo(symbol='BTCUSDT', qty_step=0.001, min_qty=0.001, max_qty=100.0)


class TestPositionSizer:

    def test_reference_sizing(self):
        sizer = PositionSizer(position_size_percent=10, leverage=5)
        sizing = sizer.calculate(balance=1000, entry_price=50000, direction=Direction.LONG, instrument=BTC)

        assert sizing.position_size_notional == pytest.approx(100.0)
        assert sizing.quantity == pytest.approx(0.002)
        assert sizing.required_margin == pytest.approx(20.0)
        assert sizing.required_margin <= 1000
        assert sizing.leverage == 5
        assert sizing.direction is Direction.LONG

    def test_rounds_to_nearest_step_not_down(self):
        sizer = PositionSizer(position_size_percent=10, leverage=5)
        # 100 / 40000 = 0.0025 -> rounds half up to 0.003
        sizing = sizer.calculate(1000, 40000, Direction.SHORT, BTC)

        assert sizing.quantity == pytest.approx(0.003)

    def test_clamps_to_minimum_quantity(self, caplog):
        instrument = InstrumentInfo(symbol='BTCUSDT', qty_step=0.001, min_qty=0.01, max_qty=100.0)
        sizer = PositionSizer(position_size_percent=10, leverage=10)

        sizing = sizer.calculate(1000, 50000, Direction.LONG, instrument)

        assert sizing.quantity == pytest.approx(0.01)
        assert sizing.required_margin == pytest.approx(50.0)
        assert "Using minimum" in caplog.text

    def test_clamps_to_maximum_quantity(self):
        instrument = InstrumentInfo(symbol='XUSDT', qty_step=1, min_qty=1, max_qty=50)
        sizer = PositionSizer(position_size_percent=50, leverage=2)

        sizing = sizer.calculate(10000, 1.0, Direction.LONG, instrument)

        assert sizing.quantity == 50

    def test_minimum_clamp_can_exceed_balance(self):
        instrument = InstrumentInfo(symbol='BTCUSDT', qty_step=0.001, min_qty=1.0, max_qty=100.0)
        sizer = PositionSizer(position_size_percent=10, leverage=1)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            sizer.calculate(1000, 50000, Direction.LONG, instrument)

        assert exc_info.value.required_margin == pytest.approx(50000.0)
        assert exc_info.value.balance == 1000

    @pytest.mark.parametrize("balance,price,direction", [
        (0, 50000, Direction.LONG),
        (-5, 50000, Direction.LONG),
        (1000, 0, Direction.LONG),
        (1000, float('nan'), Direction.LONG),
        (1000, 50000, "UP"),
    ])
    def test_invalid_inputs(self, balance, price, direction):
        sizer = PositionSizer(position_size_percent=10, leverage=5)

        with pytest.raises(ValueError):
            sizer.calculate(balance, price, direction, BTC)

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            PositionSizer(position_size_percent=0, leverage=5)
        with pytest.raises(ValueError):
            PositionSizer(position_size_percent=150, leverage=5)
        with pytest.raises(ValueError):
            PositionSizer(position_size_percent=10, leverage=0.5)

    def test_sizing_bound_holds_for_random_inputs(self):
        rng = random.Random(7)
        for _ in range(300):
            balance = rng.uniform(10, 100000)
            price = rng.uniform(0.01, 100000)
            step = rng.choice([1, 0.1, 0.01, 0.001, 0.0001])
            leverage = rng.choice([1, 2, 5, 10, 25])
            percent = rng.uniform(1, 100)
            instrument = InstrumentInfo(symbol='XUSDT', qty_step=step, min_qty=0.0, max_qty=float('inf'))
            sizer = PositionSizer(percent, leverage)
            try:
                sizing = sizer.calculate(balance, price, Direction.LONG, instrument)
            except ValueError:
                # zero quantity or margin above balance
                continue

            assert sizing.quantity * price <= balance * leverage * (1 + 1e-9)
            steps = Decimal(str(sizing.quantity)) / Decimal(str(step))
            assert steps == steps.to_integral_value()


def test_round_to_step():
    assert round_to_step(0.0024, 0.001) == pytest.approx(0.002)
    assert round_to_step(0.0025, 0.001) == pytest.approx(0.003)
    assert round_to_step(12.34, 0.1) == pytest.approx(12.3)
    assert round_to_step(7.0, 0) == 7.0


def test_has_sufficient_balance():
    assert has_sufficient_balance(100, 20)
    assert has_sufficient_balance(20, 20)
    assert not has_sufficient_balance(19.99, 20)
    assert not has_sufficient_balance(float('nan'), 20)
