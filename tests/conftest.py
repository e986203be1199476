"""
Pytest configuration file.
Adds project root to Python path and provides in-memory exchange/Telegram fakes.
"""

import sys
from pathlib import Path

import pytest

# Add project root to sys.path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from core.lifecycle import LifecycleOrchestrator  # noqa: E402
from core.state import RunningStatistics  # noqa: E402
from data.exchange import ExchangeError, ExchangePosition, InstrumentInfo  # noqa: E402
from execution.gateway import OrderResult  # noqa: E402
from execution.position_tracker import PositionTracker  # noqa: E402
from monitoring.notifier import Notifier  # noqa: E402
from risk.position_sizing import PositionSizer  # noqa: E402
from signals.models import Direction  # noqa: E402
from signals.trading_hours import TradingHours  # noqa: E402
from signals.validator import SignalValidator  # noqa: E402


class DummyGateway:
    """In-memory stand-in for OrderGateway that records every order."""

    def __init__(self, balance=1000.0, prices=None, instruments=None, hedge=False):
        self.balance = balance
        self.prices = dict(prices or {'BTCUSDT': 50000.0, 'ETHUSDT': 2500.0})
        self.instruments = dict(instruments or {
            'BTCUSDT': InstrumentInfo(symbol='BTCUSDT', qty_step=0.001, min_qty=0.001, max_qty=100.0),
            'ETHUSDT': InstrumentInfo(symbol='ETHUSDT', qty_step=0.01, min_qty=0.01, max_qty=1000.0),
        })
        self.hedge = hedge
        self.exchange_positions = []
        self.fill_prices = {}
        self.leverage_calls = []
        self.open_orders = []
        self.close_orders = []
        self.list_calls = 0
        self.balance_error = None
        self.price_error = None
        self.list_error = None
        self.order_error = None
        self._next_id = 1

    def position_idx_for(self, direction):
        if self.hedge:
            return 1 if direction is Direction.LONG else 2
        return 0

    def _order_id(self):
        order_id = f"order-{self._next_id}"
        self._next_id += 1
        return order_id

    async def get_balance(self):
        if self.balance_error:
            raise self.balance_error
        return self.balance

    async def get_current_price(self, symbol):
        if self.price_error:
            raise self.price_error
        return self.prices[symbol]

    async def get_instrument(self, symbol):
        if symbol not in self.instruments:
            raise ExchangeError(f"Symbol {symbol} not found")
        return self.instruments[symbol]

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append((symbol, leverage))
        return True

    async def open_market_order(self, symbol, side, quantity, position_idx=0):
        if self.order_error:
            raise self.order_error
        result = OrderResult(order_id=self._order_id(), symbol=symbol, side=side, quantity=quantity)
        self.open_orders.append((symbol, side, quantity, position_idx))
        return result

    async def close_market_order(self, symbol, side, quantity, position_idx=0):
        if self.order_error:
            raise self.order_error
        result = OrderResult(order_id=self._order_id(), symbol=symbol, side=side, quantity=quantity,
                             reduce_only=True)
        self.close_orders.append((symbol, side, quantity, position_idx))
        return result

    async def list_open_positions(self):
        self.list_calls += 1
        if self.list_error:
            raise self.list_error
        return list(self.exchange_positions)

    async def get_last_fill_price(self, symbol, since=None):
        return self.fill_prices.get(symbol)

    def reflect_open(self, symbol, side, size, entry_price, position_idx=0):
        """Make the fake exchange report an open position."""
        self.exchange_positions.append(ExchangePosition(
            symbol=symbol, side=side, size=size, entry_price=entry_price, position_idx=position_idx,
        ))

    def reflect_closed(self, symbol):
        self.exchange_positions = [p for p in self.exchange_positions if p.symbol != symbol]


class DummyTransport:
    """Records outgoing Telegram messages."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_message(self, chat_id, text):
        if self.fail:
            raise RuntimeError("telegram unavailable")
        self.sent.append((chat_id, text))

    def titles(self):
        return [text.splitlines()[0] for _, text in self.sent]


@pytest.fixture
def statistics():
    return RunningStatistics(start_balance=1000.0)


@pytest.fixture
def gateway():
    return DummyGateway()


@pytest.fixture
def transport():
    return DummyTransport()


@pytest.fixture
def notifier(transport):
    return Notifier(transport, chat_id="-100123")


@pytest.fixture
def tracker(gateway, statistics, notifier):
    return PositionTracker(gateway, statistics, notifier)


@pytest.fixture
def make_validator(gateway, tracker, statistics):
    def _make(allowed_symbols=('BTCUSDT', 'ETHUSDT'), trading_hours=None, max_open_positions=3,
              max_daily_trades=10):
        return SignalValidator(
            allowed_symbols=allowed_symbols,
            trading_hours=trading_hours or TradingHours(0, 24),
            max_open_positions=max_open_positions,
            max_daily_trades=max_daily_trades,
            tracker=tracker,
            gateway=gateway,
            statistics=statistics,
        )
    return _make


@pytest.fixture
def make_orchestrator(gateway, tracker, statistics, notifier, make_validator):
    def _make(dry_run=False, trading_hours=None, **validator_kwargs):
        hours = trading_hours or TradingHours(0, 24)
        notifier.dry_run = dry_run
        return LifecycleOrchestrator(
            validator=make_validator(trading_hours=hours, **validator_kwargs),
            sizer=PositionSizer(position_size_percent=10, leverage=5),
            gateway=gateway,
            tracker=tracker,
            statistics=statistics,
            notifier=notifier,
            trading_hours=hours,
            dry_run=dry_run,
        )
    return _make
