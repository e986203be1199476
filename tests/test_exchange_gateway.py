"""
Tests for the Bybit connector (over a fake ccxt client) and the order gateway.
"""

from datetime import datetime, timezone

import ccxt
import pytest

from data.exchange import (
    AuthenticationError,
    BybitConnector,
    DataValidationError,
    ExchangeError,
    TransientExchangeError,
    describe_error,
    from_ccxt_symbol,
    to_ccxt_symbol,
)
from execution.gateway import LEVERAGE_NOT_MODIFIED, OrderGateway, PositionMode
from signals.models import Direction


class DummyCcxtClient:
    """Async ccxt-like client returning canned Bybit responses."""

    def __init__(self):
        self.markets = {
            'BTC/USDT:USDT': {
                'symbol': 'BTC/USDT:USDT',
                'base': 'BTC',
                'quote': 'USDT',
                'active': True,
                'precision': {'amount': 0.001, 'price': 0.1},
                'limits': {'amount': {'min': 0.001, 'max': 100}},
                'info': {
                    'symbol': 'BTCUSDT',
                    'status': 'Trading',
                    'lotSizeFilter': {'qtyStep': '0.001', 'minOrderQty': '0.001', 'maxOrderQty': '1190'},
                    'priceFilter': {'tickSize': '0.10'},
                },
            },
        }
        self.orders = []
        self.leverage_error = None
        self.order_errors = []
        self.position_calls = []
        self.positions = []
        self.trades = []
        self.ticker_calls = 0
        self.ticker_errors = []
        self.closed = False

    async def load_markets(self):
        return self.markets

    async def fetch_time(self):
        return 1709296200000

    async def fetch_balance(self):
        return {'free': {'USDT': 1234.5}, 'USDT': {'free': 1234.5, 'total': 1300.0}}

    async def fetch_ticker(self, symbol):
        self.ticker_calls += 1
        if self.ticker_errors:
            raise self.ticker_errors.pop(0)
        return {'symbol': symbol, 'last': 50123.4}

    async def set_leverage(self, leverage, symbol):
        if self.leverage_error:
            raise self.leverage_error
        return {'retCode': 0}

    async def create_order(self, symbol, order_type, side, amount, price=None, params=None):
        self.orders.append((symbol, order_type, side, amount, price, params))
        if self.order_errors:
            raise self.order_errors.pop(0)
        return {'id': f'bybit-{len(self.orders)}', 'symbol': symbol, 'side': side, 'amount': amount,
                'info': {'orderId': f'bybit-{len(self.orders)}', 'orderLinkId': ''}}

    async def fetch_positions(self, symbols=None, params=None):
        self.position_calls.append((symbols, params))
        return self.positions

    async def fetch_my_trades(self, symbol, since=None, limit=None):
        return self.trades

    async def close(self):
        self.closed = True


@pytest.fixture
def client():
    return DummyCcxtClient()


@pytest.fixture
def connector(client):
    return BybitConnector(api_key='k', secret='s', testnet=True, timeout=2, max_attempts=2, client=client)


def test_symbol_mapping():
    assert to_ccxt_symbol('btcusdt') == 'BTC/USDT:USDT'
    assert to_ccxt_symbol('ETH/USDT') == 'ETH/USDT:USDT'
    assert from_ccxt_symbol('BTC/USDT:USDT') == 'BTCUSDT'
    with pytest.raises(DataValidationError):
        to_ccxt_symbol('BTCUSD')


class TestBybitConnector:

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, connector, client):
        await connector.connect()
        assert connector.is_connected()

        await connector.disconnect()
        await connector.disconnect()
        assert client.closed
        assert not connector.is_connected()

    @pytest.mark.asyncio
    async def test_calls_require_connection(self):
        with pytest.raises(ExchangeError):
            await BybitConnector().fetch_usdt_balance()

    @pytest.mark.asyncio
    async def test_balance(self, connector):
        assert await connector.fetch_usdt_balance() == 1234.5

    @pytest.mark.asyncio
    async def test_instrument_reads_lot_size_filter(self, connector):
        instrument = await connector.fetch_instrument('BTCUSDT')

        assert instrument.symbol == 'BTCUSDT'
        assert instrument.qty_step == 0.001
        assert instrument.min_qty == 0.001
        assert instrument.max_qty == 1190.0
        assert instrument.tick_size == 0.1
        assert instrument.is_tradable

    @pytest.mark.asyncio
    async def test_unknown_instrument(self, connector):
        with pytest.raises(ExchangeError):
            await connector.fetch_instrument('FOOUSDT')

    @pytest.mark.asyncio
    async def test_network_errors_are_retried(self, connector, client):
        client.ticker_errors = [ccxt.NetworkError('bybit connection reset')]

        assert await connector.fetch_last_price('BTCUSDT') == 50123.4
        assert client.ticker_calls == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_surface_as_transient(self, connector, client):
        client.ticker_errors = [ccxt.NetworkError('reset'), ccxt.NetworkError('reset again')]

        with pytest.raises(TransientExchangeError):
            await connector.fetch_last_price('BTCUSDT')

    @pytest.mark.asyncio
    async def test_orders_are_never_retried(self, connector, client):
        client.order_errors = [ccxt.RequestTimeout('timed out')]

        with pytest.raises(TransientExchangeError):
            await connector.create_market_order('BTCUSDT', 'buy', 0.002)
        assert len(client.orders) == 1

    @pytest.mark.asyncio
    async def test_reduce_only_and_position_idx_params(self, connector, client):
        await connector.create_market_order('BTCUSDT', 'sell', 0.002, position_idx=1, reduce_only=True)

        symbol, order_type, side, amount, price, params = client.orders[0]
        assert (symbol, order_type, side, amount, price) == ('BTC/USDT:USDT', 'market', 'sell', 0.002, None)
        assert params == {'positionIdx': 1, 'reduceOnly': True}

    @pytest.mark.asyncio
    async def test_error_translation_keeps_ret_code(self, connector, client):
        client.leverage_error = ccxt.BadRequest('bybit {"retCode":110043,"retMsg":"leverage not modified"}')

        with pytest.raises(ExchangeError) as exc_info:
            await connector.set_leverage('BTCUSDT', 5)

        assert exc_info.value.code == 110043
        assert str(exc_info.value) == "leverage not modified"
        assert describe_error(exc_info.value) == "leverage not modified (code: 110043)"

    @pytest.mark.asyncio
    async def test_authentication_error(self, connector, client):
        client.leverage_error = ccxt.AuthenticationError('bybit {"retCode":10003,"retMsg":"API key is invalid."}')

        with pytest.raises(AuthenticationError):
            await connector.set_leverage('BTCUSDT', 5)

    @pytest.mark.asyncio
    async def test_open_positions_skip_zero_size(self, connector, client):
        client.positions = [
            {'symbol': 'BTC/USDT:USDT', 'contracts': 0.002, 'side': 'long', 'entryPrice': 50000,
             'leverage': 5, 'info': {'symbol': 'BTCUSDT', 'positionIdx': '0'}},
            {'symbol': 'ETH/USDT:USDT', 'contracts': 0, 'side': None, 'info': {'symbol': 'ETHUSDT'}},
        ]

        positions = await connector.fetch_open_positions()

        assert [p.symbol for p in positions] == ['BTCUSDT']
        assert positions[0].size == 0.002
        assert positions[0].side == 'long'
        assert client.position_calls == [(None, {'settleCoin': 'USDT'})]

    @pytest.mark.asyncio
    async def test_fills_sorted_oldest_first(self, connector, client):
        client.trades = [
            {'side': 'sell', 'price': 51000, 'amount': 0.002, 'timestamp': 1709300000000, 'order': 'b'},
            {'side': 'buy', 'price': 50000, 'amount': 0.002, 'timestamp': 1709296200000, 'order': 'a'},
        ]

        fills = await connector.fetch_fills('BTCUSDT', since=datetime(2024, 3, 1, tzinfo=timezone.utc))

        assert [f.order_id for f in fills] == ['a', 'b']
        assert fills[-1].price == 51000.0


class TestOrderGateway:

    @pytest.mark.asyncio
    async def test_leverage_not_modified_is_success(self, connector, client):
        client.leverage_error = ccxt.BadRequest(
            f'bybit {{"retCode":{LEVERAGE_NOT_MODIFIED},"retMsg":"leverage not modified"}}'
        )
        gateway = OrderGateway(connector)

        assert await gateway.set_leverage('BTCUSDT', 5) is True
        assert await gateway.set_leverage('BTCUSDT', 5) is True

    @pytest.mark.asyncio
    async def test_other_leverage_errors_propagate(self, connector, client):
        client.leverage_error = ccxt.BadRequest('bybit {"retCode":110012,"retMsg":"insufficient available balance"}')
        gateway = OrderGateway(connector)

        with pytest.raises(ExchangeError) as exc_info:
            await gateway.set_leverage('BTCUSDT', 5)
        assert exc_info.value.code == 110012

    @pytest.mark.asyncio
    async def test_close_is_reduce_only(self, connector, client):
        gateway = OrderGateway(connector)

        result = await gateway.close_market_order('BTCUSDT', 'sell', 0.002)

        assert result.reduce_only
        assert result.order_id == 'bybit-1'
        assert client.orders[0][5]['reduceOnly'] is True

    @pytest.mark.asyncio
    async def test_open_is_not_reduce_only(self, connector, client):
        gateway = OrderGateway(connector, PositionMode.HEDGE)

        result = await gateway.open_market_order('BTCUSDT', 'buy', 0.002, position_idx=1)

        assert not result.reduce_only
        assert client.orders[0][5] == {'positionIdx': 1}

    @pytest.mark.asyncio
    async def test_response_without_order_id_is_an_error(self, connector, client):
        async def create_order(*args, **kwargs):
            return {'info': {}}

        client.create_order = create_order
        gateway = OrderGateway(connector)

        with pytest.raises(ExchangeError):
            await gateway.open_market_order('BTCUSDT', 'buy', 0.002)

    @pytest.mark.asyncio
    async def test_last_fill_price(self, connector, client):
        gateway = OrderGateway(connector)
        assert await gateway.get_last_fill_price('BTCUSDT') is None

        client.trades = [{'side': 'sell', 'price': 51000, 'amount': 0.002, 'timestamp': 1709300000000}]
        assert await gateway.get_last_fill_price('BTCUSDT') == 51000.0

    def test_position_idx_for(self, connector):
        assert OrderGateway(connector).position_idx_for(Direction.SHORT) == 0
        hedge = OrderGateway(connector, PositionMode.HEDGE)
        assert hedge.position_idx_for(Direction.LONG) == 1
        assert hedge.position_idx_for(Direction.SHORT) == 2
