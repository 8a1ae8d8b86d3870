import asyncio
import sys

import pytest

sys.path.insert(0, '.')

from ingest.binance_rest import BinanceAPIError
from ingest.websocket_client import WebSocketClient
from strategy.errors import GatewayUnavailable, OrderRejected
from strategy.execution_types import OrderEvent, OrderRole
from strategy.transports.binance import BinanceTransport
from tests.fakes import symbol_payload


class FakeRest:
    """Canned responses keyed by (method, path); exceptions are raised."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.requests = []
        self.closed = False

    async def _respond(self, method, path, params, signed):
        self.requests.append((method, path, dict(params or {}), signed))
        response = self.responses.get((method, path))
        if isinstance(response, Exception):
            raise response
        return response

    async def get(self, path, params=None, signed=False):
        return await self._respond('GET', path, params, signed)

    async def post(self, path, params=None, signed=False):
        return await self._respond('POST', path, params, signed)

    async def delete(self, path, params=None, signed=False):
        return await self._respond('DELETE', path, params, signed)

    async def put(self, path, params=None, signed=False):
        return await self._respond('PUT', path, params, signed)

    async def close(self):
        self.closed = True


class FakeStreams:
    def __init__(self):
        self.order_callback = None
        self.marks = {}
        self.stopped = False

    async def subscribe_user_orders(self, callback):
        self.order_callback = callback

    async def subscribe_mark_price(self, symbol, callback):
        if symbol in self.marks:
            return False
        self.marks[symbol] = callback
        return True

    async def unsubscribe_mark_price(self, symbol):
        return self.marks.pop(symbol, None) is not None

    async def stop(self):
        self.stopped = True


ORDER_RESPONSE = {
    'orderId': 555,
    'symbol': 'BTCUSDT',
    'status': 'NEW',
    'side': 'BUY',
    'type': 'STOP_MARKET',
    'origType': 'STOP_MARKET',
    'origQty': '20.000',
    'price': '0',
    'stopPrice': '110.0',
    'closePosition': False,
    'reduceOnly': False,
    'clientOrderId': 'abc',
}


def _transport(responses=None, closing_mode='close_position'):
    rest = FakeRest(responses)
    return BinanceTransport(rest=rest, streams=FakeStreams(), closing_mode=closing_mode), rest


def test_account_snapshot_parsing():
    responses = {
        ('GET', '/fapi/v2/account'): {'assets': [
            {'asset': 'BNB', 'walletBalance': '1.5'},
            {'asset': 'USDT', 'walletBalance': '10000.00'},
        ]},
        ('GET', '/fapi/v1/openOrders'): [
            ORDER_RESPONSE,
            dict(ORDER_RESPONSE, orderId=556, side='SELL', type='TAKE_PROFIT_MARKET',
                 origType='TAKE_PROFIT_MARKET', origQty='0', stopPrice='130.0', closePosition=True),
            {'symbol': 'BROKEN'},
        ],
        ('GET', '/fapi/v2/positionRisk'): [
            {'symbol': 'BTCUSDT', 'positionAmt': '0.000', 'entryPrice': '0.0'},
            {'symbol': 'ETHUSDT', 'positionAmt': '-1.250', 'entryPrice': '2000.5', 'markPrice': '1990.0',
             'leverage': '3', 'unRealizedProfit': '13.125'},
        ],
        ('GET', '/fapi/v1/exchangeInfo'): {'symbols': [symbol_payload('BTCUSDT'), symbol_payload('ETHUSDT')]},
    }
    transport, rest = _transport(responses)

    async def _run():
        assert await transport.fetch_balance('USDT') == 10000.0
        assert await transport.fetch_balance('BUSD') == 0.0

        orders = await transport.fetch_open_orders()
        assert [o.order_id for o in orders] == [555, 556]
        assert orders[0].role is OrderRole.ENTRY
        assert orders[1].role is OrderRole.TAKE_PROFIT
        assert orders[1].is_closing

        positions = await transport.fetch_positions()
        assert len(positions) == 1
        assert positions[0].symbol == 'ETHUSDT'
        assert positions[0].side == 'SHORT'
        assert positions[0].leverage == 3

        info = await transport.fetch_symbol_info('ETHUSDT')
        assert info.symbol == 'ETHUSDT'
        assert info.price_tick == 0.1
        assert await transport.fetch_symbol_info('DOGEUSDT') is None

    asyncio.run(_run())
    assert all(signed for method, path, _, signed in rest.requests if path != '/fapi/v1/exchangeInfo')


def test_entry_and_closing_order_params():
    responses = {('POST', '/fapi/v1/order'): ORDER_RESPONSE}

    async def _run():
        transport, rest = _transport(responses)
        ticket = await transport.place_entry_order('BTCUSDT', 'buy', '20.000', '110.0')
        assert ticket.order_id == 555
        _, _, params, signed = rest.requests[-1]
        assert signed
        assert params['type'] == 'STOP_MARKET'
        assert params['side'] == 'BUY'
        assert (params['quantity'], params['stopPrice']) == ('20.000', '110.0')

        await transport.place_closing_order('BTCUSDT', 'SELL', '20.000', '130.0', OrderRole.TAKE_PROFIT)
        _, _, params, _ = rest.requests[-1]
        assert params['type'] == 'TAKE_PROFIT_MARKET'
        assert params['closePosition'] == 'true'
        assert 'quantity' not in params
        assert 'reduceOnly' not in params

        transport, rest = _transport(responses, closing_mode='reduce_only')
        await transport.place_closing_order('BTCUSDT', 'SELL', '20.000', '100.0', OrderRole.STOP_LOSS)
        _, _, params, _ = rest.requests[-1]
        assert params['type'] == 'STOP_MARKET'
        assert params['reduceOnly'] == 'true'
        assert params['quantity'] == '20.000'
        assert 'closePosition' not in params

    asyncio.run(_run())


def test_error_mapping():
    async def _run():
        transport, _ = _transport({('DELETE', '/fapi/v1/order'): BinanceAPIError(400, -2011, 'Unknown order sent.', '')})
        assert await transport.cancel_order('BTCUSDT', 1) is False

        transport, _ = _transport({('DELETE', '/fapi/v1/order'): None})
        assert await transport.cancel_order('BTCUSDT', 1) is True

        transport, _ = _transport({('POST', '/fapi/v1/order'): BinanceAPIError(400, -2021, 'Order would immediately trigger.', '')})
        with pytest.raises(OrderRejected) as exc_info:
            await transport.place_entry_order('BTCUSDT', 'BUY', '1', '100')
        assert exc_info.value.code == -2021

        transport, _ = _transport({('POST', '/fapi/v1/leverage'): BinanceAPIError(401, -2015, 'Invalid API-key', '')})
        with pytest.raises(GatewayUnavailable):
            await transport.set_leverage('BTCUSDT', 3)

        transport, _ = _transport({('GET', '/fapi/v1/openOrders'): BinanceAPIError(503, None, None, 'busy')})
        with pytest.raises(GatewayUnavailable):
            await transport.fetch_open_orders()

        transport, _ = _transport({('GET', '/fapi/v2/account'): RuntimeError('Binance API key/secret required')})
        with pytest.raises(GatewayUnavailable):
            await transport.fetch_balance('USDT')

    asyncio.run(_run())


def test_api_error_flags():
    assert BinanceAPIError(401, None, None, '').is_auth_error
    assert BinanceAPIError(400, -1022, 'Signature invalid', '').is_auth_error
    assert BinanceAPIError(400, -2011, 'Unknown order', '').is_unknown_order
    assert not BinanceAPIError(400, -1121, 'Invalid symbol', '').is_auth_error


def test_order_update_parsing():
    payload = {
        's': 'BTCUSDT', 'i': 8886774, 'X': 'FILLED', 'S': 'SELL', 'o': 'MARKET', 'ot': 'TAKE_PROFIT_MARKET',
        'z': '20.000', 'l': '5.000', 'ap': '130.0', 'cp': True, 'R': False, 'T': 1700000000000,
    }
    event = OrderEvent.from_stream(payload, event_time=1700000000001)
    assert event.order_id == 8886774
    assert event.status == 'FILLED'
    assert event.order_type == 'TAKE_PROFIT_MARKET'
    assert event.filled_qty == 20.0
    assert event.last_filled_qty == 5.0
    assert event.avg_price == 130.0
    assert event.is_closing
    assert event.event_time == 1700000000001

    new_event = OrderEvent.from_stream({'s': 'BTCUSDT', 'i': '1', 'X': 'NEW', 'ap': '0'})
    assert new_event.avg_price is None
    assert not new_event.is_closing


def test_user_stream_dispatch():
    async def _run():
        client = WebSocketClient(rest=FakeRest(), ws_base_url='wss://example.test', reconnect_backoff=[1, 2])
        received = []

        async def on_order(event):
            received.append(event)

        client._order_callback = on_order
        await client._handle_user_message({'e': 'ACCOUNT_UPDATE'})
        await client._handle_user_message({
            'e': 'ORDER_TRADE_UPDATE', 'E': 5,
            'o': {'s': 'BTCUSDT', 'i': 9, 'X': 'CANCELED', 'S': 'BUY', 'ot': 'STOP_MARKET', 'z': '0'},
        })
        assert [(e.order_id, e.status, e.event_time) for e in received] == [(9, 'CANCELED', 5)]

        client._listen_key = 'abc'
        with pytest.raises(ConnectionError):
            await client._handle_user_message({'e': 'listenKeyExpired'})
        assert client._listen_key is None

        delays = [client.backoff_delay(attempt) for attempt in (0, 1, 7)]
        assert 1 <= delays[0] <= 1.5
        assert 2 <= delays[1] <= 2.5
        assert 2 <= delays[2] <= 2.5

    asyncio.run(_run())
