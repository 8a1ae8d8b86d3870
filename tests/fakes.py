from typing import Any, Dict, List, Optional, Tuple

from orchestration.persistence import CorrelationStore
from strategy.errors import GatewayUnavailable
from strategy.execution_types import OrderRole, OrderTicket
from strategy.simulators.paper import PaperExchange


def symbol_payload(
    symbol: str = 'BTCUSDT',
    step: str = '0.001',
    tick: str = '0.1',
    min_qty: str = '0.001',
    max_qty: str = '1000',
    min_price: str = '0.1',
    max_price: str = '1000000',
) -> Dict[str, Any]:
    """Minimal ``exchangeInfo`` symbol entry with the filters sizing reads."""
    return {
        'symbol': symbol,
        'status': 'TRADING',
        'filters': [
            {'filterType': 'PRICE_FILTER', 'tickSize': tick, 'minPrice': min_price, 'maxPrice': max_price},
            {'filterType': 'LOT_SIZE', 'stepSize': step, 'minQty': min_qty, 'maxQty': max_qty},
            {'filterType': 'MIN_NOTIONAL', 'notional': '5'},
        ],
    }


class MemoryStore(CorrelationStore):
    def __init__(self, data: Optional[Dict[str, Any]] = None, fail_writes: bool = False):
        self.data: Dict[str, Any] = dict(data or {})
        self.fail_writes = fail_writes

    async def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    async def set(self, key: str, value: Any) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.data[key] = value


class RecordingExchange(PaperExchange):
    """Paper venue that keeps an ordered log of every mutating call."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls: List[Tuple] = []
        self.placed: List[OrderTicket] = []
        self.failures: Dict[str, List[Exception]] = {}

    def fail_next(self, name: str, exc: Optional[Exception] = None) -> None:
        """Make the next call to ``name`` raise ``exc`` (GatewayUnavailable by default)."""
        self.failures.setdefault(name, []).append(exc or GatewayUnavailable(f"{name}: venue unreachable"))

    def _maybe_fail(self, name: str) -> None:
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def calls_to(self, name: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        self.calls.append(('set_leverage', symbol, leverage))
        await super().set_leverage(symbol, leverage)

    async def place_entry_order(self, symbol: str, side: str, quantity: str, stop_price: str) -> OrderTicket:
        self.calls.append(('place_entry_order', symbol, side, quantity, stop_price))
        ticket = await super().place_entry_order(symbol, side, quantity, stop_price)
        self.placed.append(ticket)
        return ticket

    async def place_closing_order(self, symbol: str, side: str, quantity: str, stop_price: str,
                                  role: OrderRole) -> OrderTicket:
        self.calls.append(('place_closing_order', symbol, side, quantity, stop_price, role))
        self._maybe_fail('place_closing_order')
        return await super().place_closing_order(symbol, side, quantity, stop_price, role)

    async def cancel_order(self, symbol: str, order_id: int) -> bool:
        self.calls.append(('cancel_order', symbol, order_id))
        self._maybe_fail('cancel_order')
        return await super().cancel_order(symbol, order_id)

    async def fetch_open_orders(self) -> List[OrderTicket]:
        self._maybe_fail('fetch_open_orders')
        return await super().fetch_open_orders()
