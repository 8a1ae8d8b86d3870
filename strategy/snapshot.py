from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from strategy.execution_types import OrderTicket, PositionSnapshot, RequestedOrder


@dataclass
class SymbolState:
    symbol: str
    open_orders: List[OrderTicket] = field(default_factory=list)
    positions: List[PositionSnapshot] = field(default_factory=list)
    correlations: Dict[int, RequestedOrder] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return bool(self.open_orders or self.positions)

    def find_order(self, order_id: int) -> Optional[OrderTicket]:
        for order in self.open_orders:
            if order.order_id == order_id:
                return order
        return None

    def closing_orders(self) -> List[OrderTicket]:
        return [order for order in self.open_orders if order.is_closing]

    def entry_orders(self) -> List[OrderTicket]:
        return [order for order in self.open_orders if not order.is_closing]


class Snapshot:
    """Immutable view of open orders, positions and correlations, grouped per symbol."""

    def __init__(
        self,
        open_orders: Optional[List[OrderTicket]] = None,
        positions: Optional[List[PositionSnapshot]] = None,
        requested_orders: Optional[List[RequestedOrder]] = None,
        generation: int = 0,
    ):
        self.open_orders = list(open_orders or [])
        self.active_positions = list(positions or [])
        self.requested_orders = list(requested_orders or [])
        self.generation = generation
        self._states: Dict[str, SymbolState] = {}
        for order in self.open_orders:
            self._state(order.symbol).open_orders.append(order)
        for position in self.active_positions:
            self._state(position.symbol).positions.append(position)
        for record in self.requested_orders:
            self._state(record.symbol).correlations[record.order_id] = record

    def _state(self, symbol: str) -> SymbolState:
        state = self._states.get(symbol)
        if state is None:
            state = self._states[symbol] = SymbolState(symbol)
        return state

    def for_symbol(self, symbol: str) -> SymbolState:
        return self._states.get(symbol) or SymbolState(symbol)

    def symbol_exists(self, symbol: str) -> bool:
        return self.for_symbol(symbol).is_active

    def active_symbols(self) -> Set[str]:
        return {symbol for symbol, state in self._states.items() if state.is_active}

    def find_order(self, order_id: int, symbol: str) -> Optional[OrderTicket]:
        return self.for_symbol(symbol).find_order(order_id)

    def correlation(self, order_id: int, symbol: str) -> Optional[RequestedOrder]:
        return self.for_symbol(symbol).correlations.get(order_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'openOrders': [order.as_dict() for order in self.open_orders],
            'activePositions': [position.as_dict() for position in self.active_positions],
            'pendingCorrelations': [record.to_dict() for record in self.requested_orders],
        }
