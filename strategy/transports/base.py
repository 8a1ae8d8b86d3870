from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional

from strategy.execution_types import OrderEvent, OrderRole, OrderTicket, PositionSnapshot, PriceTick, SymbolInfo


OrderEventCallback = Callable[[OrderEvent], Awaitable[None]]
PriceTickCallback = Callable[[PriceTick], Awaitable[None]]


class ExchangeGateway(ABC):
    """Everything the lifecycle coordinator needs from a futures venue.

    Calls raise ``GatewayUnavailable`` on transport/auth failure and
    ``OrderRejected`` when the venue refuses a request.
    """

    @abstractmethod
    async def fetch_balance(self, asset: str) -> float:
        ...

    @abstractmethod
    async def fetch_open_orders(self) -> List[OrderTicket]:
        ...

    @abstractmethod
    async def fetch_positions(self) -> List[PositionSnapshot]:
        ...

    @abstractmethod
    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        ...

    @abstractmethod
    async def place_entry_order(self, symbol: str, side: str, quantity: str, stop_price: str) -> OrderTicket:
        ...

    @abstractmethod
    async def place_closing_order(
        self,
        symbol: str,
        side: str,
        quantity: str,
        stop_price: str,
        role: OrderRole,
    ) -> OrderTicket:
        ...

    @abstractmethod
    async def cancel_order(self, symbol: str, order_id: int) -> bool:
        """Return False when the venue no longer knows the order."""

    @abstractmethod
    async def set_leverage(self, symbol: str, leverage: int) -> None:
        ...

    @abstractmethod
    async def subscribe_order_events(self, callback: OrderEventCallback) -> None:
        ...

    @abstractmethod
    async def subscribe_price_ticks(self, symbol: str, callback: PriceTickCallback) -> bool:
        """Return False when the symbol is already subscribed."""

    @abstractmethod
    async def unsubscribe_price_ticks(self, symbol: str) -> bool:
        ...

    async def close(self) -> None:
        return None
