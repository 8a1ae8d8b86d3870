import itertools
import logging
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from config import config
from ingest.binance_rest import BinanceRESTClient
from ingest.websocket_client import WebSocketClient
from strategy.errors import OrderRejected
from strategy.execution_types import (
    OrderEvent,
    OrderRole,
    OrderTicket,
    PositionSnapshot,
    PriceTick,
    SymbolInfo,
)
from strategy.transports.base import ExchangeGateway, OrderEventCallback, PriceTickCallback
from strategy.transports.binance import CLOSING_ORDER_TYPES


logger = logging.getLogger(__name__)


@dataclass
class PaperPosition:
    symbol: str
    qty: float
    entry_price: float

    @property
    def side(self) -> str:
        return "long" if self.qty > 0 else "short"


class PaperExchange(ExchangeGateway):
    """In-memory futures venue: resting stop orders, positions and fills.

    Stop and take-profit orders trigger on mark prices pushed through
    ``push_mark_price``; every fill or cancellation is reported to order-event
    subscribers the way the user data stream would.
    """

    def __init__(
        self,
        symbols: Optional[Iterable[Dict[str, Any]]] = None,
        initial_balance: Optional[float] = None,
        asset: Optional[str] = None,
        metadata_client: Optional[BinanceRESTClient] = None,
        price_feed: Optional[WebSocketClient] = None,
    ) -> None:
        paper_cfg = config.get('paper', {}) or {}
        balance = initial_balance if initial_balance is not None else float(paper_cfg.get('initial_balance', 10000))
        self.asset = asset or config.trading.get('asset', 'USDT')
        self._balances: Dict[str, float] = {self.asset: float(balance)}
        self._symbols: Dict[str, SymbolInfo] = {}
        for payload in symbols or []:
            self.add_symbol(payload)
        self._orders: Dict[int, OrderTicket] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self._leverage: Dict[str, int] = {}
        self._ids = itertools.count(1000)
        self._order_callbacks: List[OrderEventCallback] = []
        self._tick_callbacks: Dict[str, PriceTickCallback] = {}
        self._metadata_client = metadata_client
        self._price_feed = price_feed
        self.last_prices: Dict[str, float] = {}

    def add_symbol(self, payload: Dict[str, Any]) -> SymbolInfo:
        info = SymbolInfo.from_payload(payload)
        self._symbols[info.symbol] = info
        return info

    @property
    def positions(self) -> Mapping[str, PaperPosition]:
        return MappingProxyType(self._positions)

    @property
    def leverage(self) -> Mapping[str, int]:
        return MappingProxyType(self._leverage)

    def balance(self, asset: Optional[str] = None) -> float:
        return self._balances.get(asset or self.asset, 0.0)

    async def fetch_balance(self, asset: str) -> float:
        return self._balances.get(asset, 0.0)

    async def fetch_open_orders(self) -> List[OrderTicket]:
        return list(self._orders.values())

    async def fetch_positions(self) -> List[PositionSnapshot]:
        return [
            PositionSnapshot(
                symbol=pos.symbol,
                position_amt=pos.qty,
                entry_price=pos.entry_price,
                mark_price=self.last_prices.get(pos.symbol),
                leverage=self._leverage.get(pos.symbol),
            )
            for pos in self._positions.values()
        ]

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        info = self._symbols.get(symbol)
        if info is None and self._metadata_client is not None:
            data = await self._metadata_client.get("/fapi/v1/exchangeInfo")
            for payload in (data or {}).get("symbols") or []:
                if payload.get("symbol") == symbol:
                    info = self.add_symbol(payload)
                    break
        return info

    async def place_entry_order(self, symbol: str, side: str, quantity: str, stop_price: str) -> OrderTicket:
        return self._rest_order(symbol, side, "STOP_MARKET", quantity, stop_price, closing=False)

    async def place_closing_order(
        self,
        symbol: str,
        side: str,
        quantity: str,
        stop_price: str,
        role: OrderRole,
    ) -> OrderTicket:
        return self._rest_order(symbol, side, CLOSING_ORDER_TYPES[role], quantity, stop_price, closing=True)

    async def cancel_order(self, symbol: str, order_id: int) -> bool:
        order = self._orders.get(order_id)
        if order is None or order.symbol != symbol:
            return False
        del self._orders[order_id]
        await self._emit(order, "CANCELED")
        return True

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        if symbol not in self._symbols:
            raise OrderRejected(f"set leverage: invalid symbol {symbol}", code=-1121)
        self._leverage[symbol] = int(leverage)

    async def subscribe_order_events(self, callback: OrderEventCallback) -> None:
        self._order_callbacks.append(callback)

    async def subscribe_price_ticks(self, symbol: str, callback: PriceTickCallback) -> bool:
        if symbol in self._tick_callbacks:
            return False
        self._tick_callbacks[symbol] = callback
        if self._price_feed is not None:
            await self._price_feed.subscribe_mark_price(symbol, self._on_feed_tick)
        return True

    async def unsubscribe_price_ticks(self, symbol: str) -> bool:
        if self._tick_callbacks.pop(symbol, None) is None:
            return False
        if self._price_feed is not None:
            await self._price_feed.unsubscribe_mark_price(symbol)
        return True

    async def close(self) -> None:
        if self._price_feed is not None:
            await self._price_feed.stop()
        elif self._metadata_client is not None:
            await self._metadata_client.close()

    async def _on_feed_tick(self, tick: PriceTick) -> None:
        await self.push_mark_price(tick.symbol, tick.price, tick.timestamp)

    async def push_mark_price(self, symbol: str, price: float, timestamp: Optional[int] = None) -> None:
        """Match resting orders against a mark price, then forward the tick."""
        self.last_prices[symbol] = price
        for order in [o for o in self._orders.values() if o.symbol == symbol]:
            if order.order_id in self._orders and self._triggered(order, price):
                await self._fill(order, price)
        callback = self._tick_callbacks.get(symbol)
        if callback is not None:
            await callback(PriceTick(symbol=symbol, price=price, timestamp=timestamp or int(time.time() * 1000)))

    def _rest_order(self, symbol: str, side: str, order_type: str, quantity: str, stop_price: str,
                    closing: bool) -> OrderTicket:
        if symbol not in self._symbols:
            raise OrderRejected(f"invalid symbol {symbol}", code=-1121)
        qty = float(quantity)
        if qty <= 0:
            raise OrderRejected(f"invalid quantity {quantity}", code=-4003)
        ticket = OrderTicket(
            symbol=symbol,
            side=side.upper(),
            type=order_type,
            quantity=qty,
            order_id=next(self._ids),
            status="NEW",
            price=0.0,
            stop_price=float(stop_price),
            close_position=closing,
        )
        self._orders[ticket.order_id] = ticket
        return ticket

    @staticmethod
    def _triggered(order: OrderTicket, price: float) -> bool:
        stop = order.stop_price or 0.0
        buying = order.side == "BUY"
        if order.type.startswith("TAKE_PROFIT"):
            return price <= stop if buying else price >= stop
        return price >= stop if buying else price <= stop

    async def _fill(self, order: OrderTicket, price: float) -> None:
        del self._orders[order.order_id]
        signed = order.quantity if order.side == "BUY" else -order.quantity
        position = self._positions.get(order.symbol)

        if order.is_closing:
            if position is None:
                await self._emit(order, "EXPIRED")
                return
            filled = abs(position.qty) if order.close_position else min(order.quantity, abs(position.qty))
            direction = 1 if position.qty > 0 else -1
            pnl = (price - position.entry_price) * filled * direction
            self._balances[self.asset] = self._balances.get(self.asset, 0.0) + pnl
            position.qty -= filled * direction
            if abs(position.qty) < 1e-12:
                del self._positions[order.symbol]
            logger.info("Paper %s filled for %s at %.8g, PnL=%.2f", order.type, order.symbol, price, pnl)
            await self._emit(order, "FILLED", filled_qty=filled, avg_price=price)
            return

        if position is None:
            self._positions[order.symbol] = PaperPosition(order.symbol, signed, price)
        else:
            total = position.qty + signed
            if total != 0 and (position.qty > 0) == (signed > 0):
                position.entry_price = (position.entry_price * abs(position.qty) + price * abs(signed)) / abs(total)
            position.qty = total
            if abs(position.qty) < 1e-12:
                del self._positions[order.symbol]
        logger.info("Paper entry %s %s %s filled at %.8g", order.side, order.quantity, order.symbol, price)
        await self._emit(order, "FILLED", filled_qty=order.quantity, avg_price=price)

    async def _emit(self, order: OrderTicket, status: str, filled_qty: float = 0.0,
                    avg_price: Optional[float] = None) -> None:
        event = OrderEvent(
            symbol=order.symbol,
            order_id=order.order_id,
            status=status,
            side=order.side,
            order_type=order.type,
            filled_qty=filled_qty,
            last_filled_qty=filled_qty,
            avg_price=avg_price,
            close_position=order.close_position,
            reduce_only=order.reduce_only,
            event_time=int(time.time() * 1000),
        )
        for callback in list(self._order_callbacks):
            await callback(event)
