import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import config
from ingest.binance_rest import BinanceAPIError, BinanceRESTClient
from ingest.websocket_client import WebSocketClient
from strategy.errors import GatewayUnavailable, OrderRejected
from strategy.execution_types import OrderRole, OrderTicket, PositionSnapshot, SymbolInfo
from strategy.transports.base import ExchangeGateway, OrderEventCallback, PriceTickCallback


__all__ = ["BinanceTransport", "BinanceAPIError"]

logger = logging.getLogger(__name__)

CLOSING_ORDER_TYPES = {
    OrderRole.STOP_LOSS: "STOP_MARKET",
    OrderRole.TAKE_PROFIT: "TAKE_PROFIT_MARKET",
}


class BinanceTransport(ExchangeGateway):
    """Binance USDⓈ-M adapter: typed responses, error mapping, push feeds."""

    def __init__(
        self,
        rest: Optional[BinanceRESTClient] = None,
        streams: Optional[WebSocketClient] = None,
        closing_mode: Optional[str] = None,
    ) -> None:
        self._rest = rest or BinanceRESTClient()
        self._streams = streams or WebSocketClient(rest=self._rest)
        self.closing_mode = (closing_mode or config.exchange.get("closing_mode", "close_position")).lower()
        self._lock = asyncio.Lock()

    @staticmethod
    def _map_error(action: str, exc: Exception) -> Exception:
        if isinstance(exc, BinanceAPIError) and not (exc.is_auth_error or exc.status >= 500):
            return OrderRejected(f"{action}: {exc.msg or exc}", code=exc.code)
        return GatewayUnavailable(f"{action}: {exc}", cause=exc)

    async def _call(self, action: str, coro) -> Any:
        try:
            return await coro
        except (BinanceAPIError, aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as exc:
            raise self._map_error(action, exc) from exc

    async def fetch_balance(self, asset: str) -> float:
        data = await self._call("fetch balance", self._rest.get("/fapi/v2/account", signed=True))
        if not isinstance(data, dict):
            return 0.0
        for entry in data.get("assets") or []:
            if entry.get("asset") != asset:
                continue
            return self._as_float(entry.get("walletBalance")) or 0.0
        return 0.0

    async def fetch_open_orders(self) -> List[OrderTicket]:
        payload = await self._call("fetch open orders", self._rest.get("/fapi/v1/openOrders", signed=True))
        if not isinstance(payload, list):
            return []
        orders: List[OrderTicket] = []
        for item in payload:
            ticket = self._parse_order(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def fetch_positions(self) -> List[PositionSnapshot]:
        payload = await self._call("fetch positions", self._rest.get("/fapi/v2/positionRisk", signed=True))
        if not isinstance(payload, list):
            return []
        positions: List[PositionSnapshot] = []
        for item in payload:
            amount = self._as_float(item.get("positionAmt")) or 0.0
            if amount == 0:
                continue
            positions.append(
                PositionSnapshot(
                    symbol=item.get("symbol", ""),
                    position_amt=amount,
                    entry_price=self._as_float(item.get("entryPrice")) or 0.0,
                    mark_price=self._as_float(item.get("markPrice")),
                    leverage=self._as_int(item.get("leverage")),
                    unrealized_pnl=self._as_float(item.get("unRealizedProfit")) or 0.0,
                    raw=item,
                )
            )
        return positions

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        data = await self._call("fetch exchange info", self._rest.get("/fapi/v1/exchangeInfo"))
        if not isinstance(data, dict):
            return None
        for payload in data.get("symbols") or []:
            if payload.get("symbol") == symbol:
                return SymbolInfo.from_payload(payload)
        return None

    async def place_entry_order(self, symbol: str, side: str, quantity: str, stop_price: str) -> OrderTicket:
        params = {
            "symbol": symbol,
            "side": side.upper(),
            "type": "STOP_MARKET",
            "quantity": quantity,
            "stopPrice": stop_price,
            "newOrderRespType": "RESULT",
        }
        data = await self._call("place entry order", self._rest.post("/fapi/v1/order", params=params, signed=True))
        ticket = self._parse_order(data)
        if ticket is None:
            raise GatewayUnavailable(f"place entry order: unexpected response {data!r}")
        logger.info("Stop market order placed: %s %s %s at %s - orderId %s", side, quantity, symbol, stop_price, ticket.order_id)
        return ticket

    async def place_closing_order(
        self,
        symbol: str,
        side: str,
        quantity: str,
        stop_price: str,
        role: OrderRole,
    ) -> OrderTicket:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": CLOSING_ORDER_TYPES[role],
            "stopPrice": stop_price,
            "workingType": "MARK_PRICE",
            "newOrderRespType": "RESULT",
        }
        if self.closing_mode == "reduce_only":
            params["quantity"] = quantity
            params["reduceOnly"] = "true"
        else:
            # close-all orders must not carry a quantity
            params["closePosition"] = "true"
        data = await self._call(
            f"place {role.value.lower()} order",
            self._rest.post("/fapi/v1/order", params=params, signed=True),
        )
        ticket = self._parse_order(data)
        if ticket is None:
            raise GatewayUnavailable(f"place {role.value.lower()} order: unexpected response {data!r}")
        logger.info("%s order placed: %s %s at %s - orderId %s", role.value, quantity, symbol, stop_price, ticket.order_id)
        return ticket

    async def cancel_order(self, symbol: str, order_id: int) -> bool:
        try:
            await self._rest.delete("/fapi/v1/order", params={"symbol": symbol, "orderId": order_id}, signed=True)
        except BinanceAPIError as exc:
            if exc.is_unknown_order:
                logger.info("Cancel of %s %s: order already closed", symbol, order_id)
                return False
            raise self._map_error(f"cancel order {order_id}", exc) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError, RuntimeError) as exc:
            raise self._map_error(f"cancel order {order_id}", exc) from exc
        logger.info("Order cancelled: %s orderId %s", symbol, order_id)
        return True

    async def set_leverage(self, symbol: str, leverage: int) -> None:
        params = {"symbol": symbol, "leverage": int(leverage)}
        await self._call("set leverage", self._rest.post("/fapi/v1/leverage", params=params, signed=True))
        logger.info("Leverage set for %s: %s", symbol, leverage)

    async def subscribe_order_events(self, callback: OrderEventCallback) -> None:
        await self._streams.subscribe_user_orders(callback)

    async def subscribe_price_ticks(self, symbol: str, callback: PriceTickCallback) -> bool:
        return await self._streams.subscribe_mark_price(symbol, callback)

    async def unsubscribe_price_ticks(self, symbol: str) -> bool:
        return await self._streams.unsubscribe_mark_price(symbol)

    async def close(self) -> None:
        async with self._lock:
            await self._streams.stop()
            await self._rest.close()

    def _parse_order(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        order_id = self._as_int(payload.get("orderId"))
        if order_id is None:
            return None
        qty_val = payload.get("origQty") or payload.get("quantity")
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("origType") or payload.get("type") or "",
            quantity=self._as_float(qty_val) or 0.0,
            order_id=order_id,
            status=payload.get("status"),
            price=self._as_float(payload.get("price")),
            stop_price=self._as_float(payload.get("stopPrice")),
            close_position=self._as_bool(payload.get("closePosition")),
            reduce_only=self._as_bool(payload.get("reduceOnly")),
            client_order_id=payload.get("clientOrderId"),
            raw=payload,
        )

    @staticmethod
    def _as_bool(value: Any) -> bool:
        if isinstance(value, str):
            return value.lower() == "true"
        return bool(value)

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
