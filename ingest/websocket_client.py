import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from api.metrics import metrics
from config import config
from monitoring.async_utils import cancel_and_wait, log_task_failure
from strategy.execution_types import OrderEvent, PriceTick
from .binance_rest import BinanceAPIError, BinanceRESTClient


logger = logging.getLogger(__name__)

OrderCallback = Callable[[OrderEvent], Awaitable[None]]
TickCallback = Callable[[PriceTick], Awaitable[None]]
MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]

LISTEN_KEY_MISSING = -1125


class WebSocketClient:
    """User-data and mark-price push feeds with supervised reconnects."""

    def __init__(
        self,
        rest: Optional[BinanceRESTClient] = None,
        ws_base_url: Optional[str] = None,
        reconnect_backoff: Optional[List[float]] = None,
        listen_key_keepalive_s: Optional[float] = None,
        stream_stale_s: Optional[float] = None,
    ):
        ws_cfg = config.websocket
        self.ws_base_url = (ws_base_url or config.exchange.get("ws_base_url") or "wss://fstream.binance.com").rstrip("/")
        self.reconnect_backoff = list(reconnect_backoff or ws_cfg.get("reconnect_backoff", [1, 2, 4, 8, 16, 30]))
        self.keepalive_s = float(listen_key_keepalive_s or ws_cfg.get("listen_key_keepalive_s", 30 * 60))
        self.stream_stale_s = float(stream_stale_s or ws_cfg.get("stream_stale_s", 60))

        self._rest = rest or BinanceRESTClient()
        self._listen_key: Optional[str] = None
        self._order_callback: Optional[OrderCallback] = None
        self._user_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._mark_tasks: Dict[str, asyncio.Task] = {}
        self.running = True

    def backoff_delay(self, attempt: int) -> float:
        index = min(max(attempt, 0), len(self.reconnect_backoff) - 1)
        return float(self.reconnect_backoff[index]) + random.uniform(0, 0.5)

    async def _run_stream(
        self,
        name: str,
        url_factory: Callable[[], Awaitable[str]],
        on_message: MessageHandler,
        stale_after: Optional[float],
    ) -> None:
        attempt = 0
        while self.running:
            try:
                url = await url_factory()
                async with websockets.connect(url, ping_interval=20) as ws:
                    logger.info("%s stream connected", name)
                    attempt = 0
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=stale_after)
                        except asyncio.TimeoutError:
                            logger.warning("%s stream stale; reconnecting", name)
                            raise
                        try:
                            data = json.loads(raw)
                        except ValueError:
                            logger.error("%s stream sent unparsable frame: %.200s", name, raw)
                            continue
                        await on_message(data)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("%s stream error: %s", name, exc)

            if not self.running:
                break
            delay = self.backoff_delay(attempt)
            attempt += 1
            metrics.record_reconnect(name)
            logger.info("Reconnecting %s stream in %.1fs (attempt %s)", name, delay, attempt)
            await asyncio.sleep(delay)

    async def _ensure_listen_key(self) -> str:
        if self._listen_key:
            return self._listen_key
        data = await self._rest.post("/fapi/v1/listenKey")
        if not isinstance(data, dict) or not data.get("listenKey"):
            raise RuntimeError(f"Unexpected listenKey response: {data!r}")
        self._listen_key = data["listenKey"]
        logger.info("Obtained listenKey for user data stream")
        return self._listen_key

    async def _user_stream_url(self) -> str:
        listen_key = await self._ensure_listen_key()
        return f"{self.ws_base_url}/ws/{listen_key}"

    async def _keepalive_loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.keepalive_s)
                if not self._listen_key:
                    continue
                await self._rest.put("/fapi/v1/listenKey", params={"listenKey": self._listen_key})
                logger.debug("listenKey keep-alive sent")
            except asyncio.CancelledError:
                break
            except BinanceAPIError as exc:
                logger.error("listenKey keep-alive failed: %s", exc)
                if exc.code == LISTEN_KEY_MISSING:
                    # next reconnect mints a fresh key
                    self._listen_key = None
            except Exception as exc:
                logger.error("listenKey keep-alive failed: %s", exc)

    async def _handle_user_message(self, data: Dict[str, Any]) -> None:
        event = data.get("data") if "data" in data else data
        if not isinstance(event, dict):
            return
        event_type = event.get("e")
        if event_type == "listenKeyExpired":
            self._listen_key = None
            raise ConnectionError("listenKey expired")
        if event_type != "ORDER_TRADE_UPDATE":
            return
        try:
            order_event = OrderEvent.from_stream(event.get("o") or {}, event_time=event.get("E") or 0)
        except (TypeError, ValueError) as exc:
            logger.error("Malformed order update dropped: %s", exc)
            return
        logger.info(
            "Order update: %s %s %s - orderId %s",
            order_event.symbol,
            order_event.side,
            order_event.status,
            order_event.order_id,
        )
        if self._order_callback is not None:
            await self._order_callback(order_event)

    async def subscribe_user_orders(self, callback: OrderCallback) -> None:
        self._order_callback = callback
        if self._user_task is not None and not self._user_task.done():
            return
        self._user_task = asyncio.create_task(
            self._run_stream("user", self._user_stream_url, self._handle_user_message, None),
            name="user-data-stream",
        )
        self._user_task.add_done_callback(log_task_failure)
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(), name="listen-key-keepalive")

    async def subscribe_mark_price(self, symbol: str, callback: TickCallback) -> bool:
        if symbol in self._mark_tasks:
            return False
        url = f"{self.ws_base_url}/ws/{symbol.lower()}@markPrice@1s"

        async def _url() -> str:
            return url

        async def _on_message(data: Dict[str, Any]) -> None:
            price = data.get("p")
            if price in (None, ""):
                return
            await callback(PriceTick(symbol=data.get("s") or symbol, price=float(price), timestamp=int(data.get("E") or 0)))

        task = asyncio.create_task(
            self._run_stream(f"markPrice:{symbol}", _url, _on_message, self.stream_stale_s),
            name=f"mark-price-{symbol}",
        )
        task.add_done_callback(log_task_failure)
        self._mark_tasks[symbol] = task
        return True

    async def unsubscribe_mark_price(self, symbol: str) -> bool:
        task = self._mark_tasks.pop(symbol, None)
        if task is None:
            return False
        await cancel_and_wait([task])
        return True

    @property
    def watched_symbols(self) -> List[str]:
        return list(self._mark_tasks)

    async def stop(self) -> None:
        self.running = False
        tasks = [self._user_task, self._keepalive_task, *self._mark_tasks.values()]
        self._mark_tasks.clear()
        await cancel_and_wait(tasks)
        if self._listen_key:
            try:
                await self._rest.delete("/fapi/v1/listenKey", params={"listenKey": self._listen_key})
            except Exception as exc:
                logger.error("Failed to close user data stream: %s", exc)
            self._listen_key = None
        await self._rest.close()
