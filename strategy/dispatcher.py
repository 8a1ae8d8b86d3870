import asyncio
import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from api.metrics import metrics
from monitoring.async_utils import cancel_and_wait, log_task_failure
from strategy.execution_types import OrderEvent, PriceTick


logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]
OrderHandler = Callable[[OrderEvent], Awaitable[None]]
TickHandler = Callable[[PriceTick], Awaitable[None]]


@dataclass
class SymbolActor:
    symbol: str
    mailbox: "asyncio.Queue[Tuple[Job, Optional[asyncio.Future]]]" = field(default_factory=asyncio.Queue)
    worker: Optional[asyncio.Task] = None
    pending_tick: Optional[PriceTick] = None
    tick_scheduled: bool = False


class SymbolDispatcher:
    """Serializes all work for a symbol through one mailbox and worker task.

    Order events and price ticks arrive on two channels and are pumped into the
    owning symbol's mailbox. Work for different symbols runs concurrently.
    While a tick is waiting in a mailbox, newer ticks for the same symbol
    replace it instead of queueing behind it.
    """

    def __init__(self):
        self.order_events: "asyncio.Queue[OrderEvent]" = asyncio.Queue()
        self.price_ticks: "asyncio.Queue[PriceTick]" = asyncio.Queue()
        self._actors: Dict[str, SymbolActor] = {}
        self._pumps: List[asyncio.Task] = []
        self._order_handler: Optional[OrderHandler] = None
        self._tick_handler: Optional[TickHandler] = None

    @property
    def running(self) -> bool:
        return bool(self._pumps)

    def start(self, order_handler: OrderHandler, tick_handler: TickHandler) -> None:
        if self._pumps:
            return
        self._order_handler = order_handler
        self._tick_handler = tick_handler
        self._pumps = [
            asyncio.create_task(self._pump_order_events(), name="dispatch-order-events"),
            asyncio.create_task(self._pump_price_ticks(), name="dispatch-price-ticks"),
        ]
        for task in self._pumps:
            task.add_done_callback(log_task_failure)

    async def stop(self) -> None:
        tasks = list(self._pumps) + [actor.worker for actor in self._actors.values()]
        self._pumps = []
        await cancel_and_wait(tasks)
        self._actors.clear()

    async def publish_order_event(self, event: OrderEvent) -> None:
        self.order_events.put_nowait(event)

    async def publish_price_tick(self, tick: PriceTick) -> None:
        self.price_ticks.put_nowait(tick)

    def _actor(self, symbol: str) -> SymbolActor:
        actor = self._actors.get(symbol)
        if actor is None:
            actor = self._actors[symbol] = SymbolActor(symbol)
        if actor.worker is None or actor.worker.done():
            actor.worker = asyncio.create_task(self._work(actor), name=f"symbol-{symbol}")
            actor.worker.add_done_callback(log_task_failure)
        return actor

    def post(self, symbol: str, job: Job) -> None:
        """Queue ``job`` on the symbol's actor without waiting for it."""
        actor = self._actor(symbol)
        actor.mailbox.put_nowait((job, None))
        metrics.update_mailbox_depth(symbol, actor.mailbox.qsize())

    async def submit(self, symbol: str, job: Job) -> Any:
        """Run ``job`` on the symbol's actor and return its result."""
        future = asyncio.get_running_loop().create_future()
        actor = self._actor(symbol)
        actor.mailbox.put_nowait((job, future))
        metrics.update_mailbox_depth(symbol, actor.mailbox.qsize())
        return await future

    async def _work(self, actor: SymbolActor) -> None:
        while True:
            job, future = await actor.mailbox.get()
            try:
                if future is not None and future.cancelled():
                    continue
                result = await job()
                if future is not None and not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if future is not None and not future.done():
                    future.set_exception(exc)
                else:
                    logger.exception("Unhandled error in %s actor", actor.symbol)
                    metrics.record_handler_error('dispatcher')
            finally:
                actor.mailbox.task_done()
                metrics.update_mailbox_depth(actor.symbol, actor.mailbox.qsize())

    async def _pump_order_events(self) -> None:
        while True:
            event = await self.order_events.get()
            try:
                self.post(event.symbol, functools.partial(self._order_handler, event))
            finally:
                self.order_events.task_done()

    async def _pump_price_ticks(self) -> None:
        while True:
            tick = await self.price_ticks.get()
            try:
                actor = self._actor(tick.symbol)
                actor.pending_tick = tick
                if not actor.tick_scheduled:
                    actor.tick_scheduled = True
                    self.post(tick.symbol, functools.partial(self._deliver_tick, actor))
            finally:
                self.price_ticks.task_done()

    async def _deliver_tick(self, actor: SymbolActor) -> None:
        tick = actor.pending_tick
        actor.pending_tick = None
        actor.tick_scheduled = False
        if tick is not None:
            await self._tick_handler(tick)

    async def drain(self) -> None:
        """Wait until both channels and every mailbox are empty."""
        while True:
            await self.order_events.join()
            await self.price_ticks.join()
            for actor in list(self._actors.values()):
                await actor.mailbox.join()
            idle = self.order_events.empty() and self.price_ticks.empty() and all(
                actor.mailbox.empty() for actor in self._actors.values()
            )
            if idle:
                return
