import asyncio
import logging
import time
from typing import List, Optional, Tuple

from api.alerts import AlertWebhook, alert_webhook
from api.metrics import metrics
from config import config
from orchestration.persistence import CorrelationBook
from risk.position_sizer import PositionSizer
from strategy.dispatcher import SymbolDispatcher
from strategy.errors import (
    DuplicateSymbol,
    LifecycleError,
    OrderNotFound,
    PersistenceFailed,
    PriceOutOfRange,
    SymbolUnknown,
)
from strategy.execution_types import (
    Direction,
    OrderEvent,
    OrderRole,
    OrderTicket,
    PriceTick,
    RequestedOrder,
    Signal,
    SignalResult,
    role_for,
)
from strategy.precision import format_to_precision, round_to_precision, validate_range
from strategy.snapshot import Snapshot
from strategy.transports.base import ExchangeGateway
from strategy.watchlist import PriceWatchSet


logger = logging.getLogger(__name__)

TERMINAL_ENTRY_STATUSES = ('CANCELED', 'EXPIRED')
TAKE_PROFIT_BAND_MULTIPLE = 2


class LifecycleCoordinator:
    """Turns band signals into entry orders and manages them until the trade ends.

    One trade per symbol: an entry stop order waits at the band edge, is
    cancelled if the mark price leaves the band on the wrong side, and once
    filled is bracketed by a take-profit and a stop-loss. When either closing
    leg fills the other is cancelled and the correlation record is dropped.

    Every public operation runs on the symbol's dispatcher actor, so work for
    one symbol never interleaves.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        correlations: CorrelationBook,
        sizer: Optional[PositionSizer] = None,
        asset: Optional[str] = None,
        dispatcher: Optional[SymbolDispatcher] = None,
        alerts: Optional[AlertWebhook] = None,
    ):
        self.gateway = gateway
        self.correlations = correlations
        self.sizer = sizer or PositionSizer()
        self.asset = asset or (config.get('trading', {}) or {}).get('asset', 'USDT')
        self.dispatcher = dispatcher or SymbolDispatcher()
        self.alerts = alerts or alert_webhook
        self.watchlist = PriceWatchSet(gateway, self.dispatcher.publish_price_tick)
        self.snapshot = Snapshot()
        self._generation = 0
        self._applied_generation = 0
        self._watch_lock = asyncio.Lock()

    async def start(self) -> None:
        await self.refresh_snapshot()
        if await self._prune_correlations():
            await self.refresh_snapshot()
        await self.gateway.subscribe_order_events(self.dispatcher.publish_order_event)
        self.dispatcher.start(self._on_order_event, self._on_price_tick)
        logger.info(
            "Lifecycle coordinator started: %d open orders, %d positions, %d correlations",
            len(self.snapshot.open_orders),
            len(self.snapshot.active_positions),
            len(self.snapshot.requested_orders),
        )

    async def stop(self) -> None:
        await self.dispatcher.stop()
        async with self._watch_lock:
            try:
                await self.watchlist.clear()
            except LifecycleError as exc:
                logger.warning("Failed to drop price feeds on shutdown: %s", exc)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def get_snapshot(self) -> Snapshot:
        return self.snapshot

    async def refresh_snapshot(self) -> Snapshot:
        self._generation += 1
        generation = self._generation
        started = time.perf_counter()
        open_orders, positions, records = await asyncio.gather(
            self.gateway.fetch_open_orders(),
            self.gateway.fetch_positions(),
            self.correlations.all(),
        )
        if generation < self._applied_generation:
            logger.debug("Discarding snapshot generation %d, %d already applied",
                         generation, self._applied_generation)
            return self.snapshot
        self._applied_generation = generation
        self.snapshot = Snapshot(open_orders, positions, records, generation)
        metrics.observe_snapshot_refresh(
            time.perf_counter() - started,
            len(open_orders),
            len(positions),
            len(records),
        )
        async with self._watch_lock:
            await self.watchlist.sync(self.snapshot.active_symbols())
        return self.snapshot

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh_snapshot()
        except Exception:
            logger.exception("Snapshot refresh failed")
            metrics.record_handler_error('snapshot_refresh')

    async def _prune_correlations(self) -> int:
        stale: List[int] = []
        for record in self.snapshot.requested_orders:
            state = self.snapshot.for_symbol(record.symbol)
            if state.find_order(record.order_id) is None and not state.positions:
                stale.append(record.order_id)
        if not stale:
            return 0
        removed = await self.correlations.remove(stale)
        logger.info("Pruned %d correlation records with no live order or position: %s", removed, stale)
        return removed

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    async def process_signal(self, signal: Signal) -> SignalResult:
        metrics.record_signal(signal.direction.value)
        return await self.dispatcher.submit(signal.symbol, lambda: self._process_signal(signal))

    async def _process_signal(self, signal: Signal) -> SignalResult:
        try:
            order_id = await self._open_trade(signal)
        except LifecycleError as exc:
            logger.warning("Signal %s %s [%s, %s] rejected: %s (%s)",
                           signal.direction.value, signal.symbol, signal.low, signal.high,
                           exc.reason.value, exc.message)
            metrics.record_signal_rejected(exc.reason.value)
            await self._refresh_quietly()
            return SignalResult(False, reason=exc.reason.value, message=exc.message)

        metrics.record_signal_accepted()
        await self._refresh_quietly()
        return SignalResult(True, order_id=order_id, message=f"Entry order {order_id} placed for {signal.symbol}")

    async def _open_trade(self, signal: Signal) -> int:
        symbol = signal.symbol
        if self.snapshot.symbol_exists(symbol):
            raise DuplicateSymbol(f"{symbol} already has an open order or position")
        # the snapshot lags a failed refresh; the correlation book does not
        pending = await self.correlations.for_symbol(symbol)
        if pending:
            raise DuplicateSymbol(
                f"{symbol} already has entry order {pending[0].order_id} awaiting its outcome"
            )

        info = await self.gateway.fetch_symbol_info(symbol)
        if info is None:
            raise SymbolUnknown(f"Symbol {symbol} is not listed on the exchange")

        balance = await self.gateway.fetch_balance(self.asset)
        quantity = self.sizer.calculate_quantity(balance, signal, info)
        leverage = self.sizer.required_leverage(quantity, signal, balance)

        edge = signal.high if signal.direction is Direction.BUY else signal.low
        stop_price = round_to_precision(edge, info.price_tick)
        if not validate_range(stop_price, info.min_price, info.max_price):
            raise PriceOutOfRange(
                f"Entry price {stop_price} is outside allowed range [{info.min_price}, {info.max_price}]"
            )

        await self.gateway.set_leverage(symbol, leverage)
        ticket = await self.gateway.place_entry_order(
            symbol,
            signal.direction.value,
            format_to_precision(quantity, info.quantity_step),
            format_to_precision(stop_price, info.price_tick),
        )
        metrics.record_order_placed(OrderRole.ENTRY.value)
        logger.info("Entry %s %s qty=%s stop=%s leverage=%dx placed as order %s",
                    signal.direction.value, symbol, quantity, stop_price, leverage, ticket.order_id)

        record = RequestedOrder(
            order_id=ticket.order_id,
            symbol=symbol,
            direction=signal.direction,
            low=signal.low,
            high=signal.high,
        )
        try:
            await self.correlations.add(record)
        except Exception as exc:
            logger.critical("Failed to persist correlation for entry %s on %s: %s", ticket.order_id, symbol, exc)
            metrics.record_persistence_failure()
            rolled_back = await self._rollback_entry(symbol, ticket.order_id)
            await self.alerts.correlation_alert(symbol, ticket.order_id, rolled_back)
            raise PersistenceFailed(
                f"Correlation for order {ticket.order_id} could not be stored; "
                f"entry {'cancelled' if rolled_back else 'still live'}"
            ) from exc
        return ticket.order_id

    async def _rollback_entry(self, symbol: str, order_id: int) -> bool:
        try:
            cancelled = await self.gateway.cancel_order(symbol, order_id)
        except LifecycleError:
            logger.exception("Rollback cancel of entry %s on %s failed", order_id, symbol)
            return False
        if cancelled:
            metrics.record_order_cancelled('rollback')
        return cancelled

    # ------------------------------------------------------------------
    # Order events
    # ------------------------------------------------------------------

    async def on_order_event(self, event: OrderEvent) -> None:
        await self.dispatcher.submit(event.symbol, lambda: self._on_order_event(event))

    async def _on_order_event(self, event: OrderEvent) -> None:
        try:
            await self._apply_order_event(event)
        except Exception:
            logger.exception("Order event handling failed for %s order %s (%s)",
                             event.symbol, event.order_id, event.status)
            metrics.record_handler_error('order_event')
        finally:
            await self._refresh_quietly()

    async def _apply_order_event(self, event: OrderEvent) -> None:
        order = self.snapshot.find_order(event.order_id, event.symbol)
        if order is not None:
            closing, order_type = order.is_closing, order.type
        else:
            closing, order_type = event.is_closing, event.order_type
        role = role_for(order_type, closing)

        if event.status == 'FILLED':
            metrics.record_order_filled(role.value)
            logger.info("%s order %s for %s filled (qty=%s, avg=%s)",
                        role.value, event.order_id, event.symbol, event.filled_qty, event.avg_price)
            if closing:
                await self._close_trade(event)
            else:
                await self._on_entry_filled(event, order)
        elif event.status in TERMINAL_ENTRY_STATUSES and not closing:
            removed = await self.correlations.remove([event.order_id])
            if removed:
                logger.info("Entry %s for %s %s on the exchange; correlation dropped",
                            event.order_id, event.symbol, event.status.lower())

    async def _close_trade(self, event: OrderEvent) -> None:
        state = self.snapshot.for_symbol(event.symbol)
        for sibling in state.closing_orders():
            if sibling.order_id == event.order_id:
                continue
            try:
                cancelled = await self.gateway.cancel_order(sibling.symbol, sibling.order_id)
            except LifecycleError:
                logger.exception("Failed to cancel %s sibling %s on %s",
                                 sibling.role.value, sibling.order_id, sibling.symbol)
                metrics.record_handler_error('sibling_cancel')
                continue
            if cancelled:
                metrics.record_order_cancelled('sibling_filled')
                logger.info("Cancelled %s order %s on %s after %s filled",
                            sibling.role.value, sibling.order_id, sibling.symbol, event.order_id)

        records = await self.correlations.for_symbol(event.symbol)
        if records:
            await self.correlations.remove([record.order_id for record in records])
        logger.info("Trade on %s closed by order %s", event.symbol, event.order_id)

    async def _on_entry_filled(self, event: OrderEvent, order: Optional[OrderTicket]) -> None:
        record = await self.correlations.get(event.order_id)
        if record is None:
            logger.error("Entry %s on %s filled without a correlation record; no SL/TP placed",
                         event.order_id, event.symbol)
            await self.alerts.sltp_alert(event.symbol, event.order_id, 'missing correlation record')
            return
        quantity = event.filled_qty or (order.quantity if order is not None else 0.0)
        try:
            await self.place_sl_tp_orders(record, quantity)
        except LifecycleError as exc:
            await self.alerts.sltp_alert(event.symbol, event.order_id, exc.message)
            raise

    async def place_sl_tp_orders(self, record: RequestedOrder, quantity: float) -> Tuple[OrderTicket, OrderTicket]:
        info = await self.gateway.fetch_symbol_info(record.symbol)
        if info is None:
            raise SymbolUnknown(f"Symbol {record.symbol} is not listed on the exchange")

        band = record.high - record.low
        if record.direction is Direction.BUY:
            take_profit = record.high + TAKE_PROFIT_BAND_MULTIPLE * band
            stop_loss = record.low
        else:
            take_profit = record.low - TAKE_PROFIT_BAND_MULTIPLE * band
            stop_loss = record.high
        take_profit = round_to_precision(take_profit, info.price_tick)
        stop_loss = round_to_precision(stop_loss, info.price_tick)

        side = record.direction.opposite.value
        qty = format_to_precision(quantity, info.quantity_step)
        tp_ticket = await self.gateway.place_closing_order(
            record.symbol, side, qty, format_to_precision(take_profit, info.price_tick), OrderRole.TAKE_PROFIT
        )
        metrics.record_order_placed(OrderRole.TAKE_PROFIT.value)
        sl_ticket = await self.gateway.place_closing_order(
            record.symbol, side, qty, format_to_precision(stop_loss, info.price_tick), OrderRole.STOP_LOSS
        )
        metrics.record_order_placed(OrderRole.STOP_LOSS.value)
        logger.info("Bracket for %s entry %s: TP %s (order %s), SL %s (order %s)",
                    record.symbol, record.order_id, take_profit, tp_ticket.order_id,
                    stop_loss, sl_ticket.order_id)
        return tp_ticket, sl_ticket

    # ------------------------------------------------------------------
    # Price ticks
    # ------------------------------------------------------------------

    async def on_price_tick(self, tick: PriceTick) -> None:
        await self.dispatcher.submit(tick.symbol, lambda: self._on_price_tick(tick))

    async def _on_price_tick(self, tick: PriceTick) -> None:
        try:
            await self._apply_price_tick(tick)
        except Exception:
            logger.exception("Price tick handling failed for %s at %s", tick.symbol, tick.price)
            metrics.record_handler_error('price_tick')
            await self._refresh_quietly()

    async def _apply_price_tick(self, tick: PriceTick) -> None:
        state = self.snapshot.for_symbol(tick.symbol)
        invalidated: List[OrderTicket] = []
        for order in state.entry_orders():
            record = state.correlations.get(order.order_id)
            if record is None:
                continue
            if record.direction is Direction.BUY and tick.price < record.low:
                invalidated.append(order)
            elif record.direction is Direction.SELL and tick.price > record.high:
                invalidated.append(order)
        if not invalidated:
            return

        for order in invalidated:
            logger.info("Mark price %s left the band of %s entry %s on %s; cancelling",
                        tick.price, order.side, order.order_id, order.symbol)
            if await self.gateway.cancel_order(order.symbol, order.order_id):
                metrics.record_order_cancelled('price_invalidated')
                await self.correlations.remove([order.order_id])
            else:
                # already filled or gone; its queued order event settles the record
                logger.info("Entry %s on %s was no longer open; leaving it to its order event",
                            order.order_id, order.symbol)
        await self.refresh_snapshot()

    # ------------------------------------------------------------------
    # Manual cancellation
    # ------------------------------------------------------------------

    async def cancel(self, symbol: str, order_id: int) -> None:
        """Cancel an open order; raises ``OrderNotFound`` if it is not open."""
        await self.dispatcher.submit(symbol, lambda: self._cancel(symbol, order_id))

    async def _cancel(self, symbol: str, order_id: int) -> None:
        order = self.snapshot.find_order(order_id, symbol)
        if order is None:
            logger.warning("Cancel requested for unknown order %s on %s", order_id, symbol)
            raise OrderNotFound(f"Order {order_id} not found for {symbol}")
        cancelled = await self.gateway.cancel_order(symbol, order_id)
        if cancelled:
            metrics.record_order_cancelled('manual')
            if not order.is_closing:
                await self.correlations.remove([order_id])
        await self._refresh_quietly()
        if not cancelled:
            raise OrderNotFound(f"Order {order_id} on {symbol} is no longer open")
