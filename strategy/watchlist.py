import logging
from typing import Dict, Iterable, Optional, Set

from api.metrics import metrics
from strategy.execution_types import PriceTick
from strategy.transports.base import ExchangeGateway, PriceTickCallback


logger = logging.getLogger(__name__)


class PriceWatchSet:
    """Symbols with a live mark-price subscription and their last seen price."""

    def __init__(self, gateway: ExchangeGateway, on_tick: PriceTickCallback):
        self.gateway = gateway
        self.on_tick = on_tick
        self._symbols: Set[str] = set()
        self._last_prices: Dict[str, float] = {}

    @property
    def symbols(self) -> Set[str]:
        return set(self._symbols)

    def last_price(self, symbol: str) -> Optional[float]:
        return self._last_prices.get(symbol)

    async def _record_tick(self, tick: PriceTick) -> None:
        if tick.symbol not in self._symbols:
            return
        self._last_prices[tick.symbol] = tick.price
        await self.on_tick(tick)

    async def add_symbols_to_watch(self, symbols: Iterable[str]) -> None:
        for symbol in symbols:
            if symbol in self._symbols:
                continue
            self._symbols.add(symbol)
            try:
                await self.gateway.subscribe_price_ticks(symbol, self._record_tick)
            except Exception:
                self._symbols.discard(symbol)
                raise
            logger.info("Started watching symbol: %s", symbol)
        metrics.update_watched_symbols(len(self._symbols))

    async def remove_symbols_from_watch(self, symbols: Iterable[str]) -> None:
        for symbol in list(symbols):
            if symbol not in self._symbols:
                continue
            self._symbols.discard(symbol)
            self._last_prices.pop(symbol, None)
            await self.gateway.unsubscribe_price_ticks(symbol)
            logger.info("Stopped watching symbol: %s", symbol)
        metrics.update_watched_symbols(len(self._symbols))

    async def sync(self, active: Iterable[str]) -> None:
        wanted = set(active)
        await self.add_symbols_to_watch(sorted(wanted - self._symbols))
        await self.remove_symbols_from_watch(sorted(self._symbols - wanted))

    async def clear(self) -> None:
        await self.remove_symbols_from_watch(sorted(self._symbols))
