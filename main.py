import logging
import time
from typing import Any, Dict, Optional

from api.metrics import start_metrics_server
from config import config
from config.utils import get_config_section
from ingest.binance_rest import BinanceRESTClient
from ingest.websocket_client import WebSocketClient
from monitoring.logging_utils import setup_logging
from orchestration.persistence import CorrelationBook, CorrelationStore, create_store
from risk.position_sizer import PositionSizer
from strategy.execution_types import PriceTick
from strategy.lifecycle import LifecycleCoordinator
from strategy.simulators.paper import PaperExchange
from strategy.transports.base import ExchangeGateway
from strategy.transports.binance import BinanceTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire gateway, correlation store and lifecycle coordinator together."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        gateway: Optional[ExchangeGateway] = None,
        store: Optional[CorrelationStore] = None,
    ):
        self.config = config_obj or config
        self.exchange_cfg = get_config_section(self.config, 'exchange')
        self.trading_cfg = get_config_section(self.config, 'trading')
        self.websocket_cfg = get_config_section(self.config, 'websocket')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')
        self.paper_mode = bool(self.exchange_cfg.get('paper', False))
        self.asset = self.trading_cfg.get('asset', 'USDT')

        self.gateway = gateway or self._build_gateway()
        self.store = store or create_store(get_config_section(self.config, 'storage'))
        self.correlations = CorrelationBook(self.store)
        self.sizer = PositionSizer(
            max_position_pct=self.trading_cfg.get('max_position_pct', 2),
            max_leverage=self.trading_cfg.get('max_leverage', 20),
        )
        self.coordinator = LifecycleCoordinator(
            self.gateway,
            self.correlations,
            sizer=self.sizer,
            asset=self.asset,
        )
        self.running = False

    def _build_gateway(self) -> ExchangeGateway:
        rest = BinanceRESTClient(
            base_url=self.exchange_cfg.get('rest_base_url'),
            api_key=self.exchange_cfg.get('api_key'),
            api_secret=self.exchange_cfg.get('api_secret'),
            recv_window_ms=self.exchange_cfg.get('recv_window_ms'),
        )
        streams = WebSocketClient(
            rest=rest,
            ws_base_url=self.exchange_cfg.get('ws_base_url'),
            reconnect_backoff=self.websocket_cfg.get('reconnect_backoff'),
            listen_key_keepalive_s=self.websocket_cfg.get('listen_key_keepalive_s'),
            stream_stale_s=self.websocket_cfg.get('stream_stale_s'),
        )
        if self.paper_mode:
            paper_cfg = get_config_section(self.config, 'paper')
            logger.info("Paper mode: orders stay in memory, mark prices come from Binance")
            return PaperExchange(
                initial_balance=float(paper_cfg.get('initial_balance', 10000)),
                asset=self.asset,
                metadata_client=rest,
                price_feed=streams,
            )
        return BinanceTransport(rest, streams, closing_mode=self.exchange_cfg.get('closing_mode'))

    async def start(self):
        if self.running:
            return
        metrics_port = self.monitoring_cfg.get('prometheus_port')
        if metrics_port:
            start_metrics_server(int(metrics_port))
        await self.store.initialize()
        await self.coordinator.start()
        self.running = True
        logger.info("Trading system started (%s mode)", 'paper' if self.paper_mode else 'live')

    async def stop(self):
        if not self.running:
            return
        self.running = False
        await self.coordinator.stop()
        await self.gateway.close()
        await self.store.close()
        logger.info("Trading system stopped")

    async def inject_price(self, symbol: str, price: float) -> None:
        """Feed a mark price by hand, through the paper venue when there is one."""
        if isinstance(self.gateway, PaperExchange):
            await self.gateway.push_mark_price(symbol, price)
            return
        await self.coordinator.on_price_tick(PriceTick(symbol=symbol, price=price, timestamp=int(time.time() * 1000)))

    def status(self) -> Dict[str, Any]:
        snapshot = self.coordinator.get_snapshot()
        return {
            'running': self.running,
            'mode': 'paper' if self.paper_mode else 'live',
            'open_orders': len(snapshot.open_orders),
            'active_positions': len(snapshot.active_positions),
            'watched_symbols': sorted(self.coordinator.watchlist.symbols),
        }


def main():
    import uvicorn

    api_cfg = get_config_section(config, 'api')
    setup_logging(get_config_section(config, 'monitoring').get('log_level', 'INFO'))
    uvicorn.run(
        "api.fastapi_server:app",
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port') or 3000),
    )


if __name__ == "__main__":
    main()
