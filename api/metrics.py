import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


def _get_port_file() -> Optional[Path]:
    path_value = config.monitoring.get('metrics_port_file') if config.monitoring else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.signals_received = Counter('signals_received_total', 'Inbound trading signals', ['direction'])
        self.signals_accepted = Counter('signals_accepted_total', 'Signals that produced an entry order')
        self.signals_rejected = Counter('signals_rejected_total', 'Rejected signals', ['reason'])

        self.orders_placed = Counter('orders_placed_total', 'Orders placed on the exchange', ['role'])
        self.orders_filled = Counter('orders_filled_total', 'Fill events handled', ['role'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Cancellations issued', ['reason'])

        self.snapshot_refresh_latency = Histogram(
            'snapshot_refresh_seconds',
            'Latency of a full open-orders/positions/correlations re-poll',
        )
        self.open_orders = Gauge('open_orders', 'Open orders in the current snapshot')
        self.active_positions = Gauge('active_positions', 'Active positions in the current snapshot')
        self.pending_correlations = Gauge('pending_correlations', 'Correlation records in the current snapshot')
        self.watched_symbols = Gauge('watched_symbols', 'Symbols with an active mark-price feed')

        self.reconnect_count = Counter('websocket_reconnects_total', 'Push-feed reconnect attempts', ['stream'])
        self.handler_errors = Counter('handler_errors_total', 'Exceptions swallowed by push handlers', ['handler'])
        self.persistence_failures = Counter('correlation_persistence_failures_total', 'Failed correlation writes')
        self.mailbox_depth = Gauge('symbol_mailbox_depth', 'Pending work items per symbol actor', ['symbol'])

    def record_signal(self, direction: str):
        self.signals_received.labels(direction=direction).inc()

    def record_signal_accepted(self):
        self.signals_accepted.inc()

    def record_signal_rejected(self, reason: str):
        self.signals_rejected.labels(reason=reason).inc()

    def record_order_placed(self, role: str):
        self.orders_placed.labels(role=role).inc()

    def record_order_filled(self, role: str):
        self.orders_filled.labels(role=role).inc()

    def record_order_cancelled(self, reason: str):
        self.orders_cancelled.labels(reason=reason).inc()

    def observe_snapshot_refresh(self, seconds: float, open_orders: int, positions: int, correlations: int):
        self.snapshot_refresh_latency.observe(seconds)
        self.open_orders.set(open_orders)
        self.active_positions.set(positions)
        self.pending_correlations.set(correlations)

    def update_watched_symbols(self, count: int):
        self.watched_symbols.set(count)

    def record_reconnect(self, stream: str):
        self.reconnect_count.labels(stream=stream).inc()

    def record_handler_error(self, handler: str):
        self.handler_errors.labels(handler=handler).inc()

    def record_persistence_failure(self):
        self.persistence_failures.inc()

    def update_mailbox_depth(self, symbol: str, depth: int):
        self.mailbox_depth.labels(symbol=symbol).set(depth)


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
