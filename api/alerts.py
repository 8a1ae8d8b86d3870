import asyncio
import logging
import time
from collections import deque
from typing import Any, Deque, Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)

RECENT_ALERTS = 50


class AlertWebhook:
    """Post lifecycle alerts to an HTTP webhook, or just log them.

    The last few alerts are kept in ``recent`` either way so operators can
    read them back from the health endpoint.
    """

    def __init__(self, url: Optional[str] = None, timeout_s: float = 5.0):
        if url is None:
            url = (config.get('monitoring', {}) or {}).get('alert_webhook')
        # placeholder URLs from the sample config count as unset
        self.webhook_url = url if url and 'your-webhook-url' not in str(url) else None
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self.recent: Deque[Dict[str, Any]] = deque(maxlen=RECENT_ALERTS)

    @property
    def enabled(self) -> bool:
        return self.webhook_url is not None

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict[str, Any]] = None) -> None:
        payload = {
            'type': alert_type,
            'message': message,
            'severity': severity,
            'timestamp': time.time(),
            'metadata': metadata or {},
        }
        self.recent.append(payload)
        log = logger.critical if severity == 'critical' else logger.warning
        log("[Alert] %s %s: %s", severity.upper(), alert_type, message)
        if self.enabled:
            await self._post(payload)

    async def _post(self, payload: Dict[str, Any]) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.webhook_url, json=payload) as response:
                    if response.status >= 300:
                        logger.error("[Alert] Webhook answered %s for %s", response.status, payload['type'])
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("[Alert] Webhook delivery failed: %s", exc)

    async def correlation_alert(self, symbol: str, order_id: int, rolled_back: bool):
        state = 'rolled back' if rolled_back else 'LEFT LIVE WITHOUT CORRELATION'
        await self.send_alert(
            'correlation_persistence',
            f'Entry order {order_id} for {symbol} could not be correlated; order {state}',
            'critical',
            {'symbol': symbol, 'order_id': order_id, 'rolled_back': rolled_back},
        )

    async def sltp_alert(self, symbol: str, order_id: int, error: str):
        await self.send_alert(
            'sltp_placement',
            f'Entry {order_id} for {symbol} filled but SL/TP placement failed: {error}',
            'critical',
            {'symbol': symbol, 'order_id': order_id},
        )


alert_webhook = AlertWebhook()
