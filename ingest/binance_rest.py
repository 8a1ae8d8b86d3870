import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = (-2014, -2015, -1022)
UNKNOWN_ORDER_CODE = -2011


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def is_auth_error(self) -> bool:
        return self.status in (401, 403) or self.code in AUTH_ERROR_CODES

    @property
    def is_unknown_order(self) -> bool:
        return self.code == UNKNOWN_ORDER_CODE


class BinanceRESTClient:
    """Signed REST access to the USDⓈ-M futures API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        recv_window_ms: Optional[int] = None,
    ):
        exchange_cfg = config.exchange
        self.base_url = (base_url or exchange_cfg.get("rest_base_url") or "https://fapi.binance.com").rstrip("/")
        key = api_key or exchange_cfg.get("api_key")
        secret = api_secret or exchange_cfg.get("api_secret")
        self.api_key: Optional[str] = str(key) if key else None
        self.api_secret: Optional[str] = str(secret) if secret else None
        self.recv_window_ms = int(recv_window_ms or exchange_cfg.get("recv_window_ms", 5000))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params.setdefault("timestamp", int(time.time() * 1000))
        params.setdefault("recvWindow", self.recv_window_ms)
        query = urlencode(params, doseq=True)
        params["signature"] = hmac.new(
            self.api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        params = {key: value for key, value in (params or {}).items() if value is not None}
        headers: Dict[str, str] = {}

        if signed:
            if not self.has_credentials:
                raise RuntimeError("Binance API key/secret required for signed request")
            params = self._sign(params)
        if self.api_key:
            # listenKey endpoints need the key header without a signature
            headers["X-MBX-APIKEY"] = self.api_key

        url = f"{self.base_url}{path}"
        async with session.request(method.upper(), url, params=params, headers=headers) as resp:
            text = await resp.text()
            payload: Any = text
            if "application/json" in resp.headers.get("Content-Type", ""):
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                logger.debug("%s %s failed: %s", method.upper(), path, text)
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # Binance accepts signed params in the query string for every verb
        return await self._request("POST", path, params=params, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)

    async def put(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("PUT", path, params=params, signed=signed)
