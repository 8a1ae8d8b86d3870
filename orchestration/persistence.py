import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from config import config
from strategy.execution_types import RequestedOrder


logger = logging.getLogger(__name__)

REQUESTED_ORDERS_KEY = 'requestedOrders'


class CorrelationStore(ABC):
    """Durable key -> JSON value map."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any) -> None:
        ...


class JsonFileStore(CorrelationStore):
    """Single JSON document on disk; each ``set`` rewrites it atomically."""

    def __init__(self, path: Optional[str] = None):
        storage_cfg = config.get('storage', {}) or {}
        self.path = Path(path or storage_cfg.get('path', 'data/data.json'))
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        text = self.path.read_text(encoding='utf-8')
        if not text.strip():
            return {}
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp_path.write_text(json.dumps(data, indent=2), encoding='utf-8')
        os.replace(tmp_path, self.path)

    async def initialize(self) -> None:
        async with self._lock:
            if not self.path.exists():
                self._write({})
                logger.info("Created store file %s", self.path)

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            return self._read().get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)
        logger.debug("Stored key %s", key)


class PostgresStore(CorrelationStore):
    """Key/value rows in a single jsonb table."""

    def __init__(self, db_config: Optional[Dict[str, Any]] = None, pool=None):
        self.db_config = dict(db_config or config.get('database', {}) or {})
        self.table = self.db_config.get('table', 'kv_store')
        self.pool = pool

    async def initialize(self) -> None:
        if self.pool is None:
            db = self.db_config
            self.pool = await asyncpg.create_pool(
                host=db['host'],
                port=int(db.get('port', 5432)),
                database=str(db['database']),
                user=str(db['user']),
                password=str(db['password']) if db.get('password') else None,
                min_size=1,
                max_size=5
            )
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self.table} ("
                "key TEXT PRIMARY KEY, value JSONB NOT NULL, updated_at TIMESTAMPTZ NOT NULL DEFAULT now())"
            )

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def get(self, key: str) -> Optional[Any]:
        async with self.pool.acquire() as conn:
            raw = await conn.fetchval(f"SELECT value FROM {self.table} WHERE key = $1", key)
        if raw is None:
            return None
        return json.loads(raw) if isinstance(raw, str) else raw

    async def set(self, key: str, value: Any) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"INSERT INTO {self.table} (key, value, updated_at) VALUES ($1, $2::jsonb, now()) "
                "ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = now()",
                key,
                json.dumps(value),
            )


def create_store(storage_cfg: Optional[Dict[str, Any]] = None) -> CorrelationStore:
    storage_cfg = storage_cfg or config.get('storage', {}) or {}
    backend = str(storage_cfg.get('backend', 'json')).lower()
    if backend == 'postgres':
        return PostgresStore()
    if backend == 'json':
        return JsonFileStore(storage_cfg.get('path'))
    raise RuntimeError(f"Unknown storage backend '{backend}'")


class CorrelationBook:
    """RequestedOrder records kept under one store key, indexed by order id."""

    def __init__(self, store: CorrelationStore):
        self.store = store
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, Dict[str, Any]]:
        raw = await self.store.get(REQUESTED_ORDERS_KEY)
        if not raw:
            return {}
        if isinstance(raw, list):
            # older layout stored a bare list of records
            return {str(item['orderId']): item for item in raw if item.get('orderId') is not None}
        return dict(raw)

    async def all(self) -> List[RequestedOrder]:
        records = await self._load()
        orders: List[RequestedOrder] = []
        for key, item in records.items():
            try:
                orders.append(RequestedOrder.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.error("Skipping malformed correlation record %s: %s", key, exc)
        return orders

    async def get(self, order_id: int) -> Optional[RequestedOrder]:
        item = (await self._load()).get(str(order_id))
        return RequestedOrder.from_dict(item) if item else None

    async def add(self, record: RequestedOrder) -> None:
        async with self._lock:
            records = await self._load()
            records[str(record.order_id)] = record.to_dict()
            await self.store.set(REQUESTED_ORDERS_KEY, records)

    async def remove(self, order_ids: List[int]) -> int:
        async with self._lock:
            records = await self._load()
            removed = 0
            for order_id in order_ids:
                if records.pop(str(order_id), None) is not None:
                    removed += 1
            if removed:
                await self.store.set(REQUESTED_ORDERS_KEY, records)
            return removed

    async def for_symbol(self, symbol: str) -> List[RequestedOrder]:
        return [record for record in await self.all() if record.symbol == symbol]
