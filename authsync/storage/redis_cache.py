from __future__ import annotations

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authsync.logging import get_logger
from authsync.storage.common import NamespacedStore
from authsync.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Thin Redis wrapper holding JSON documents for the engine's namespaces."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    async def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is handed out."""
        try:
            await self.client.ping()
        except RedisError as exc:
            raise StorageUnavailable(f"redis unreachable: {exc}") from exc

    async def get(self, key: str) -> Optional[dict]:
        try:
            cached = await self.client.get(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc
        if not cached:
            return None
        try:
            value = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            logger.warning("redis_kv_corrupt_entry", key=key)
            return None
        return value if isinstance(value, dict) else None

    async def set(
        self, key: str, value: dict, *, ttl_seconds: Optional[int] = None
    ) -> None:
        ex = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        try:
            await self.client.set(key, json.dumps(value), ex=ex)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def namespaced(self, prefix: str) -> NamespacedStore:
        return NamespacedStore(self, prefix)

    async def close(self) -> None:
        await self.client.aclose()
