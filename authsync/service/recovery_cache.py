from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from authsync.logging import get_logger
from authsync.storage.common import KeyValueStore
from authsync.storage.models import CacheEntry, utcnow

logger = get_logger(__name__)

_LAST_USER_KEY = "last_user"
_ENTRY_PREFIX = "user"


class RecoveryCache:
    """Last-known-good ``{user, profile, cached_at}`` snapshot per user.

    Read only on the recovery paths: when the safety timer fires during
    initialization, and when profile reconciliation runs out of attempts.
    Entries older than ``ttl_seconds`` count as misses; ``ttl_seconds=None``
    accepts snapshots of any age.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttl_seconds: Optional[int] = 24 * 60 * 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @staticmethod
    def _entry_key(user_id: str) -> str:
        return f"{_ENTRY_PREFIX}:{user_id}"

    def _is_fresh(self, entry: CacheEntry) -> bool:
        if self.ttl_seconds is None:
            return True
        return entry.age(self._clock()) <= timedelta(seconds=self.ttl_seconds)

    async def get(self, user_id: str) -> Optional[CacheEntry]:
        raw = await self.store.get(self._entry_key(user_id))
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("recovery_cache_corrupt_entry", user_id=user_id, error=str(exc))
            return None
        if entry.user_id != user_id:
            logger.warning("recovery_cache_user_mismatch", user_id=user_id)
            return None
        if not self._is_fresh(entry):
            logger.info(
                "recovery_cache_stale_entry",
                user_id=user_id,
                age_seconds=int(entry.age(self._clock()).total_seconds()),
                ttl_seconds=self.ttl_seconds,
            )
            return None
        return entry

    async def put(self, user_id: str, entry: CacheEntry) -> None:
        await self.store.set(self._entry_key(user_id), entry.to_dict())
        await self.store.set(_LAST_USER_KEY, {"user_id": user_id})

    async def get_last(self) -> Optional[CacheEntry]:
        """Snapshot of the most recently cached user, if still fresh."""
        pointer = await self.store.get(_LAST_USER_KEY)
        if not pointer or not pointer.get("user_id"):
            return None
        return await self.get(str(pointer["user_id"]))

    async def invalidate(self, user_id: str) -> None:
        await self.store.delete(self._entry_key(user_id))
        pointer = await self.store.get(_LAST_USER_KEY)
        if pointer and pointer.get("user_id") == user_id:
            await self.store.delete(_LAST_USER_KEY)
        logger.info("recovery_cache_invalidated", user_id=user_id)
