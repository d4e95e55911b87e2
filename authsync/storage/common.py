"""Key-value store contract shared by the memory and redis implementations.

The engine never touches a process-wide cache: every SessionStore receives
namespaced views over one injected store, so two stores (or a test and the
application) cannot collide on ad hoc keys.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[dict]: ...

    async def set(
        self, key: str, value: dict, *, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    def namespaced(self, prefix: str) -> "KeyValueStore": ...


def join_key(*parts: str) -> str:
    return ":".join(p.strip(":") for p in parts if p)


class NamespacedStore:
    """View over a KeyValueStore that prefixes every key."""

    def __init__(self, backend: Any, prefix: str) -> None:
        self._backend = backend
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return join_key(self.prefix, key)

    async def get(self, key: str) -> Optional[dict]:
        return await self._backend.get(self._key(key))

    async def set(
        self, key: str, value: dict, *, ttl_seconds: Optional[int] = None
    ) -> None:
        await self._backend.set(self._key(key), value, ttl_seconds=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._backend.delete(self._key(key))

    def namespaced(self, prefix: str) -> "NamespacedStore":
        return NamespacedStore(self._backend, join_key(self.prefix, prefix))

    def __repr__(self) -> str:
        return f"NamespacedStore(prefix={self.prefix!r})"
