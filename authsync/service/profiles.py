from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

import httpx

from authsync.logging import get_logger
from authsync.storage.errors import ConstraintViolation, RecordNotFound, StorageUnavailable
from authsync.storage.models import Profile, utcnow

logger = get_logger(__name__)

# PostgreSQL unique_violation, surfaced by PostgREST on a duplicate insert
_UNIQUE_VIOLATION = "23505"


class ProfileRepository(Protocol):
    async def get_by_id(self, profile_id: str) -> Optional[Profile]: ...

    async def insert(self, profile: Profile) -> Profile: ...

    async def update(self, profile_id: str, patch: Dict[str, Any]) -> Profile: ...


class RestProfileRepository:
    """ProfileRepository over a PostgREST ``/rest/v1/<table>`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        table: str = "profiles",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        access_token_provider: Optional[Any] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self.timeout = timeout
        self._transport = transport
        # Callable returning the signed-in user's token so row-level security applies
        self._access_token_provider = access_token_provider
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            )
        return self._client

    def _headers(self, *, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self._access_token_provider() if self._access_token_provider else None
        bearer = token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    @property
    def _path(self) -> str:
        return f"/rest/v1/{self.table}"

    async def _send(self, method: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, self._path, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("profile_store_unreachable", method=method, error=str(exc))
            raise StorageUnavailable(f"profile store unreachable: {exc}") from exc
        if response.status_code >= 500:
            logger.warning("profile_store_error", method=method, status_code=response.status_code)
            raise StorageUnavailable(f"profile store returned HTTP {response.status_code}")
        return response

    @staticmethod
    def _first_row(response: httpx.Response) -> Optional[dict]:
        rows = response.json()
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows if isinstance(rows, dict) else None

    async def get_by_id(self, profile_id: str) -> Optional[Profile]:
        response = await self._send(
            "GET",
            params={"id": f"eq.{profile_id}", "select": "*", "limit": "1"},
            headers=self._headers(),
        )
        response.raise_for_status()
        row = self._first_row(response)
        return Profile.from_dict(row) if row else None

    async def insert(self, profile: Profile) -> Profile:
        response = await self._send(
            "POST",
            json=profile.to_dict(),
            headers=self._headers(prefer="return=representation"),
        )
        if response.status_code == 409:
            body = response.json() if response.content else {}
            code = body.get("code") if isinstance(body, dict) else None
            raise ConstraintViolation(
                "profile already exists", {"id": profile.id, "code": code or _UNIQUE_VIOLATION}
            )
        response.raise_for_status()
        row = self._first_row(response)
        return Profile.from_dict(row) if row else profile

    async def update(self, profile_id: str, patch: Dict[str, Any]) -> Profile:
        body = dict(patch)
        body.setdefault("updated_at", utcnow().isoformat())
        response = await self._send(
            "PATCH",
            params={"id": f"eq.{profile_id}"},
            json=body,
            headers=self._headers(prefer="return=representation"),
        )
        response.raise_for_status()
        row = self._first_row(response)
        if row is None:
            raise RecordNotFound(profile_id)
        return Profile.from_dict(row)

    async def ping(self) -> None:
        response = await self._send(
            "GET", params={"select": "id", "limit": "1"}, headers=self._headers()
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
