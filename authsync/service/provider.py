from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

import httpx

from authsync.logging import get_logger
from authsync.service.errors import (
    InvalidCredentials,
    NotAuthenticated,
    ProviderError,
    ProviderUnavailable,
)
from authsync.service.retry import RetryExhausted, RetryPolicy
from authsync.storage.common import KeyValueStore
from authsync.storage.models import Session, User

logger = get_logger(__name__)

SESSION_KEY = "session"


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    # Raised locally, never by the provider
    AUTH_RESET = "AUTH_RESET"


AuthListener = Callable[[AuthEvent, Optional[Session]], None]


class IdentityProviderClient(Protocol):
    async def sign_in(self, email: str, password: str) -> Session: ...

    async def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> Optional[Session]: ...

    async def sign_out(self) -> None: ...

    async def get_session(self) -> Optional[Session]: ...

    async def get_user(self) -> Optional[User]: ...

    async def refresh_session(self) -> Session: ...

    async def sign_in_with_oauth(
        self, provider: str, redirect_to: Optional[str] = None
    ) -> str: ...

    async def reset_password_for_email(self, email: str) -> None: ...

    async def update_user(
        self, *, password: Optional[str] = None, data: Optional[dict] = None
    ) -> User: ...

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]: ...


class _TransientFailure(Exception):
    """Network error or 5xx; retried by the client's RetryPolicy."""


# Status codes GoTrue uses for a rejected password grant
_CREDENTIAL_STATUSES = frozenset({400, 401, 422})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


class GoTrueClient:
    """IdentityProviderClient over a GoTrue-compatible REST API.

    Holds the current Session and notifies listeners synchronously with
    SIGNED_IN, SIGNED_OUT and TOKEN_REFRESHED. With a ``storage`` store the
    session is persisted there and picked up again by a fresh client, so a
    restart resumes the signed-in user. Network errors and 5xx responses are
    retried; once the policy is exhausted the call raises ProviderUnavailable.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = 10.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storage: Optional[KeyValueStore] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy.from_ms(3, 250)
        self.storage = storage
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session: Optional[Session] = None
        self._session_loaded = storage is None
        self._listeners: List[AuthListener] = []

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            )
        return self._client

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
        bearer = access_token or self.api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._get_client()

        async def attempt() -> httpx.Response:
            try:
                response = await client.request(
                    method,
                    path,
                    json=json,
                    params=params,
                    headers=self._headers(access_token),
                )
            except httpx.TransportError as exc:
                raise _TransientFailure(f"{type(exc).__name__}: {exc}") from exc
            if response.status_code >= 500:
                raise _TransientFailure(f"HTTP {response.status_code}")
            return response

        def on_retry(attempt_no: int, delay: float, error: Optional[BaseException]) -> None:
            logger.warning(
                "provider_request_retry",
                method=method,
                path=path,
                attempt=attempt_no,
                backoff_ms=int(delay * 1000),
                error=str(error) if error else None,
            )

        try:
            return await self.retry_policy.run(
                attempt, retry_on=(_TransientFailure,), on_retry=on_retry
            )
        except RetryExhausted as exc:
            logger.error(
                "provider_unavailable",
                method=method,
                path=path,
                attempts=exc.attempts,
                error=str(exc.last_error),
            )
            raise ProviderUnavailable(
                "identity provider unavailable",
                detail={"path": path, "attempts": exc.attempts},
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ProviderError(_error_message(response), status_code=response.status_code)

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, session)
            except Exception as exc:
                logger.error("provider_listener_failed", auth_event=event.value, error=str(exc))

    async def _current_session(self) -> Optional[Session]:
        if not self._session_loaded:
            self._session_loaded = True
            try:
                raw = await self.storage.get(SESSION_KEY)
                if raw:
                    self._session = Session.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("provider_session_corrupt", error=str(exc))
            except Exception as exc:
                logger.warning("provider_session_load_failed", error=str(exc))
        return self._session

    async def _store_session(self, session: Session, event: AuthEvent) -> Session:
        self._session = session
        self._session_loaded = True
        if self.storage is not None:
            try:
                await self.storage.set(SESSION_KEY, session.to_dict())
            except Exception as exc:
                logger.warning("provider_session_persist_failed", error=str(exc))
        self._emit(event, session)
        return session

    async def _drop_session(self) -> None:
        had_session = self._session is not None
        self._session = None
        self._session_loaded = True
        if self.storage is not None:
            try:
                await self.storage.delete(SESSION_KEY)
            except Exception as exc:
                logger.warning("provider_session_delete_failed", error=str(exc))
        if had_session:
            self._emit(AuthEvent.SIGNED_OUT, None)

    async def sign_in(self, email: str, password: str) -> Session:
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code in _CREDENTIAL_STATUSES:
            logger.info("provider_sign_in_rejected", email=email, status_code=response.status_code)
            raise InvalidCredentials(
                _error_message(response), status_code=response.status_code
            )
        self._raise_for_status(response)
        return await self._store_session(Session.from_token_response(response.json()), AuthEvent.SIGNED_IN)

    async def sign_up(
        self, email: str, password: str, metadata: Optional[dict] = None
    ) -> Optional[Session]:
        response = await self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password, "data": metadata or {}},
        )
        self._raise_for_status(response)
        payload = response.json()
        if not payload.get("access_token"):
            # Email confirmation pending; no session yet
            logger.info("provider_sign_up_pending_confirmation", email=email)
            return None
        return await self._store_session(Session.from_token_response(payload), AuthEvent.SIGNED_IN)

    async def sign_out(self) -> None:
        session = await self._current_session()
        if session is not None:
            try:
                response = await self._request(
                    "POST", "/auth/v1/logout", access_token=session.access_token
                )
                if response.status_code >= 400 and response.status_code != 401:
                    logger.warning("provider_logout_rejected", status_code=response.status_code)
            except ProviderUnavailable:
                # The local session is dropped regardless
                logger.warning("provider_logout_unreachable")
        await self._drop_session()

    async def get_session(self) -> Optional[Session]:
        session = await self._current_session()
        if session is None:
            return None
        if not session.is_expired():
            return session
        if not session.refresh_token:
            await self._drop_session()
            return None
        return await self.refresh_session()

    async def get_user(self) -> Optional[User]:
        session = await self._current_session()
        if session is None:
            return None
        response = await self._request("GET", "/auth/v1/user", access_token=session.access_token)
        if response.status_code in (401, 403):
            logger.info("provider_session_rejected", status_code=response.status_code)
            await self._drop_session()
            return None
        self._raise_for_status(response)
        user = User.from_dict(response.json())
        session.user = user
        return user

    async def refresh_session(self) -> Session:
        session = await self._current_session()
        if session is None or not session.refresh_token:
            raise NotAuthenticated("no session to refresh")
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
        )
        if response.status_code in (400, 401):
            await self._drop_session()
        self._raise_for_status(response)
        return await self._store_session(
            Session.from_token_response(response.json()), AuthEvent.TOKEN_REFRESHED
        )

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str:
        params = {"provider": provider}
        if redirect_to:
            params["redirect_to"] = redirect_to
        return str(httpx.URL(f"{self.base_url}/auth/v1/authorize", params=params))

    async def reset_password_for_email(self, email: str) -> None:
        response = await self._request("POST", "/auth/v1/recover", json={"email": email})
        self._raise_for_status(response)

    async def update_user(
        self, *, password: Optional[str] = None, data: Optional[dict] = None
    ) -> User:
        session = await self._current_session()
        if session is None:
            raise NotAuthenticated("no active session")
        body: Dict[str, Any] = {}
        if password is not None:
            body["password"] = password
        if data is not None:
            body["data"] = data
        response = await self._request(
            "PUT", "/auth/v1/user", json=body, access_token=session.access_token
        )
        self._raise_for_status(response)
        user = User.from_dict(response.json())
        session.user = user
        return user

    async def health(self) -> dict:
        response = await self._request("GET", "/auth/v1/health")
        self._raise_for_status(response)
        try:
            return response.json()
        except ValueError:
            return {}

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
