from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from authsync.config import CacheBackend, Settings, get_settings
from authsync.logging import get_logger
from authsync.service.admin_override import AdminOverrideManager, AllowlistApprover
from authsync.service.profiles import ProfileRepository, RestProfileRepository
from authsync.service.provider import GoTrueClient, IdentityProviderClient
from authsync.service.reconciler import ProfileReconciler, SignupMetadataStash
from authsync.service.recovery_cache import RecoveryCache
from authsync.service.retry import RetryPolicy
from authsync.service.session_store import SessionStore
from authsync.storage.common import KeyValueStore
from authsync.storage.memory import MemoryKeyValueStore
from authsync.storage.models import utcnow
from authsync.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def build_kv_store(settings: Settings) -> Any:
    if settings.cache_backend is CacheBackend.REDIS:
        logger.info("runtime_kv_store", backend="redis", redis_url=_mask_url_password(settings.redis_url))
        return RedisKeyValueStore(settings.redis_url)
    logger.info(
        "runtime_kv_store",
        backend="memory",
        persistent=bool(settings.state_dir),
        encrypted=bool(settings.cache_encryption_key),
    )
    return MemoryKeyValueStore(settings.state_dir, encryption_key=settings.cache_encryption_key)


def build_override_fallback_store(settings: Settings) -> MemoryKeyValueStore:
    """File store for the second override copy, independent of the cache backend."""
    fs_root = settings.admin_override_fallback_dir
    if fs_root is None and settings.state_dir:
        fs_root = str(Path(settings.state_dir) / "admin_override")
    if fs_root is None:
        logger.warning("admin_override_fallback_not_persistent")
    return MemoryKeyValueStore(fs_root, encryption_key=settings.cache_encryption_key)


def build_admin_override_manager(
    settings: Settings,
    namespace: KeyValueStore,
    *,
    fallback_store: Optional[Any] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AdminOverrideManager:
    if fallback_store is None:
        fallback_store = build_override_fallback_store(settings)
    return AdminOverrideManager(
        namespace.namespaced("admin_override"),
        fallback_store.namespaced(settings.key_namespace).namespaced("admin_override"),
        approver=AllowlistApprover(settings.approvers),
        audit_store=namespace.namespaced("audit"),
        max_hours=settings.admin_override_max_hours,
        clock=clock,
    )


class Runtime:
    """Builds one SessionStore and the collaborators it is injected with.

    Nothing here is process-wide: two runtimes over the same key-value store
    stay apart as long as their ``key_namespace`` differs.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[IdentityProviderClient] = None,
        profile_repository: Optional[ProfileRepository] = None,
        kv_store: Optional[Any] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self.kv_store = kv_store if kv_store is not None else build_kv_store(s)
        namespace = self.kv_store.namespaced(s.key_namespace)

        self.provider = provider or GoTrueClient(
            s.provider_url,
            s.provider_api_key,
            timeout=s.http_timeout_seconds,
            retry_policy=RetryPolicy.from_ms(s.provider_max_attempts, s.provider_backoff_base_ms),
            storage=namespace.namespaced("provider"),
        )
        self.profile_repository = profile_repository or RestProfileRepository(
            s.provider_url,
            s.provider_api_key,
            table=s.profile_table,
            timeout=s.http_timeout_seconds,
            access_token_provider=self._access_token,
        )
        self.recovery_cache = RecoveryCache(
            namespace.namespaced("recovery"), ttl_seconds=s.recovery_cache_ttl
        )
        self.signup_stash = SignupMetadataStash(
            namespace.namespaced("signup"), ttl_seconds=s.signup_metadata_ttl_seconds
        )
        self.reconciler = ProfileReconciler(
            self.profile_repository,
            self.recovery_cache,
            self.signup_stash,
            retry_policy=RetryPolicy.from_ms(
                s.profile_max_attempts,
                s.profile_backoff_base_ms,
                s.profile_backoff_factor,
                jitter=s.profile_backoff_jitter,
            ),
        )
        self.override_fallback_store = build_override_fallback_store(s)
        self.admin_overrides = build_admin_override_manager(
            s, namespace, fallback_store=self.override_fallback_store
        )
        self.session_store = SessionStore(
            self.provider,
            self.reconciler,
            self.recovery_cache,
            self.admin_overrides,
            self.signup_stash,
            safety_timeout_seconds=s.safety_timeout_seconds,
            recovery_read_timeout_seconds=s.recovery_read_timeout_seconds,
            debounce_seconds=s.event_debounce_seconds,
        )
        logger.info(
            "runtime_initialized",
            cache_backend=s.cache_backend.value,
            key_namespace=s.key_namespace,
            safety_timeout_seconds=s.safety_timeout_seconds,
        )

    def _access_token(self) -> Optional[str]:
        session = self.session_store.current_state().session
        return session.access_token if session else None

    async def verify_storage(self) -> None:
        """Fail fast when the configured key-value backend is unreachable."""
        verify = getattr(self.kv_store, "verify_connection", None)
        if verify is not None:
            await verify()

    async def close(self) -> None:
        await self.session_store.dispose()
        for resource in (self.provider, self.profile_repository, self.kv_store):
            close = getattr(resource, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as exc:
                logger.warning(
                    "runtime_close_failed", resource=type(resource).__name__, error=str(exc)
                )
        logger.info("runtime_closed")
