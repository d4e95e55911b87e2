from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from authsync.logging import get_logger
from authsync.service.errors import ProfileTimeoutError
from authsync.service.profiles import ProfileRepository
from authsync.service.recovery_cache import RecoveryCache
from authsync.service.retry import RetryExhausted, RetryPolicy
from authsync.storage.common import KeyValueStore
from authsync.storage.errors import ConstraintViolation
from authsync.storage.models import CacheEntry, Profile, User, UserRole, UserStatus, utcnow

logger = get_logger(__name__)

SIGNUP_METADATA_FIELDS = ("first_name", "last_name", "company")


class SignupMetadataStash:
    """Single-use profile fields captured at sign-up, keyed by email.

    Consumed by the first profile creation for that address and then
    cleared, so a later sign-up on the same device cannot inherit them.
    """

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int = 24 * 60 * 60) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    async def stash(self, email: str, metadata: Dict[str, Any]) -> None:
        fields = {k: metadata[k] for k in SIGNUP_METADATA_FIELDS if metadata.get(k)}
        if not fields:
            return
        await self.store.set(
            self._key(email),
            {"email": self._key(email), "metadata": fields, "stashed_at": utcnow().isoformat()},
            ttl_seconds=self.ttl_seconds,
        )

    async def peek(self, email: str) -> Dict[str, Any]:
        record = await self.store.get(self._key(email))
        if not record or record.get("email") != self._key(email):
            return {}
        return dict(record.get("metadata") or {})

    async def clear(self, email: str) -> None:
        await self.store.delete(self._key(email))


@dataclass
class ReconcileOutcome:
    profile: Profile
    source: str
    error: Optional[ProfileTimeoutError] = None

    @property
    def is_fallback(self) -> bool:
        return self.source in ("cache", "fallback")


class ProfileReconciler:
    """Derives one Profile for a resolved User.

    ``reconcile`` never raises for repository trouble: after the retry policy
    runs out it falls back to a cached profile and finally to a synthesized
    one, tagging the outcome with ProfileTimeoutError.
    """

    def __init__(
        self,
        repository: ProfileRepository,
        recovery_cache: RecoveryCache,
        signup_stash: SignupMetadataStash,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.repository = repository
        self.recovery_cache = recovery_cache
        self.signup_stash = signup_stash
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep

    def _creation_payload(self, user: User, metadata: Dict[str, Any]) -> Profile:
        now = self._clock()
        profile = Profile(
            id=user.id,
            email=user.email,
            role=UserRole.USER,
            status=UserStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        for key in SIGNUP_METADATA_FIELDS:
            if metadata.get(key):
                setattr(profile, key, metadata[key])
        return profile

    async def ensure_profile(self, user: User) -> tuple[Optional[Profile], str]:
        """One attempt: read the row, creating it when absent."""
        existing = await self.repository.get_by_id(user.id)
        if existing is not None:
            return existing, "repository"

        metadata = await self.signup_stash.peek(user.email)
        payload = self._creation_payload(user, metadata)
        try:
            created = await self.repository.insert(payload)
        except ConstraintViolation:
            # Lost a creation race with another client; the row exists now
            logger.info("profile_insert_race", user_id=user.id)
            return await self.repository.get_by_id(user.id), "repository"
        if metadata:
            await self.signup_stash.clear(user.email)
        logger.info("profile_created", user_id=user.id, with_signup_metadata=bool(metadata))
        return created, "created"

    async def reconcile(self, user: User) -> ReconcileOutcome:
        def unusable(result: tuple[Optional[Profile], str]) -> bool:
            profile, _ = result
            if profile is None:
                return True
            if profile.id != user.id:
                logger.warning("profile_id_mismatch", user_id=user.id, profile_id=profile.id)
                return True
            return False

        def on_retry(attempt: int, delay: float, error: Optional[BaseException]) -> None:
            logger.warning(
                "profile_reconcile_retry",
                user_id=user.id,
                attempt=attempt,
                backoff_ms=int(delay * 1000),
                error=str(error) if error else "no profile returned",
            )

        try:
            profile, source = await self.retry_policy.run(
                lambda: self.ensure_profile(user),
                retry_on=(Exception,),
                retry_if_result=unusable,
                on_retry=on_retry,
                sleep=self._sleep,
            )
        except RetryExhausted as exc:
            return await self._fallback(user, exc)

        await self.remember(user, profile)
        return ReconcileOutcome(profile=profile, source=source)

    async def remember(self, user: User, profile: Profile) -> None:
        """Write the recovery snapshot; failures are logged, never raised."""
        entry = CacheEntry(user_id=user.id, user=user, profile=profile, cached_at=self._clock())
        try:
            await self.recovery_cache.put(user.id, entry)
        except Exception as exc:
            logger.warning("recovery_cache_write_failed", user_id=user.id, error=str(exc))

    async def _fallback(self, user: User, exc: RetryExhausted) -> ReconcileOutcome:
        error = ProfileTimeoutError(
            "profile could not be ensured",
            detail={"user_id": user.id, "attempts": exc.attempts, "last_error": str(exc.last_error)},
        )
        cached: Optional[CacheEntry] = None
        try:
            cached = await self.recovery_cache.get(user.id)
        except Exception as cache_exc:
            logger.warning("recovery_cache_read_failed", user_id=user.id, error=str(cache_exc))
        if cached is not None and cached.profile is not None and cached.profile.id == user.id:
            logger.warning("profile_reconcile_cache_fallback", user_id=user.id, attempts=exc.attempts)
            return ReconcileOutcome(profile=cached.profile, source="cache", error=error)

        profile = Profile.fallback_for(user, now=self._clock())
        await self.remember(user, profile)
        logger.warning("profile_reconcile_fallback", user_id=user.id, attempts=exc.attempts)
        return ReconcileOutcome(profile=profile, source="fallback", error=error)

    async def update_profile(self, user: User, patch: Dict[str, Any]) -> Profile:
        updated = await self.repository.update(user.id, patch)
        await self.remember(user, updated)
        return updated
