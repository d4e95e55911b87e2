"""Session reconciliation state machine.

A SessionStore owns the single observable AuthState for one client. Every
state change goes through ``_apply``, which is synchronous, so handlers are
serialized by the event loop. Network work runs in tasks tagged with the
generation they started under; a result whose generation is no longer
current is discarded.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from authsync.logging import get_logger, log_transition, set_correlation_id
from authsync.service.admin_override import AdminOverrideManager
from authsync.service.dispatcher import EventDispatcher
from authsync.service.errors import (
    Busy,
    ForbiddenError,
    NotAuthenticated,
    ProviderUnavailable,
    StoreDisposed,
)
from authsync.service.provider import AuthEvent, IdentityProviderClient
from authsync.service.reconciler import ProfileReconciler, ReconcileOutcome, SignupMetadataStash
from authsync.service.recovery_cache import RecoveryCache
from authsync.service.safety_timer import SafetyTimer
from authsync.storage.models import (
    CacheEntry,
    Profile,
    Session,
    User,
    UserRole,
    UserStatus,
    utcnow,
)

logger = get_logger(__name__)

# Fields a user may not change through update_profile
PROTECTED_PROFILE_FIELDS = frozenset({"id", "email", "role", "status"})


class AuthStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"
    RECOVERING = "recovering"
    DEGRADED = "degraded"


class ErrorKind(str, Enum):
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    INITIALIZATION_TIMEOUT = "initialization_timeout"


@dataclass(frozen=True)
class AuthState:
    status: AuthStatus = AuthStatus.UNINITIALIZED
    user: Optional[User] = None
    profile: Optional[Profile] = None
    session: Optional[Session] = None
    is_admin: bool = False
    error: Optional[ErrorKind] = None
    degraded: bool = False
    generation: int = 0
    # repository, created, cache or fallback
    profile_source: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.status is AuthStatus.AUTHENTICATED and self.user is not None

    @property
    def role(self) -> Optional[str]:
        return self.profile.role.value if self.profile else None


Subscriber = Callable[[AuthState], None]


class SessionStore:
    """Keeps user, profile and session consistent across provider, profile
    store and recovery cache."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        reconciler: ProfileReconciler,
        recovery_cache: RecoveryCache,
        admin_overrides: AdminOverrideManager,
        signup_stash: SignupMetadataStash,
        *,
        safety_timeout_seconds: float = 10.0,
        recovery_read_timeout_seconds: float = 1.0,
        debounce_seconds: float = 1.0,
        dispatcher_clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.provider = provider
        self.reconciler = reconciler
        self.recovery_cache = recovery_cache
        self.admin_overrides = admin_overrides
        self.signup_stash = signup_stash
        self.recovery_read_timeout_seconds = recovery_read_timeout_seconds

        self._state = AuthState()
        self._generation = 0
        self._subscribers: List[Subscriber] = []
        self._init_future: Optional[asyncio.Future] = None
        self._init_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self._admin_check_task: Optional[asyncio.Task] = None
        self._override_expiry: Optional[asyncio.TimerHandle] = None
        self._action_name: Optional[str] = None
        self._disposed = False

        self.timer = SafetyTimer(safety_timeout_seconds, self._on_safety_timeout)
        dispatcher_kwargs: Dict[str, Any] = {}
        if dispatcher_clock is not None:
            dispatcher_kwargs["clock"] = dispatcher_clock
        self.dispatcher = EventDispatcher(
            is_busy=self._is_busy,
            on_reconcile=self._on_provider_sign_in,
            on_signed_out=self._on_provider_signed_out,
            on_reset=self._on_reset,
            debounce_seconds=debounce_seconds,
            **dispatcher_kwargs,
        )
        self.dispatcher.attach(provider)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def current_state(self) -> AuthState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _apply(self, state: AuthState, *, reason: str) -> None:
        previous = self._state
        if state == previous:
            return
        self._state = state
        log_transition(
            previous.status.value,
            state.status.value,
            logger=logger,
            reason=reason,
            generation=state.generation,
            degraded=state.degraded,
            error=state.error.value if state.error else None,
        )
        for subscriber in list(self._subscribers):
            try:
                subscriber(state)
            except Exception as exc:
                logger.error("session_subscriber_failed", error=str(exc), reason=reason)

    def _is_current(self, generation: int, *, expect: Optional[AuthStatus] = None) -> bool:
        if generation != self._generation or (expect is not None and self._state.status is not expect):
            logger.info(
                "stale_result_discarded",
                generation=generation,
                current_generation=self._generation,
                status=self._state.status.value,
            )
            return False
        return True

    def _is_busy(self) -> bool:
        if self._init_future is not None or self._action_name is not None:
            return True
        return self._reconcile_task is not None and not self._reconcile_task.done()

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    async def _resolve_admin(self, user: Optional[User], profile: Optional[Profile]) -> bool:
        is_admin = await self.admin_overrides.is_admin(user, profile)
        if is_admin and user is not None and (profile is None or profile.role != UserRole.ADMIN):
            override = await self.admin_overrides.active_override_for(user.email)
            if override is not None:
                self._arm_override_expiry(override.expires_at)
        return is_admin

    def _arm_override_expiry(self, expires_at: datetime) -> None:
        self._cancel_override_expiry()
        delay = max((expires_at - self.admin_overrides.now()).total_seconds(), 0.0)
        self._override_expiry = asyncio.get_running_loop().call_later(
            delay, self._on_override_expired
        )

    def _cancel_override_expiry(self) -> None:
        if self._override_expiry is not None:
            self._override_expiry.cancel()
            self._override_expiry = None

    def _on_override_expired(self) -> None:
        self._override_expiry = None
        if self._disposed or not self._state.is_admin:
            return
        self._admin_check_task = asyncio.get_running_loop().create_task(self._recheck_admin())

    async def _recheck_admin(self) -> None:
        snapshot = self._state
        is_admin = await self._resolve_admin(snapshot.user, snapshot.profile)
        if is_admin or self._state is not snapshot:
            return
        self._revoke_admin(snapshot)

    def _revoke_admin(self, state: AuthState) -> None:
        logger.warning(
            "admin_override_expired", user_id=state.user.id if state.user else None
        )
        self._apply(replace(state, is_admin=False), reason="admin_override_expired")

    def _authenticated_state(
        self,
        generation: int,
        user: User,
        outcome: ReconcileOutcome,
        session: Optional[Session],
        is_admin: bool,
    ) -> AuthState:
        return AuthState(
            status=AuthStatus.AUTHENTICATED,
            user=user,
            profile=outcome.profile,
            session=session,
            is_admin=is_admin,
            generation=generation,
            profile_source=outcome.source,
        )

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------
    async def initialize(self) -> AuthState:
        """Resolve the current user once; concurrent callers share the attempt."""
        self._ensure_usable()
        if self._init_future is not None:
            return await asyncio.shield(self._init_future)
        if self._state.status is not AuthStatus.UNINITIALIZED:
            return self._state

        loop = asyncio.get_running_loop()
        generation = self._next_generation()
        self._init_future = loop.create_future()
        future = self._init_future
        self._apply(
            AuthState(status=AuthStatus.INITIALIZING, generation=generation), reason="initialize"
        )
        self.timer.start(generation)
        self._init_task = loop.create_task(self._run_initialize(generation))
        return await asyncio.shield(future)

    async def _run_initialize(self, generation: int) -> None:
        set_correlation_id()
        try:
            session = await self.provider.get_session()
            user = await self.provider.get_user() if session is not None else None
        except ProviderUnavailable as exc:
            logger.error("session_initialize_provider_unavailable", error=str(exc))
            self._settle_init(
                generation,
                AuthState(
                    status=AuthStatus.DEGRADED,
                    error=ErrorKind.PROVIDER_UNAVAILABLE,
                    degraded=True,
                    generation=generation,
                ),
                expect=AuthStatus.INITIALIZING,
            )
            return
        except Exception as exc:
            logger.error(
                "session_initialize_failed", error=str(exc), error_type=type(exc).__name__
            )
            session, user = None, None

        if session is None or user is None:
            self._settle_init(
                generation,
                AuthState(status=AuthStatus.UNAUTHENTICATED, generation=generation),
                expect=AuthStatus.INITIALIZING,
            )
            return

        outcome = await self.reconciler.reconcile(user)
        is_admin = await self._resolve_admin(user, outcome.profile)
        self._settle_init(
            generation,
            self._authenticated_state(generation, user, outcome, session, is_admin),
            expect=AuthStatus.INITIALIZING,
        )

    def _settle_init(self, generation: int, state: AuthState, *, expect: AuthStatus) -> bool:
        if self._init_future is None or not self._is_current(generation, expect=expect):
            return False
        self.timer.cancel()
        self._apply(state, reason="initialize_settled")
        self._resolve_init(state)
        return True

    def _resolve_init(self, state: AuthState) -> None:
        future, self._init_future = self._init_future, None
        self._init_task = None
        if future is not None and not future.done():
            future.set_result(state)

    def _on_safety_timeout(self, generation: int) -> None:
        if not self._is_current(generation, expect=AuthStatus.INITIALIZING):
            return
        if self._init_task is not None:
            self._init_task.cancel()
        self._apply(
            AuthState(status=AuthStatus.RECOVERING, generation=generation), reason="safety_timeout"
        )
        self._init_task = asyncio.get_running_loop().create_task(self._recover(generation))

    async def _read_recovery_snapshot(self) -> tuple[Optional[CacheEntry], bool]:
        entry = await self.recovery_cache.get_last()
        if entry is None:
            return None, False
        return entry, await self._resolve_admin(entry.user, entry.profile)

    async def _recover(self, generation: int) -> None:
        entry: Optional[CacheEntry] = None
        is_admin = False
        try:
            entry, is_admin = await asyncio.wait_for(
                self._read_recovery_snapshot(), self.recovery_read_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "recovery_cache_read_timeout", timeout_seconds=self.recovery_read_timeout_seconds
            )
        except Exception as exc:
            logger.warning("recovery_cache_read_failed", error=str(exc))

        if entry is None:
            state = AuthState(
                status=AuthStatus.DEGRADED,
                error=ErrorKind.INITIALIZATION_TIMEOUT,
                degraded=True,
                generation=generation,
            )
        else:
            logger.warning(
                "session_recovered_from_cache",
                user_id=entry.user.id,
                age_seconds=int(entry.age().total_seconds()),
            )
            state = AuthState(
                status=AuthStatus.AUTHENTICATED,
                user=entry.user,
                profile=entry.profile,
                session=None,
                is_admin=is_admin,
                degraded=True,
                generation=generation,
                profile_source="cache",
            )
        self._settle_init(generation, state, expect=AuthStatus.RECOVERING)

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------
    def _on_provider_sign_in(self, event: AuthEvent, session: Optional[Session]) -> None:
        if self._disposed:
            return
        generation = self._next_generation()
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._reconcile_from_event(generation, event, session)
        )

    async def _reconcile_from_event(
        self, generation: int, event: AuthEvent, session: Optional[Session]
    ) -> None:
        set_correlation_id()
        try:
            user = session.user if session is not None and session.user else None
            if user is None:
                user = await self.provider.get_user()
            if user is None:
                if self._is_current(generation):
                    self._apply(
                        AuthState(status=AuthStatus.UNAUTHENTICATED, generation=generation),
                        reason=event.value.lower(),
                    )
                return
            outcome = await self.reconciler.reconcile(user)
            is_admin = await self._resolve_admin(user, outcome.profile)
        except ProviderUnavailable as exc:
            logger.warning("event_reconcile_provider_unavailable", auth_event=event.value, error=str(exc))
            return
        except Exception as exc:
            logger.error("event_reconcile_failed", auth_event=event.value, error=str(exc))
            return
        if self._is_current(generation):
            self._apply(
                self._authenticated_state(
                    generation, user, outcome, session or self._state.session, is_admin
                ),
                reason=event.value.lower(),
            )

    def _on_provider_signed_out(self) -> None:
        if self._disposed or self._action_name == "sign_out":
            # sign_out() finishes the transition itself
            return
        self._interrupt(AuthState(status=AuthStatus.UNAUTHENTICATED), reason="signed_out")

    def _on_reset(self) -> None:
        if self._disposed:
            return
        self._interrupt(AuthState(status=AuthStatus.UNINITIALIZED), reason="auth_reset")

    def _cancel_tasks(self) -> List[asyncio.Task]:
        cancelled = []
        for task in (self._init_task, self._reconcile_task, self._admin_check_task):
            if task is not None and not task.done():
                task.cancel()
                cancelled.append(task)
        self._init_task = None
        self._reconcile_task = None
        self._admin_check_task = None
        self._cancel_override_expiry()
        return cancelled

    def _interrupt(self, state: AuthState, *, reason: str) -> None:
        """Cancel all in-flight work and move straight to ``state``."""
        generation = self._next_generation()
        self.timer.cancel()
        self._cancel_tasks()
        self.dispatcher.clear_window()
        settled = replace(state, generation=generation)
        self._apply(settled, reason=reason)
        self._resolve_init(settled)

    def reset(self) -> None:
        """Deliver an AuthReset: back to UNINITIALIZED, recovery cache untouched."""
        self.dispatcher.dispatch(AuthEvent.AUTH_RESET)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _ensure_usable(self) -> None:
        if self._disposed:
            raise StoreDisposed("session store has been disposed")

    @contextlib.asynccontextmanager
    async def _action(self, name: str):
        self._ensure_usable()
        if self._action_name is not None:
            raise Busy(f"{self._action_name} already in progress", detail={"action": name})
        if self._init_future is not None:
            raise Busy("initialization in progress", detail={"action": name})
        self._action_name = name
        set_correlation_id()
        logger.info("session_action_started", action=name)
        try:
            yield
        finally:
            self._action_name = None

    def _require_user(self) -> User:
        user = self._state.user
        if user is None or self._state.status is not AuthStatus.AUTHENTICATED:
            raise NotAuthenticated("no authenticated user")
        return user

    async def _adopt_session(self, session: Session, *, started: int, reason: str) -> AuthState:
        """Reconcile a session returned by an action begun at ``started``.

        A reset or sign-out delivered while the provider call was pending has
        moved the generation on; the late session is then discarded.
        """
        if not self._is_current(started):
            return self._state
        generation = self._next_generation()
        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
        self._reconcile_task = None
        user = session.user or await self.provider.get_user()
        if user is None:
            raise NotAuthenticated("provider returned a session without a user")
        outcome = await self.reconciler.reconcile(user)
        is_admin = await self._resolve_admin(user, outcome.profile)
        if self._is_current(generation):
            self._apply(
                self._authenticated_state(generation, user, outcome, session, is_admin),
                reason=reason,
            )
        return self._state

    async def sign_in(self, email: str, password: str) -> AuthState:
        async with self._action("sign_in"):
            started = self._generation
            session = await self.provider.sign_in(email, password)
            return await self._adopt_session(session, started=started, reason="sign_in")

    async def sign_up(
        self, email: str, password: str, metadata: Optional[Dict[str, Any]] = None
    ) -> AuthState:
        async with self._action("sign_up"):
            started = self._generation
            session = await self.provider.sign_up(email, password, metadata)
            # Only an accepted signup may seed the profile row
            if metadata:
                await self.signup_stash.stash(email, metadata)
            if session is None:
                return self._state
            return await self._adopt_session(session, started=started, reason="sign_up")

    async def sign_in_with_oauth(self, provider: str, redirect_to: Optional[str] = None) -> str:
        """Return the provider's authorize URL; the redirect completes sign-in."""
        async with self._action("sign_in_with_oauth"):
            return await self.provider.sign_in_with_oauth(provider, redirect_to)

    async def sign_out(self) -> AuthState:
        async with self._action("sign_out"):
            user = self._state.user
            try:
                await self.provider.sign_out()
            finally:
                await self.admin_overrides.clear_override(actor=user.email if user else None)
                if user is not None:
                    try:
                        await self.recovery_cache.invalidate(user.id)
                    except Exception as exc:
                        logger.warning("recovery_cache_invalidate_failed", error=str(exc))
                self._interrupt(AuthState(status=AuthStatus.UNAUTHENTICATED), reason="sign_out")
            return self._state

    async def reset_password(self, email: str) -> None:
        async with self._action("reset_password"):
            await self.provider.reset_password_for_email(email)

    async def update_password(self, password: str) -> None:
        async with self._action("update_password"):
            self._require_user()
            await self.provider.update_user(password=password)

    async def refresh(self) -> AuthState:
        async with self._action("refresh"):
            started = self._generation
            session = await self.provider.refresh_session()
            return await self._adopt_session(session, started=started, reason="refresh")

    async def update_profile(self, patch: Dict[str, Any]) -> Profile:
        async with self._action("update_profile"):
            user = self._require_user()
            generation = self._generation
            changes = {k: v for k, v in patch.items() if k not in PROTECTED_PROFILE_FIELDS}
            changes["updated_at"] = utcnow().isoformat()
            profile = await self.reconciler.update_profile(user, changes)
            if self._is_current(generation):
                self._apply(
                    replace(self._state, profile=profile, profile_source="repository"),
                    reason="update_profile",
                )
            return profile

    async def refresh_profile(self) -> AuthState:
        async with self._action("refresh_profile"):
            await self._reload_profile(self._require_user())
            return self._state

    async def _reload_profile(self, user: User) -> None:
        generation = self._generation
        profile = await self.reconciler.repository.get_by_id(user.id)
        if profile is None:
            logger.warning("profile_refresh_missing", user_id=user.id)
            return
        await self.reconciler.remember(user, profile)
        is_admin = await self._resolve_admin(user, profile)
        if self._is_current(generation):
            self._apply(
                replace(self._state, profile=profile, is_admin=is_admin, profile_source="repository"),
                reason="refresh_profile",
            )

    async def _admin_update(self, name: str, user_id: str, patch: Dict[str, Any]) -> Profile:
        async with self._action(name):
            current = self._require_user()
            state = self._state
            # Overrides can lapse or be cleared out of band
            if not await self._resolve_admin(current, state.profile):
                if state.is_admin and self._state is state:
                    self._revoke_admin(state)
                raise ForbiddenError("admin privileges required", detail={"action": name})
            profile = await self.reconciler.repository.update(user_id, patch)
            logger.warning("profile_admin_update", action=name, target_user_id=user_id, **patch)
            if user_id == current.id:
                await self._reload_profile(current)
            return profile

    async def set_user_role(self, user_id: str, role: UserRole | str) -> Profile:
        return await self._admin_update("set_user_role", user_id, {"role": UserRole(role).value})

    async def set_user_status(self, user_id: str, status: UserStatus | str) -> Profile:
        return await self._admin_update(
            "set_user_status", user_id, {"status": UserStatus(status).value}
        )

    # ------------------------------------------------------------------
    # Diagnostics and lifecycle
    # ------------------------------------------------------------------
    async def verify_connection(self) -> Dict[str, Any]:
        details: Dict[str, Any] = {"status": self._state.status.value}
        try:
            health = getattr(self.provider, "health", None)
            if health is not None:
                await health()
            else:
                await self.provider.get_session()
            details["provider"] = "ok"
        except Exception as exc:
            details["provider"] = f"error: {exc}"
        try:
            ping = getattr(self.reconciler.repository, "ping", None)
            if ping is not None:
                await ping()
            elif self._state.user is not None:
                await self.reconciler.repository.get_by_id(self._state.user.id)
            details["profile_store"] = "ok"
        except Exception as exc:
            details["profile_store"] = f"error: {exc}"

        success = details["provider"] == "ok" and details["profile_store"] == "ok"
        message = "connection verified" if success else "connection check failed"
        logger.info("session_verify_connection", success=success, **details)
        return {"success": success, "message": message, "details": details}

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.dispatcher.detach()
        self.timer.cancel()
        cancelled = self._cancel_tasks()
        self._resolve_init(self._state)
        self._subscribers.clear()
        if cancelled:
            await asyncio.gather(*cancelled, return_exceptions=True)
        logger.info("session_store_disposed", generation=self._generation)
