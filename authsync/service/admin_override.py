from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Protocol

from authsync.logging import get_logger
from authsync.service.errors import AdminOverrideMisuse
from authsync.storage.common import KeyValueStore
from authsync.storage.models import AdminOverride, Profile, User, UserRole, utcnow

logger = get_logger(__name__)

OVERRIDE_KEY = "override"
AUDIT_KEY = "trail"
MAX_AUDIT_EVENTS = 500


class OverrideApprover(Protocol):
    async def approve(self, email: str, approved_by: str) -> bool: ...


class AllowlistApprover:
    """Approves elevation only for configured approver identities.

    An empty allowlist denies everything, and nobody may approve their own
    elevation.
    """

    def __init__(self, approvers: Iterable[str]) -> None:
        self.approvers = frozenset(a.strip().lower() for a in approvers if a and a.strip())

    async def approve(self, email: str, approved_by: str) -> bool:
        approver = (approved_by or "").strip().lower()
        if not approver or approver not in self.approvers:
            return False
        return approver != email.strip().lower()


class AdminOverrideManager:
    """Time-boxed break-glass admin elevation.

    The override record is written to a primary and a fallback store; reads
    check the primary first and skip any store that fails. Every enable,
    denial and clear is appended to the audit trail.
    """

    def __init__(
        self,
        primary: KeyValueStore,
        fallback: Optional[KeyValueStore] = None,
        *,
        approver: OverrideApprover,
        audit_store: Optional[KeyValueStore] = None,
        max_hours: float = 24.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.stores: List[KeyValueStore] = [primary] + ([fallback] if fallback is not None else [])
        self.approver = approver
        self.audit_store = audit_store
        self.max_hours = max_hours
        self._clock = clock

    async def enable_override(
        self, email: str, duration_hours: float, *, approved_by: str
    ) -> AdminOverride:
        email = (email or "").strip()
        if not email or "@" not in email:
            await self._deny(email, approved_by, "invalid_email")
        if duration_hours <= 0:
            await self._deny(email, approved_by, "non_positive_duration")
        if duration_hours > self.max_hours:
            await self._deny(email, approved_by, "duration_exceeds_limit")
        if not await self.approver.approve(email, approved_by):
            await self._deny(email, approved_by, "approver_rejected")

        now = self._clock()
        override = AdminOverride(
            email=email,
            expires_at=now + timedelta(hours=duration_hours),
            active=True,
            approved_by=approved_by,
            created_at=now,
        )
        written = 0
        for index, store in enumerate(self.stores):
            try:
                await store.set(OVERRIDE_KEY, override.to_dict())
                written += 1
            except Exception as exc:
                logger.warning("admin_override_store_write_failed", store_index=index, error=str(exc))
        if not written:
            await self._deny(email, approved_by, "no_store_available")

        logger.warning(
            "admin_override_enabled",
            email=email,
            approved_by=approved_by,
            expires_at=override.expires_at.isoformat(),
            stores_written=written,
        )
        await self._audit(
            "enabled",
            email=email,
            approved_by=approved_by,
            expires_at=override.expires_at.isoformat(),
        )
        return override

    async def _deny(self, email: str, approved_by: Optional[str], reason: str) -> None:
        logger.warning("admin_override_denied", email=email, approved_by=approved_by, reason=reason)
        await self._audit("denied", email=email, approved_by=approved_by, reason=reason)
        raise AdminOverrideMisuse(
            "admin override denied", detail={"reason": reason, "approved_by": approved_by}
        )

    async def current_override(self) -> Optional[AdminOverride]:
        """First readable override record, primary store first."""
        for index, store in enumerate(self.stores):
            try:
                raw = await store.get(OVERRIDE_KEY)
            except Exception as exc:
                logger.warning("admin_override_store_read_failed", store_index=index, error=str(exc))
                continue
            if not raw:
                continue
            try:
                return AdminOverride.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("admin_override_corrupt_record", store_index=index, error=str(exc))
        return None

    def now(self) -> datetime:
        return self._clock()

    async def has_valid_override(self, email: Optional[str], now: Optional[datetime] = None) -> bool:
        return await self.active_override_for(email, now) is not None

    async def active_override_for(
        self, email: Optional[str], now: Optional[datetime] = None
    ) -> Optional[AdminOverride]:
        """The override currently elevating ``email``, if any store holds one."""
        if not email:
            return None
        at = now or self._clock()
        for index, store in enumerate(self.stores):
            try:
                raw = await store.get(OVERRIDE_KEY)
            except Exception as exc:
                logger.warning("admin_override_store_read_failed", store_index=index, error=str(exc))
                continue
            if not raw:
                continue
            try:
                override = AdminOverride.from_dict(raw)
            except (KeyError, TypeError, ValueError):
                continue
            if override.is_valid_for(email, at):
                return override
        return None

    async def is_admin(self, user: Optional[User], profile: Optional[Profile]) -> bool:
        if profile is not None and profile.role == UserRole.ADMIN:
            return True
        if user is None:
            return False
        return await self.has_valid_override(user.email)

    async def clear_override(self, *, actor: Optional[str] = None) -> None:
        for index, store in enumerate(self.stores):
            try:
                await store.delete(OVERRIDE_KEY)
            except Exception as exc:
                logger.warning("admin_override_store_clear_failed", store_index=index, error=str(exc))
        logger.warning("admin_override_cleared", actor=actor)
        await self._audit("cleared", actor=actor)

    async def _audit(self, action: str, **fields) -> None:
        if self.audit_store is None:
            return
        event = {"action": action, "at": self._clock().isoformat(), **fields}
        try:
            trail = await self.audit_store.get(AUDIT_KEY) or {}
            events = list(trail.get("events") or [])
            events.append(event)
            await self.audit_store.set(AUDIT_KEY, {"events": events[-MAX_AUDIT_EVENTS:]})
        except Exception as exc:
            logger.error("admin_override_audit_failed", action=action, error=str(exc))

    async def audit_trail(self) -> List[dict]:
        if self.audit_store is None:
            return []
        trail = await self.audit_store.get(AUDIT_KEY) or {}
        return list(trail.get("events") or [])
