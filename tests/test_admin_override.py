"""Tests for the break-glass admin override manager."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from authsync.service import admin_override
from authsync.service.admin_override import AdminOverrideManager, AllowlistApprover
from authsync.service.errors import AdminOverrideMisuse
from authsync.storage.errors import StorageUnavailable
from authsync.storage.memory import MemoryKeyValueStore
from authsync.storage.models import AdminOverride, Profile, User, UserRole

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class BrokenStore:
    """Key-value store whose backend is down."""

    async def get(self, key):
        raise StorageUnavailable("down")

    async def set(self, key, value, *, ttl_seconds=None):
        raise StorageUnavailable("down")

    async def delete(self, key):
        raise StorageUnavailable("down")


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def clock():
    return Clock(NOW)


def build(kv, clock, *, approvers=("lead@x.com",), primary=None, fallback=None) -> AdminOverrideManager:
    return AdminOverrideManager(
        primary if primary is not None else kv.namespaced("admin_override"),
        fallback if fallback is not None else kv.namespaced("admin_override_fallback"),
        approver=AllowlistApprover(approvers),
        audit_store=kv.namespaced("audit"),
        max_hours=24.0,
        clock=clock,
    )


class TestEnableOverride:
    async def test_override_expires(self, kv, clock):
        manager = build(kv, clock)
        override = await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")

        assert override.expires_at == NOW + timedelta(hours=1)
        assert override.approved_by == "lead@x.com"
        assert await manager.has_valid_override("ops@x.com", now=NOW)
        assert await manager.has_valid_override("OPS@x.com", now=NOW + timedelta(minutes=59))
        assert not await manager.has_valid_override("ops@x.com", now=NOW + timedelta(hours=2))
        assert not await manager.has_valid_override("someone@x.com", now=NOW)

    async def test_written_to_both_stores(self, kv, clock):
        await build(kv, clock).enable_override("ops@x.com", 2, approved_by="lead@x.com")
        primary = await kv.get("admin_override:override")
        fallback = await kv.get("admin_override_fallback:override")
        assert primary == fallback
        assert AdminOverride.from_dict(primary).email == "ops@x.com"

    async def test_unknown_approver_is_denied_and_audited(self, kv, clock):
        manager = build(kv, clock)
        with pytest.raises(AdminOverrideMisuse) as exc_info:
            await manager.enable_override("ops@x.com", 1, approved_by="intruder@x.com")

        assert exc_info.value.error_code == "admin_override_misuse"
        assert exc_info.value.detail["reason"] == "approver_rejected"
        assert not await manager.has_valid_override("ops@x.com")
        trail = await manager.audit_trail()
        assert [e["action"] for e in trail] == ["denied"]
        assert trail[0]["approved_by"] == "intruder@x.com"

    async def test_empty_allowlist_denies_everything(self, kv, clock):
        manager = build(kv, clock, approvers=())
        with pytest.raises(AdminOverrideMisuse):
            await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")

    async def test_self_approval_is_denied(self, kv, clock):
        manager = build(kv, clock, approvers=("ops@x.com",))
        with pytest.raises(AdminOverrideMisuse):
            await manager.enable_override("ops@x.com", 1, approved_by="OPS@x.com")

    @pytest.mark.parametrize(
        "hours,reason",
        [(0, "non_positive_duration"), (-1, "non_positive_duration"), (24.5, "duration_exceeds_limit")],
    )
    async def test_duration_bounds(self, kv, clock, hours, reason):
        manager = build(kv, clock)
        with pytest.raises(AdminOverrideMisuse) as exc_info:
            await manager.enable_override("ops@x.com", hours, approved_by="lead@x.com")
        assert exc_info.value.detail["reason"] == reason

    async def test_no_reachable_store_is_denied(self, kv, clock):
        manager = build(kv, clock, primary=BrokenStore(), fallback=BrokenStore())
        with pytest.raises(AdminOverrideMisuse) as exc_info:
            await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")
        assert exc_info.value.detail["reason"] == "no_store_available"


class TestRedundancy:
    async def test_broken_primary_falls_back(self, kv, clock):
        manager = build(kv, clock, primary=BrokenStore())
        await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")
        assert await manager.has_valid_override("ops@x.com")
        assert (await manager.current_override()).email == "ops@x.com"

    async def test_any_store_with_valid_override_counts(self, kv, clock):
        manager = build(kv, clock)
        expired = AdminOverride(email="ops@x.com", expires_at=NOW - timedelta(hours=1), created_at=NOW)
        valid = AdminOverride(email="ops@x.com", expires_at=NOW + timedelta(hours=1), created_at=NOW)
        await kv.set("admin_override:override", expired.to_dict())
        await kv.set("admin_override_fallback:override", valid.to_dict())
        assert await manager.has_valid_override("ops@x.com")


class TestIsAdminAndClear:
    async def test_is_admin_sources(self, kv, clock):
        manager = build(kv, clock)
        user = User(id="u1", email="ops@x.com")
        admin_profile = Profile(id="u1", email="ops@x.com", role=UserRole.ADMIN)
        plain_profile = Profile(id="u1", email="ops@x.com")

        assert await manager.is_admin(user, admin_profile)
        assert not await manager.is_admin(user, plain_profile)
        assert not await manager.is_admin(None, None)

        await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")
        assert await manager.is_admin(user, plain_profile)
        assert await manager.is_admin(user, None)

    async def test_clear_removes_override_everywhere(self, kv, clock):
        manager = build(kv, clock)
        await manager.enable_override("ops@x.com", 1, approved_by="lead@x.com")
        await manager.clear_override(actor="ops@x.com")

        assert not await manager.has_valid_override("ops@x.com")
        assert await manager.current_override() is None
        assert [e["action"] for e in await manager.audit_trail()] == ["enabled", "cleared"]

    async def test_audit_trail_is_bounded(self, kv, clock, monkeypatch):
        monkeypatch.setattr(admin_override, "MAX_AUDIT_EVENTS", 3)
        manager = build(kv, clock)
        for _ in range(5):
            await manager.clear_override()
        assert len(await manager.audit_trail()) == 3
