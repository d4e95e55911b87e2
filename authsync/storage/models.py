from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _deserialize_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        dt = raw
    elif isinstance(raw, (int, float)):
        dt = datetime.fromtimestamp(raw, tz=timezone.utc)
    else:
        # PostgREST and GoTrue emit a trailing Z
        dt = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    TEAM_MEMBER = "team_member"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BANNED = "banned"
    PENDING = "pending"


@dataclass
class User:
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        return cls(
            id=str(data["id"]),
            email=data.get("email") or "",
            metadata=dict(data.get("metadata") or data.get("user_metadata") or {}),
        )


@dataclass
class Session:
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    user: Optional[User] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": _serialize_datetime(self.expires_at),
            "user": self.user.to_dict() if self.user else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        user = data.get("user")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "bearer",
            expires_at=_deserialize_datetime(data["expires_at"]),
            user=User.from_dict(user) if user else None,
        )

    @classmethod
    def from_token_response(cls, payload: dict, *, now: Optional[datetime] = None) -> "Session":
        """Build a session from a GoTrue token grant response."""
        expires_at = _deserialize_datetime(payload.get("expires_at"))
        if expires_at is None:
            expires_at = (now or utcnow()) + timedelta(seconds=int(payload.get("expires_in") or 3600))
        user_payload = payload.get("user")
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            token_type=payload.get("token_type") or "bearer",
            expires_at=expires_at,
            user=User.from_dict(user_payload) if user_payload else None,
        )


@dataclass
class Profile:
    id: str
    email: str
    role: UserRole = UserRole.USER
    status: UserStatus = UserStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def fallback_for(cls, user: User, *, now: Optional[datetime] = None) -> "Profile":
        """Minimal in-memory profile used when the store cannot be reached."""
        ts = now or utcnow()
        return cls(
            id=user.id,
            email=user.email,
            role=UserRole.USER,
            status=UserStatus.ACTIVE,
            created_at=ts,
            updated_at=ts,
        )

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = _serialize_datetime(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Profile":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["id"] = str(values["id"])
        values["email"] = values.get("email") or ""
        values["role"] = UserRole(values.get("role") or UserRole.USER)
        values["status"] = UserStatus(values.get("status") or UserStatus.ACTIVE)
        for ts_field in ("created_at", "updated_at"):
            values[ts_field] = _deserialize_datetime(values.get(ts_field)) or utcnow()
        return cls(**values)


@dataclass
class AdminOverride:
    email: str
    expires_at: datetime
    active: bool = True
    approved_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_valid_for(self, email: Optional[str], now: Optional[datetime] = None) -> bool:
        if not self.active or not email:
            return False
        if self.email.strip().lower() != email.strip().lower():
            return False
        return (now or utcnow()) < self.expires_at

    def to_dict(self) -> dict:
        return {
            "active": self.active,
            "email": self.email,
            "expires_at": _serialize_datetime(self.expires_at),
            "approved_by": self.approved_by,
            "created_at": _serialize_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AdminOverride":
        return cls(
            active=bool(data.get("active")),
            email=data.get("email") or "",
            expires_at=_deserialize_datetime(data["expires_at"]),
            approved_by=data.get("approved_by"),
            created_at=_deserialize_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass
class CacheEntry:
    user_id: str
    user: User
    profile: Optional[Profile] = None
    cached_at: datetime = field(default_factory=utcnow)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.cached_at

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "user": self.user.to_dict(),
            "profile": self.profile.to_dict() if self.profile else None,
            "cached_at": _serialize_datetime(self.cached_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        profile = data.get("profile")
        return cls(
            user_id=str(data["user_id"]),
            user=User.from_dict(data["user"]),
            profile=Profile.from_dict(profile) if profile else None,
            cached_at=_deserialize_datetime(data.get("cached_at")) or utcnow(),
        )
