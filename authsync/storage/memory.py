from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import tempfile
import threading
from dataclasses import fields, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from authsync.logging import get_logger
from authsync.storage.common import NamespacedStore
from authsync.storage.errors import ConstraintViolation, RecordNotFound
from authsync.storage.models import Profile, UserRole, UserStatus, utcnow

_PROTECTED_PROFILE_FIELDS = frozenset({"id", "created_at"})
_PROFILE_FIELDS = frozenset(f.name for f in fields(Profile))


class MemoryKeyValueStore:
    """In-process key-value store with optional JSON file persistence.

    With ``fs_root`` set, every write is flushed to
    ``<fs_root>/state/kv_store.json`` so snapshots survive a restart. With an
    ``encryption_key`` the file is Fernet-encrypted at rest.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self._data: Dict[str, Dict[str, Any]] = {}
        # RLock so persistence can run inside a locked write
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        self._cipher = self._build_cipher(encryption_key) if encryption_key else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        try:
            return Fernet(self._derive_cipher_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize cache cipher") from exc

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "kv_store.json"

    @staticmethod
    def _is_expired(record: Dict[str, Any], now: datetime) -> bool:
        raw = record.get("expires_at")
        if not raw:
            return False
        return datetime.fromisoformat(raw) <= now

    async def get(self, key: str) -> Optional[dict]:
        with self._data_lock:
            record = self._data.get(key)
            if record is None:
                return None
            if self._is_expired(record, utcnow()):
                self._data.pop(key, None)
                self._persist_state()
                return None
            return copy.deepcopy(record["value"])

    async def set(
        self, key: str, value: dict, *, ttl_seconds: Optional[int] = None
    ) -> None:
        expires_at = None
        if ttl_seconds is not None and ttl_seconds > 0:
            expires_at = (utcnow() + timedelta(seconds=ttl_seconds)).isoformat()
        with self._data_lock:
            self._data[key] = {"value": copy.deepcopy(value), "expires_at": expires_at}
            self._persist_state()

    async def delete(self, key: str) -> None:
        with self._data_lock:
            if self._data.pop(key, None) is not None:
                self._persist_state()

    def namespaced(self, prefix: str) -> NamespacedStore:
        return NamespacedStore(self, prefix)

    def keys(self) -> list[str]:
        with self._data_lock:
            return sorted(self._data.keys())

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        payload = json.dumps({"entries": self._data}).encode()
        if self._cipher is not None:
            payload = self._cipher.encrypt(payload)
        path = self._state_path()
        # Write to a temp file then rename so a crash never leaves half a file
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".kv_", suffix=".tmp")
        try:
            try:
                os.write(fd, payload)
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        raw = path.read_bytes()
        if self._cipher is not None:
            try:
                raw = self._cipher.decrypt(raw)
            except InvalidToken:
                self.logger.error("kv_store_decrypt_failed", path=str(path))
                return False
        try:
            state = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self.logger.error("kv_store_load_failed", path=str(path), error=str(exc))
            return False
        entries = state.get("entries") if isinstance(state, dict) else None
        if not isinstance(entries, dict):
            return False
        with self._data_lock:
            self._data = entries
        return True


class MemoryProfileRepository:
    """Profile repository kept in a dict; used for tests and offline runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.profiles: Dict[str, Profile] = {}
        self._data_lock = threading.RLock()

    async def get_by_id(self, profile_id: str) -> Optional[Profile]:
        with self._data_lock:
            profile = self.profiles.get(profile_id)
            return replace(profile) if profile else None

    async def insert(self, profile: Profile) -> Profile:
        with self._data_lock:
            if profile.id in self.profiles:
                self.logger.info("profile_insert_conflict", profile_id=profile.id)
                raise ConstraintViolation(
                    "profile already exists", {"id": profile.id}
                )
            self.profiles[profile.id] = replace(profile)
            return replace(profile)

    async def update(self, profile_id: str, patch: Dict[str, Any]) -> Profile:
        with self._data_lock:
            current = self.profiles.get(profile_id)
            if current is None:
                raise RecordNotFound(profile_id)
            changes = {
                k: v
                for k, v in patch.items()
                if k in _PROFILE_FIELDS and k not in _PROTECTED_PROFILE_FIELDS
            }
            if "role" in changes:
                changes["role"] = UserRole(changes["role"])
            if "status" in changes:
                changes["status"] = UserStatus(changes["status"])
            if isinstance(changes.get("updated_at"), str):
                changes["updated_at"] = datetime.fromisoformat(changes["updated_at"])
            changes.setdefault("updated_at", utcnow())
            updated = replace(current, **changes)
            self.profiles[profile_id] = updated
            return replace(updated)
