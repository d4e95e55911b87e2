from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a profile insert collides with an existing row."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class RecordNotFound(Exception):
    """Raised when an update targets a row that does not exist."""


class StorageUnavailable(Exception):
    """Raised when a backing store cannot be reached."""


__all__ = ["ConstraintViolation", "RecordNotFound", "StorageUnavailable"]
