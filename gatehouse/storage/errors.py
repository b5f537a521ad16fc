from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class PersistenceError(Exception):
    """Raised when a write cannot reach or be committed by the backing store."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SessionBackendError(Exception):
    """Raised when the session backend cannot save or destroy a session."""


__all__ = ["ConstraintViolation", "PersistenceError", "SessionBackendError"]
