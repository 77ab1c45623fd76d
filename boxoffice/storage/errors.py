from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached within its timeout."""

    def __init__(self, backend: str, message: Optional[str] = None):
        super().__init__(message or f"{backend} unavailable")
        self.backend = backend


__all__ = ["ConstraintViolation", "StoreUnavailable"]
