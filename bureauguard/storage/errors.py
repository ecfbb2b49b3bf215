from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when a backing store is unreachable or a statement fails.

    A lookup that simply finds nothing is not a StorageError.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageInitError(StorageError):
    """Raised when a store cannot be constructed in a usable state."""


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "StorageError", "StorageInitError"]
