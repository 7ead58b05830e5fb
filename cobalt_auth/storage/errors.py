from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when the persistent store cannot complete an operation."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreTimeout(StoreError):
    """Raised when a store call exceeds its bounded timeout."""


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class CacheError(Exception):
    """Raised when the ephemeral key-value cache is unreachable or errors."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheTimeout(CacheError):
    """Raised when a cache call exceeds its bounded timeout."""


__all__ = [
    "StoreError",
    "StoreTimeout",
    "ConstraintViolation",
    "CacheError",
    "CacheTimeout",
]
