from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(Exception):
    """Raised when the backing store cannot be reached.

    Distinct from a missing row: callers must treat the current request as
    failed rather than as "not found".
    """

    def __init__(self, message: str, *, backend: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.detail = detail or {}


class InvalidFilter(ValueError):
    """Raised when a list filter references an unknown field or is malformed."""


__all__ = ["ConstraintViolation", "StorageUnavailable", "InvalidFilter"]
