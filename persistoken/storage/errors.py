from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised when a storage read or write cannot be completed."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness constraint is violated."""


__all__ = ["StoreError", "ConstraintViolation"]
