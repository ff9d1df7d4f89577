from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class InvalidIdentifier(Exception):
    """Raised when a record id is not in the store's identifier format."""

    def __init__(self, value: Any, kind: str = "resource"):
        super().__init__(f"malformed {kind} id: {value!r}")
        self.value = value
        self.kind = kind


__all__ = ["ConstraintViolation", "InvalidIdentifier"]
