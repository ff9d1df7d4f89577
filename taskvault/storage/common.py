"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from taskvault.storage.errors import InvalidIdentifier


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_identifier(value: Any, kind: str = "resource") -> str:
    """Return the canonical string form of a uuid id.

    Raises:
        InvalidIdentifier: if ``value`` is not a uuid.
    """
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError) as exc:
        raise InvalidIdentifier(value, kind) from exc


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Extract a column from a dict row or attribute-style row."""
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
