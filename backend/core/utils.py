"""
Utility functions for the banking workflow engine.

Includes:
- UTC datetime helpers
- Transaction reference generation
- Pagination helpers
- Dotted path helpers for JSON documents
"""

import secrets
from datetime import datetime, timezone
from typing import Any, List, TypeVar

T = TypeVar("T")

_MISSING = object()


def utc_now() -> datetime:
    """
    Get the current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:
    """Return the current UTC time as a naive datetime.

    Timestamp columns are stored without timezone, so every value written
    to or compared against them is naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_reference(prefix: str = "TXN") -> str:
    """
    Generate a unique transaction reference.

    Format: ``<PREFIX>-<epoch millis>-<8 random upper hex chars>``.

    Args:
        prefix: Reference prefix (``TXN`` or ``REV``)

    Returns:
        Reference string usable as a ledger idempotency key
    """
    millis = int(utc_now().timestamp() * 1000)
    return f"{prefix}-{millis}-{secrets.token_hex(4).upper()}"


def get_path(data: Any, path: str, default: Any = _MISSING) -> Any:
    """Read a dotted path (``a.b.0.c``) from nested dicts/lists.

    Raises KeyError when the path is missing and no default is given.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            if default is not _MISSING:
                return default
            raise KeyError(path)
    return current


def set_path(data: dict, path: str, value: Any) -> dict:
    """Write ``value`` at a dotted path, creating intermediate dicts."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value
    return data


def paginate(
    items: List[T],
    total: int,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    """
    Helper to create paginated response.

    Args:
        items: List of items for current page
        total: Total number of items across all pages
        page: Current page number (1-indexed)
        per_page: Number of items per page

    Returns:
        Dictionary with pagination metadata
    """
    total_pages = (total + per_page - 1) // per_page
    return {
        "items": items,
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """
    Calculate database offset from page and per_page values.

    Args:
        page: Page number (1-indexed)
        per_page: Items per page

    Returns:
        Offset for database queries
    """
    return (page - 1) * per_page
