"""
Shared helpers for service-layer input handling.

Usage:
    from audit_engine.utils.helpers import parse_datetime, as_utc

    due = parse_datetime(data.get("due_date"), "due_date")
"""

from datetime import date, datetime, time, timezone

from audit_engine.core.exceptions import ValidationError


def as_utc(value):
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value, field="date"):
    """Parse an ISO date or datetime string into an aware UTC datetime.

    Returns None for empty input. A bare date means midnight UTC.

    Raises:
        ValidationError: unparseable input.
    """
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: expected ISO 8601", details={field: str(value)}) from exc


def parse_pagination(filters, default_limit=20, max_limit=100):
    """Return (page, limit) from a filters dict; both at least 1."""
    try:
        page = max(int(filters.get("page", 1)), 1)
        limit = min(max(int(filters.get("limit", default_limit)), 1), max_limit)
    except (TypeError, ValueError) as exc:
        raise ValidationError("page and limit must be integers") from exc
    return page, limit
