"""Shared utility functions for date handling and request parsing.

parse_date:      lenient, returns None on bad input
parse_due_date:  strict, raises ValidationError on malformed input
as_utc:          naive datetimes from SQLite are treated as UTC
"""
import logging
from datetime import date, datetime, time, timezone

from app.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def as_utc(value):
    """Return ``value`` as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utcnow():
    return datetime.now(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD
    - YYYY-MM-DDTHH:MM:SS (→ .date())
    - DD.MM.YYYY
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_due_date(value):
    """Parse a due date into an aware UTC datetime.

    A bare date means the end of that day (23:59:59 UTC), so work due
    "on the 5th" is not overdue until the 5th is over.

    Raises:
        ValidationError: non-empty input that is not a recognizable date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time(23, 59, 59), tzinfo=timezone.utc)
    text = str(value).strip()
    if "T" in text or " " in text:
        try:
            return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
        except ValueError:
            pass
    parsed = parse_date(text)
    if parsed is None:
        raise ValidationError(
            f"Invalid due date: {value!r}. Use YYYY-MM-DD or an ISO datetime.",
            details={"due_date": "invalid format"},
        )
    return datetime.combine(parsed, time(23, 59, 59), tzinfo=timezone.utc)


def parse_id(value, field):
    """Coerce a single JSON id to int; None stays None."""
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id", details={field: "invalid id"})
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer id", details={field: "invalid id"}) from exc


def parse_id_list(values, field):
    """Coerce a JSON list of ids to a list of ints, raising ValidationError otherwise."""
    if values in (None, ""):
        return []
    if not isinstance(values, list):
        raise ValidationError(f"{field} must be a list", details={field: "expected list"})
    ids = [parse_id(v, field) for v in values]
    if None in ids:
        raise ValidationError(f"{field} must contain integer ids", details={field: "invalid id"})
    return ids
