"""
Timestamp, identifier and amount normalisation.

Rows in the ledger may have been written by this server, by an older
client or typed in by hand by the salon owner, so ``created_at`` can be
an ISO string, a ``day/month/year, time`` string in the Vietnamese
locale layout, a time-first variant or an epoch number.  Everything
that compares or groups rows by time goes through
:func:`normalize_timestamp` first, which always yields a naive
datetime in local wall-clock time.

All day and month boundaries are local time: daily revenue is a
single-timezone, small-business notion and "today" must mean the
salon's today, not UTC's.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
import time
from datetime import date, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Tuple

logger = logging.getLogger(__name__)

_ISO_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})"
    r"(?:[T ](\d{2}:\d{2}(?::\d{2})?)(?:\.(\d+))?)?"
    r"(Z|[+-]\d{2}:?\d{2})?$"
)
_DMY_RE = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})"
    r"(?:,?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)
_TIME_FIRST_RE = re.compile(
    r"^(\d{1,2}):(\d{2})(?::(\d{2}))?,?\s+"
    r"(\d{1,2})/(\d{1,2})/(\d{4}|\d{2})$"
)
_FALLBACK_FORMATS = (
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y/%m/%d",
    "%a %b %d %Y %H:%M:%S",
    "%b %d, %Y %H:%M:%S",
    "%b %d, %Y",
)

# Epoch values above this are taken to be milliseconds.
_MILLIS_THRESHOLD = 1e11

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_local_naive(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


def _year(text: str) -> int:
    value = int(text)
    return 2000 + value if len(text) == 2 else value


def _from_epoch(value: float) -> datetime:
    if value > _MILLIS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value)


def _parse_iso(match: re.Match) -> datetime:
    day_part, time_part, fraction, offset = match.groups()
    text = day_part
    if time_part:
        if len(time_part) == 5:
            time_part += ":00"
        text += "T" + time_part
        if fraction:
            text += "." + fraction[:6].ljust(6, "0")
    if offset:
        if offset == "Z":
            offset = "+00:00"
        elif ":" not in offset:
            offset = offset[:3] + ":" + offset[3:]
        text += offset
    return _to_local_naive(datetime.fromisoformat(text))


def _parse_string(text: str) -> Optional[datetime]:
    text = text.strip()
    if not text:
        return None

    match = _ISO_RE.match(text)
    if match:
        try:
            return _parse_iso(match)
        except ValueError:
            pass

    match = _DMY_RE.match(text)
    if match:
        d, m, y, hh, mm, ss = match.groups()
        try:
            return datetime(_year(y), int(m), int(d), int(hh or 0), int(mm or 0), int(ss or 0))
        except ValueError:
            pass

    match = _TIME_FIRST_RE.match(text)
    if match:
        hh, mm, ss, d, m, y = match.groups()
        try:
            return datetime(_year(y), int(m), int(d), int(hh), int(mm), int(ss or 0))
        except ValueError:
            pass

    # Generic parse: compact YYYYMMDD, bare epoch digits, RFC 2822, then
    # a few common layouts.
    if text.isdigit():
        if len(text) == 8:
            try:
                return datetime.strptime(text, "%Y%m%d")
            except ValueError:
                pass
        try:
            return _from_epoch(float(text))
        except (OverflowError, OSError, ValueError):
            return None
    try:
        return _to_local_naive(parsedate_to_datetime(text))
    except (TypeError, ValueError, IndexError):
        pass
    # JavaScript Date.toString() appends " GMT+0700 (Indochina Time)".
    stripped = re.sub(r"\s+GMT.*$", "", text)
    for fmt in _FALLBACK_FORMATS:
        try:
            return datetime.strptime(stripped, fmt)
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ``value`` into a local naive datetime, or ``None`` if impossible."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _to_local_naive(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        try:
            return _from_epoch(float(value))
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        return _parse_string(value)
    return None


def normalize_timestamp(value: Any) -> datetime:
    """Return the canonical local timestamp for ``value``.

    Accepts datetimes, dates, epoch numbers (seconds or milliseconds)
    and strings in any of the layouts handled by :func:`parse_timestamp`.
    Input that cannot be parsed at all maps to the current time; such a
    row was already corrupt and is merely placed at "now".
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        logger.warning("Unparseable timestamp %r, using current time", value)
        return datetime.now()
    return parsed


def format_timestamp(dt: datetime) -> str:
    """Canonical, lexicographically sortable form of a local timestamp."""
    return dt.isoformat(timespec="milliseconds")


def to_date_key(value: Any) -> str:
    """Local calendar day of ``value`` as ``YYYY-MM-DD``."""
    return normalize_timestamp(value).strftime("%Y-%m-%d")


def parse_day(value: Any) -> date:
    """Parse a day filter.  Raises ``ValueError`` for unusable input.

    Unlike :func:`normalize_timestamp` there is no fallback: silently
    answering a query for a bad date with today's orders would be
    misleading.
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid date: {value!r}")
    return parsed.date()


def day_window(value: Any) -> Tuple[datetime, datetime]:
    """Return the local ``[start, end)`` window of the day ``value`` falls on."""
    day = parse_day(value)
    start = datetime(day.year, day.month, day.day)
    return start, start + timedelta(days=1)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id() -> str:
    """Return a new order identifier.

    A base-36 millisecond clock followed by eight random base-36
    characters (about 41 bits).  Identifiers created in the same
    millisecond by different clients collide only if the random parts
    match, which at tens of writes per day is negligible.
    """
    millis = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return _base36(millis) + suffix


def parse_amount(value: Any) -> int:
    """Normalise a stored amount to a non-negative integer.

    Numbers are truncated; strings such as ``"100.000 đ"`` or
    ``"100,000"`` keep only their digits.  Anything else is 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        if not math.isfinite(value) or value < 0:
            return 0
        return int(value)
    digits = re.sub(r"\D", "", str(value))
    return int(digits) if digits else 0
