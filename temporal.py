"""
temporal.py
-----------
Invoice Record Builder: Temporal Normalizer
-------------------------------------------
Converts free-form date and date-time input into the two FHIR shapes the
bundle needs:

  * ``date``      Calendar date ``YYYY-MM-DD`` (Patient.birthDate).
  * ``dateTime``  Second-precision timestamp with an explicit numeric UTC
                  offset, e.g. ``2025-08-30T15:04:05+05:30``.  A ``Z`` suffix
                  is never emitted; UTC renders as ``+00:00``.

Day-first policy: in ``dd-mm-yyyy`` / ``dd/mm/yyyy`` input the first numeric
group is always the day and the second the month.  Two-digit years are
read as 19xx.  No locale-sensitive swapping is attempted.

Normalization misses are not errors: :func:`normalize_date` returns ``None``
and the caller omits the field.

Author: Invoice Record Builder team
Project: Invoice Record Builder
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Optional, Union

logger = logging.getLogger(__name__)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})[-/](\d{1,2})[-/](\d{2}|\d{4})$")

# Generic fallbacks tried after the ISO and day-first shapes.
_GENERIC_DATE_FORMATS = (
    "%d %b %Y",
    "%d %B %Y",
    "%b %d %Y",
    "%b %d, %Y",
    "%B %d %Y",
    "%B %d, %Y",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%d.%m.%Y",
)

WallClock = Union[str, datetime, None]


def normalize_date(value: Optional[str]) -> Optional[str]:
    """
    Normalize a free-form date string to ``YYYY-MM-DD``.

    Accepted shapes, tried in order:
      1. ISO calendar date ``YYYY-MM-DD``; impossible dates
         (``2024-02-30``) are misses.
      2. ``dd-mm-yyyy`` / ``dd/mm/yyyy`` / ``d-m-yy`` (day first; 2-digit
         years are 19xx).  Impossible dates (``31-02-1990``) are misses.
      3. Any ISO 8601 date-time, or one of ``_GENERIC_DATE_FORMATS``.

    Returns:
        The calendar date string, or ``None`` when nothing applies.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    if _ISO_DATE_RE.match(text):
        try:
            return date.fromisoformat(text).isoformat()
        except ValueError:
            logger.warning("temporal: '%s' is not a valid calendar date.", text)
            return None

    match = _DAY_FIRST_RE.match(text)
    if match:
        day, month, year = match.groups()
        full_year = int("19" + year) if len(year) == 2 else int(year)
        try:
            return date(full_year, int(month), int(day)).isoformat()
        except ValueError:
            logger.warning("temporal: '%s' is not a valid day-first date.", text)
            return None

    parsed = _parse_generic(text)
    if parsed is None:
        logger.warning("temporal: could not normalize date '%s'.", text)
        return None
    return parsed.isoformat()


def _parse_generic(text: str) -> Optional[date]:
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _GENERIC_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def to_offset_timestamp(local_wall_clock: WallClock = None) -> str:
    """
    Render a timestamp with an explicit numeric UTC offset.

    Args:
        local_wall_clock: ``None`` for *now*; a ``datetime-local`` style
            string (``YYYY-MM-DDTHH:MM[:SS]``); or a ``datetime``.  Naive
            values are interpreted in the executing environment's local
            timezone, using the offset in force at that instant.  Aware
            values keep their own offset.

    Returns:
        ``YYYY-MM-DDTHH:MM:SS+HH:MM``.

    Raises:
        ValueError: if *local_wall_clock* is a string that is not an ISO
            8601 date-time.
    """
    if local_wall_clock is None or local_wall_clock == "":
        moment = datetime.now().astimezone()
    elif isinstance(local_wall_clock, datetime):
        moment = local_wall_clock
    else:
        moment = datetime.fromisoformat(str(local_wall_clock).strip().replace("Z", "+00:00"))

    if moment.tzinfo is None:
        moment = moment.astimezone()

    return moment.replace(microsecond=0).isoformat()


def is_wall_clock(value: WallClock) -> bool:
    """Return True when :func:`to_offset_timestamp` would accept *value*."""
    try:
        to_offset_timestamp(value)
    except (TypeError, ValueError):
        return False
    return True
