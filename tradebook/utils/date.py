"""
Date parsing utilities for broker timestamps.

Broker exports mix ISO timestamps, US ``MM/DD/YYYY HH:MM:SS`` strings and the
occasional day-first date. Everything is parsed with pandas and returned as a
timezone-aware UTC ``datetime``; naive values are taken as UTC.
"""

import pandas as pd
from typing import Any, Optional
import re
from datetime import datetime, timezone
import logging

from tradebook.core.config import settings

logger = logging.getLogger(__name__)

FAILED_SAMPLE_LIMIT = 5
SUPPRESSION_NOTICE_EVERY = 100

_failure_stats: dict = {}

# Broker suffixes pandas does not understand ("09:30:01 ET", "10:15 AM EST").
_TZ_SUFFIX = re.compile(r"\s+(ET|EST|EDT|CT|CST|CDT)$", re.IGNORECASE)


def _record_parse_failure(value: Any, context: Optional[str], error: Exception) -> None:
    """
    Collect failure stats and emit limited logs (sampled warnings + periodic summaries).
    """
    key = context or "default"
    stats = _failure_stats.setdefault(key, {"count": 0, "samples": []})
    stats["count"] += 1
    count = stats["count"]

    if len(stats["samples"]) < FAILED_SAMPLE_LIMIT:
        stats["samples"].append(value)
        logger.warning("Failed to parse date%s value '%s': %s", f" ({key})" if context else "", value, error)
        return

    if count == FAILED_SAMPLE_LIMIT + 1 or count % SUPPRESSION_NOTICE_EVERY == 0:
        logger.info(
            "Suppressed additional date parse warnings after %d failures%s; sample values=%s",
            count,
            f" ({key})" if context else "",
            stats["samples"],
        )


def _prefers_dayfirst(value: str) -> Optional[bool]:
    """Decide day-first vs month-first for numeric dates like 03/04/2024; None when not numeric."""
    numeric_match = re.match(r'^\d{1,2}[/-]\d{1,2}[/-]\d{2,4}', value)
    if not numeric_match:
        return None
    parts = re.split(r'[/-]', numeric_match.group(0))
    first, second = int(parts[0]), int(parts[1])
    if first > 12 and second <= 31:
        return True
    if second > 12 and first <= 12:
        return False
    return settings.date_default_dayfirst


def parse_flexible_date(value: Any, *, log_context: Optional[str] = None, log_failures: bool = True) -> Optional[datetime]:
    """
    Parse a broker date/time value into an aware UTC datetime.

    Supports formats:
    - ISO 8601: "2024-09-04T23:09:18Z"
    - US broker style: "10/20/2025 09:31:02"
    - DD/MM/YYYY when the day is unambiguous: "20/10/2025"
    - And many others via pandas inference

    Returns:
        ``datetime`` in UTC, or None if the value is empty or cannot be parsed.
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    value = _TZ_SUFFIX.sub("", str(value).strip())
    if value == "":
        return None

    parse_attempts = []
    dayfirst = _prefers_dayfirst(value)
    if dayfirst is not None:
        parse_attempts.append(lambda v, df=dayfirst: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise'))
        parse_attempts.append(lambda v, df=not dayfirst: pd.to_datetime(v, utc=True, dayfirst=df, errors='raise'))
    parse_attempts.append(lambda v: pd.to_datetime(v, utc=True, errors='raise'))

    last_error = None
    for attempt in parse_attempts:
        try:
            parsed = attempt(value)
        except (ValueError, TypeError, OverflowError) as exc:
            last_error = exc
            continue
        if pd.isna(parsed):
            continue
        return parsed.to_pydatetime()

    if log_failures:
        _record_parse_failure(value, log_context, last_error or ValueError("Unable to determine format"))
    return None
