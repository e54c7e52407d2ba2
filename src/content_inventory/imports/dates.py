"""
Flexible date parsing for imported publish dates.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

# Tried in order; the first pattern that parses wins, so ambiguous input
# such as 02/03/2024 is read month-first.
DATE_PATTERNS = [
    "%Y-%m-%d",   # 2024-02-15
    "%m/%d/%Y",   # 02/15/2024, 2/5/2024
    "%B %d, %Y",  # February 15, 2024
    "%b %d, %Y",  # Feb 15, 2024
    "%B %d. %Y",  # January 20. 2026
    "%b %d. %Y",  # Jan 20. 2026
    "%d %B %Y",   # 15 February 2024
    "%m-%d-%Y",   # 02-15-2024, 2-5-2024
]

ISO_DATETIME = re.compile(r"^(\d{4}-\d{1,2}-\d{1,2})[Tt]\d")


def normalize_date(value: Optional[str]) -> Optional[str]:
    """
    Parse a loosely formatted date and return it as YYYY-MM-DD.

    ISO 8601 datetimes (e.g. "2024-02-15T10:30:00Z") are reduced to their
    date part before matching. Returns None for empty or unrecognised input.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = ISO_DATETIME.match(text)
    if match:
        text = match.group(1)

    for pattern in DATE_PATTERNS:
        try:
            parsed = datetime.strptime(text, pattern)
        except ValueError:
            continue
        return parsed.date().isoformat()

    return None
