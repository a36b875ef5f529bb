from __future__ import annotations

import re
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta


# Indonesian and English abbreviations, keyed by the first three letters.
_MONTHS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "mei": 5,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "agu": 8,
    "agt": 8,
    "aug": 8,
    "sep": 9,
    "okt": 10,
    "oct": 10,
    "nov": 11,
    "des": 12,
    "dec": 12,
}

_DEADLINE_RE = re.compile(r"^\s*(\d{1,2})\s+([A-Za-z]+)\.?,?\s+(\d{1,2})[:.](\d{2})\s*$")


def month_number(name: str) -> Optional[int]:
    key = (name or "").strip().lower()[:3]
    return _MONTHS.get(key)


def parse_deadline(text: str, *, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse storefront deadlines like:
    - "15 Jan 10:50"
    - "3 Agu, 09:05"
    - "28 Desember 23.59"

    The storefront omits the year, so the current year is assumed; a result already in the past
    rolls forward one year (a "2 Jan" deadline read on 31 Dec belongs to next year).
    Returns None when the text cannot be read as a deadline.
    """
    m = _DEADLINE_RE.match(text or "")
    if not m:
        return None

    month = month_number(m.group(2))
    if month is None:
        return None

    ref = now or datetime.now()
    try:
        deadline = datetime(ref.year, month, int(m.group(1)), int(m.group(3)), int(m.group(4)))
    except ValueError:
        return None

    if deadline < ref:
        deadline = deadline + relativedelta(years=1)
    return deadline
