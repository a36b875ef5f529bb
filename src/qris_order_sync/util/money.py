from __future__ import annotations

import re
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional


# "Rp 150.000", "Rp150,000", "Rp. 1.250.000"
_RUPIAH_RE = re.compile(r"Rp\.?\s*(\d[\d.,]*)", re.I)


def rupiah_to_int(value: str) -> int:
    """
    Parse values like:
    - "Rp 150.000"
    - "Rp150,000"
    - "150000"

    The storefront renders whole Rupiah only, so every non-digit (currency prefix, thousands
    punctuation) is dropped.
    """
    if value is None:
        raise ValueError("rupiah_to_int: value is None")

    digits = re.sub(r"\D", "", value)
    if not digits:
        raise ValueError(f"rupiah_to_int: no digits in {value!r}")
    return int(digits)


def find_first_rupiah(text: str) -> Optional[int]:
    m = _RUPIAH_RE.search(text or "")
    if not m:
        return None
    try:
        return rupiah_to_int(m.group(1))
    except ValueError:
        return None


def decimal_to_rupiah(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_rupiah(amount: int) -> str:
    # Indonesian grouping uses "." as the thousands separator.
    return "Rp" + f"{int(amount):,}".replace(",", ".")
