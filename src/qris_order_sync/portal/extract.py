"""
Text heuristics that turn rendered storefront pages into order summaries.

Everything here works on `document.body.innerText`-style text (one UI element per line) so it can
be unit-tested from saved snapshots without a browser. See `scripts/parse_order_text_snapshot.py`.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Optional

from ..models import PendingExternalOrder, ProcessedExternalOrder
from ..util.dates import parse_deadline
from ..util.money import find_first_rupiah, rupiah_to_int
from .selectors import DEFAULT_AMOUNT_CEILING, DEFAULT_NOISE_FLOOR, StorefrontTexts


logger = logging.getLogger(__name__)

# How far (in lines) to look for amounts around the labels.
_TOTAL_AMOUNT_WINDOW = 3
_HINT_WINDOW_BEFORE = 5
_HINT_WINDOW_AFTER = 5
_PROCESSED_LOOKAHEAD = 20


def _is_sidebar(line: str, keywords: tuple[str, ...]) -> bool:
    return any(k in line for k in keywords)


def _amount_after(
    lines: list[str],
    start: int,
    *,
    window: int,
    noise_floor: int,
    skip: tuple[str, ...] = (),
) -> Optional[int]:
    """
    First amount above the noise floor in `lines[start:start+window]` (one token per line).

    Lines containing any of the `skip` keywords (account sidebar widgets) are ignored.
    """
    for ln in lines[start : min(start + window, len(lines))]:
        if _is_sidebar(ln, skip):
            continue
        amount = find_first_rupiah(ln)
        if amount is not None and amount > noise_floor:
            return amount
    return None


def find_deadlines(page_text: str, *, texts: StorefrontTexts, now: Optional[datetime] = None) -> list[Optional[datetime]]:
    """
    Every "Bayar sebelum 15 Jan, 10:50" on the page, in page order.

    Unreadable deadlines stay in the list as None so positions keep lining up with the amounts.
    """
    pattern = re.compile(
        re.escape(texts.deadline_label) + r"[^\d]*(\d+)\s+([A-Za-z]+)\.?,?\s*(\d{1,2}[:.]\d{2})",
        re.I,
    )
    out: list[Optional[datetime]] = []
    for m in pattern.finditer(page_text or ""):
        day, month, clock = m.groups()
        deadline = parse_deadline(f"{day} {month} {clock}", now=now)
        if deadline is None:
            logger.debug("Could not parse payment deadline text=%r", m.group(0))
        out.append(deadline)
    return out


def _pending_amounts_by_total_label(lines: list[str], *, texts: StorefrontTexts, noise_floor: int) -> list[int]:
    amounts: list[int] = []
    for i, raw in enumerate(lines):
        line = raw.strip()
        if _is_sidebar(line, texts.sidebar_keywords):
            continue
        if texts.total_payment_label not in line:
            continue
        amount = _amount_after(
            lines, i, window=_TOTAL_AMOUNT_WINDOW, noise_floor=noise_floor, skip=texts.sidebar_keywords
        )
        if amount is not None:
            amounts.append(amount)
    return amounts


def _pending_amounts_near_hints(
    lines: list[str],
    *,
    texts: StorefrontTexts,
    noise_floor: int,
    ceiling: int,
) -> list[int]:
    # Fallback when the "Total Pembayaran" label is missing: amounts around the payment-method badge
    # or the deadline line. Duplicates collapse since neighbouring hints share a window.
    amounts: list[int] = []
    seen: set[int] = set()
    for i, raw in enumerate(lines):
        line = raw.strip()
        if _is_sidebar(line, texts.sidebar_keywords):
            continue
        if texts.payment_method_label not in line and texts.deadline_label not in line:
            continue
        for ln in lines[max(0, i - _HINT_WINDOW_BEFORE) : min(i + _HINT_WINDOW_AFTER, len(lines))]:
            if _is_sidebar(ln, texts.sidebar_keywords):
                continue
            amount = find_first_rupiah(ln)
            if amount is None or not (noise_floor < amount < ceiling):
                continue
            if amount in seen:
                continue
            amounts.append(amount)
            seen.add(amount)
    return amounts


def extract_pending(
    page_text: str,
    *,
    now: Optional[datetime] = None,
    texts: Optional[StorefrontTexts] = None,
    noise_floor: int = DEFAULT_NOISE_FLOOR,
) -> list[PendingExternalOrder]:
    """
    Parse the payment-list ("awaiting payment") page into pending orders, in page order.

    Tier A reads the amount under each "Total Pembayaran" label; tier B (only when A finds
    nothing) scans around payment-method/deadline lines. Deadlines are assigned by position.
    """
    texts = texts or StorefrontTexts()
    lines = (page_text or "").splitlines()
    deadlines = find_deadlines(page_text, texts=texts, now=now)

    amounts = _pending_amounts_by_total_label(lines, texts=texts, noise_floor=noise_floor)
    if not amounts:
        amounts = _pending_amounts_near_hints(
            lines,
            texts=texts,
            noise_floor=noise_floor,
            ceiling=DEFAULT_AMOUNT_CEILING,
        )
        if amounts:
            logger.debug("Pending orders found via fallback scan (count=%d)", len(amounts))

    out: list[PendingExternalOrder] = []
    for idx, amount in enumerate(amounts):
        deadline = deadlines[idx] if idx < len(deadlines) else None
        out.append(PendingExternalOrder(amount=amount, deadline=deadline))
    return out


def _processed_by_status_lines(lines: list[str], *, texts: StorefrontTexts, noise_floor: int) -> list[int]:
    skip = texts.sidebar_keywords + texts.order_list_sidebar_keywords
    amounts: list[int] = []
    seen: set[int] = set()
    for i, raw in enumerate(lines):
        line = raw.strip()
        if _is_sidebar(line, skip):
            continue
        if texts.processed_status_label not in line:
            continue

        for j in range(i, min(i + _PROCESSED_LOOKAHEAD, len(lines))):
            if texts.total_purchase_label not in lines[j]:
                continue
            amount = _amount_after(lines, j, window=_TOTAL_AMOUNT_WINDOW, noise_floor=noise_floor, skip=skip)
            if amount is not None and amount not in seen:
                amounts.append(amount)
                seen.add(amount)
            break
    return amounts


def _processed_by_sections(text: str, *, texts: StorefrontTexts, noise_floor: int) -> list[int]:
    total_re = re.compile(re.escape(texts.total_purchase_label) + r"[^\d]*?Rp\.?\s*(\d[\d.,]*)", re.I)
    amounts: list[int] = []
    seen: set[int] = set()
    for section in text.split(texts.processed_status_label)[1:]:
        m = total_re.search(section)
        if not m:
            continue
        amount = rupiah_to_int(m.group(1))
        if amount > noise_floor and amount not in seen:
            amounts.append(amount)
            seen.add(amount)
    return amounts


def extract_processed(
    page_text: str,
    *,
    main_text: Optional[str] = None,
    texts: Optional[StorefrontTexts] = None,
    noise_floor: int = DEFAULT_NOISE_FLOOR,
) -> list[ProcessedExternalOrder]:
    """
    Parse the order-list page into orders whose payment went through ("Diproses").

    Uses the "Total Belanja" (order total) amount, not per-item prices. `main_text` is the text of
    the page's main content region when the source could isolate it; it is only used by the
    structural fallback.
    """
    texts = texts or StorefrontTexts()
    lines = (page_text or "").splitlines()

    amounts = _processed_by_status_lines(lines, texts=texts, noise_floor=noise_floor)
    if not amounts:
        amounts = _processed_by_sections(main_text or page_text or "", texts=texts, noise_floor=noise_floor)
        if amounts:
            logger.debug("Processed orders found via section fallback (count=%d)", len(amounts))

    return [ProcessedExternalOrder(amount=a, status_label=texts.processed_status_label) for a in amounts]
