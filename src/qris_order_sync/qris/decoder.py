from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Iterator, Optional

from ..models import DecodedQr
from ..util.money import decimal_to_rupiah


logger = logging.getLogger(__name__)

# EMVCo merchant-presented QR tags we care about.
TAG_AMOUNT = "54"
TAG_MERCHANT_NAME = "59"
TAG_MERCHANT_CITY = "60"
TAG_ADDITIONAL_DATA = "62"

# Sub-tags of the additional-data template: bill number, reference label.
_REFERENCE_SUBTAGS = ("01", "05")

_LENGTH_RE = re.compile(r"[0-9]{2}")
_AMOUNT_RE = re.compile(r"[0-9]+(?:\.[0-9]+)?")
_LOOSE_AMOUNT_RE = re.compile(r"54([0-9]{2})([0-9]+)")


def iter_tlv(data: str) -> Iterator[tuple[str, str]]:
    """
    Yield (tag, value) pairs from an EMVCo tag-length-value string.

    Stops quietly at the first length that is not two decimal digits. A value cut short by the
    end of the payload is yielded as-is and ends the scan.
    """
    index = 0
    while index < len(data):
        tag = data[index : index + 2]
        length_text = data[index + 2 : index + 4]
        if not _LENGTH_RE.fullmatch(length_text):
            return
        length = int(length_text)
        yield tag, data[index + 4 : index + 4 + length]
        index += 4 + length


def _parse_amount(value: str) -> Optional[Decimal]:
    s = (value or "").strip()
    if not _AMOUNT_RE.fullmatch(s):
        return None
    try:
        amount = Decimal(s)
    except InvalidOperation:
        return None
    # A zero amount carries nothing usable for matching.
    return amount if amount > 0 else None


def _parse_additional_data(value: str) -> Optional[str]:
    for tag, sub_value in iter_tlv(value):
        # An empty bill number does not hide a reference label further on.
        if tag in _REFERENCE_SUBTAGS and sub_value:
            return sub_value
    return None


def _loose_amount(data: str) -> Optional[Decimal]:
    m = _LOOSE_AMOUNT_RE.search(data)
    if not m:
        return None
    length = int(m.group(1))
    return _parse_amount(m.group(2)[:length])


def decode(raw_payload: str) -> DecodedQr:
    """
    Decode a QRIS (EMVCo) payload into the fields we use.

    This is an extraction helper, not a validator: malformed input yields a DecodedQr with unset
    fields and the payload preserved. The CRC (tag 63) is not checked.
    """
    raw = raw_payload if isinstance(raw_payload, str) else ""
    amount: Optional[Decimal] = None
    merchant_name: Optional[str] = None
    merchant_city: Optional[str] = None
    transaction_ref: Optional[str] = None

    for tag, value in iter_tlv(raw):
        if tag == TAG_AMOUNT:
            amount = _parse_amount(value)
        elif tag == TAG_MERCHANT_NAME:
            merchant_name = value
        elif tag == TAG_MERCHANT_CITY:
            merchant_city = value
        elif tag == TAG_ADDITIONAL_DATA:
            transaction_ref = _parse_additional_data(value)

    if amount is None:
        amount = _loose_amount(raw)
        if amount is not None:
            logger.debug("QRIS amount recovered by loose scan (amount=%s)", amount)

    return DecodedQr(
        raw=raw,
        amount=amount,
        merchant_name=merchant_name,
        merchant_city=merchant_city,
        transaction_ref=transaction_ref,
    )


def amount_as_rupiah(decoded: DecodedQr) -> Optional[int]:
    if decoded.amount is None:
        return None
    return decimal_to_rupiah(decoded.amount)
