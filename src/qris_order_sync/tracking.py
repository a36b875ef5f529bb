from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from .events import QRIS_CREATED, QRIS_DELETED, QRIS_PAID, PaymentEvents
from .models import PendingExternalOrder, TrackedPayment
from .qris import amount_as_rupiah, decode
from .reconcile import find_pending_by_amount
from .state import StateStore
from .util.money import format_rupiah


logger = logging.getLogger(__name__)


def issue_payment(
    store: StateStore,
    *,
    payload: Optional[str] = None,
    amount: Optional[int] = None,
    label: str = "",
    expiry_minutes: int = 15,
    order_ref: Optional[str] = None,
    pending_orders: Optional[Sequence[PendingExternalOrder]] = None,
    auto_match_tolerance: int = 1_000,
    events: Optional[PaymentEvents] = None,
    now: Optional[datetime] = None,
) -> TrackedPayment:
    """
    Start tracking a QRIS payment.

    An explicit `amount` wins over the one decoded from `payload`; a zero amount counts as unset.
    When `pending_orders` is given (a fresh payment-list snapshot) and no `order_ref` was supplied,
    the closest pending order by amount is adopted: its reference, and its deadline when it shows one.
    """
    now = now or datetime.now()
    decoded = decode(payload) if payload else None

    final_amount = int(amount or 0)
    if not final_amount and decoded is not None:
        final_amount = amount_as_rupiah(decoded) or 0

    final_label = label or (decoded.merchant_name if decoded else None) or f"QRIS Upload {now:%d/%m/%Y}"
    expires_at = now + timedelta(minutes=expiry_minutes)
    final_ref = order_ref or ""

    if not final_ref and final_amount > 0 and pending_orders is not None:
        match = find_pending_by_amount(pending_orders, final_amount, tolerance=auto_match_tolerance)
        if match is not None:
            final_ref = match.order_ref
            if match.deadline is not None:
                expires_at = match.deadline
                logger.info("Using storefront deadline: %s", f"{expires_at:%Y-%m-%d %H:%M}")
            store.append_log_entry(
                "order_auto_matched",
                f"Auto-matched order {final_ref} by amount {format_rupiah(final_amount)}",
                "info",
            )
        else:
            logger.info("No pending storefront order near %s", format_rupiah(final_amount))

    if not final_ref:
        final_ref = (decoded.transaction_ref if decoded else None) or f"MANUAL-{int(now.timestamp() * 1000)}"

    payment = store.create_tracked_payment(
        TrackedPayment(
            amount=final_amount,
            label=final_label,
            created_at=now,
            expires_at=expires_at,
            order_ref=final_ref,
            qr_payload=payload or None,
        )
    )

    message = f"QRIS uploaded: {final_label}"
    if final_amount > 0:
        message += f" - {format_rupiah(final_amount)}"
    store.append_log_entry("upload_qris", message, "info")

    if events is not None:
        events.emit(QRIS_CREATED, {"id": payment.id, "label": payment.label, "amount": payment.amount})
    return payment


def mark_paid(
    store: StateStore,
    payment_id: str,
    *,
    events: Optional[PaymentEvents] = None,
) -> TrackedPayment:
    """
    Operator confirmation for a payment the reconciler could not see (e.g. a duplicate amount).
    """
    payment = store.get_tracked_payment(payment_id)
    if payment is None:
        raise LookupError(f"QRIS {payment_id} not found")
    if payment.status != "pending":
        raise ValueError(f"QRIS {payment_id} is already {payment.status}")

    if not store.update_tracked_payment_status(payment_id, "paid"):
        raise ValueError(f"QRIS {payment_id} is no longer pending")
    store.append_log_entry(
        "mark_paid_manual",
        f"QRIS marked as paid: {payment.label or 'QRIS'} - {format_rupiah(payment.amount)}",
        "info",
    )
    if events is not None:
        events.emit(QRIS_PAID, {"id": payment.id, "label": payment.label, "amount": payment.amount})

    updated = store.get_tracked_payment(payment_id)
    assert updated is not None
    return updated


def delete_payment(
    store: StateStore,
    payment_id: str,
    *,
    events: Optional[PaymentEvents] = None,
) -> bool:
    if not store.delete_tracked_payment(payment_id):
        return False
    store.append_log_entry("delete_qris", f"QRIS deleted: {payment_id}", "info")
    if events is not None:
        events.emit(QRIS_DELETED, {"id": payment_id})
    return True
