from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Sequence

from .events import QRIS_PAID, PaymentEvents
from .models import PaidTransition, PendingExternalOrder, ProcessedExternalOrder, ReconcileResult, TrackedPayment
from .state import StateStore
from .util.money import format_rupiah


logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_TOLERANCE = timedelta(minutes=5)


class OrderSnapshots(Protocol):
    def fetch_pending_orders(self) -> list[PendingExternalOrder]:
        ...

    def fetch_processed_orders(self) -> list[ProcessedExternalOrder]:
        ...


def match_pending_order(
    payment: TrackedPayment,
    pending: Sequence[PendingExternalOrder],
    *,
    tolerance: timedelta = DEFAULT_DEADLINE_TOLERANCE,
) -> Optional[int]:
    """
    Index of the first pending order that could be `payment`, or None.

    Amounts must be equal. When both sides carry a deadline they must also agree within `tolerance`;
    otherwise the amount alone decides.
    """
    for idx, order in enumerate(pending):
        if order.amount != payment.amount:
            continue
        if order.deadline is not None and payment.expires_at is not None:
            if abs(order.deadline - payment.expires_at) > tolerance:
                continue
        return idx
    return None


def find_pending_by_amount(
    pending: Sequence[PendingExternalOrder],
    amount: int,
    *,
    tolerance: int = 1_000,
) -> Optional[PendingExternalOrder]:
    """
    Loose lookup used when issuing a payment: the storefront order this QR most likely belongs to.
    """
    for order in pending:
        if abs(order.amount - amount) <= tolerance:
            return order
    return None


class Reconciler:
    """
    Decide which tracked payments have been paid.

    The payment list has no order numbers, so "paid" is inferred: the amount is gone from the
    pending snapshot and shows up in the processed snapshot. Each processed order can confirm at
    most one tracked payment per run.
    """

    def __init__(
        self,
        fetcher: OrderSnapshots,
        *,
        check_delay_seconds: float = 5.0,
        deadline_tolerance: timedelta = DEFAULT_DEADLINE_TOLERANCE,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.fetcher = fetcher
        self.check_delay_seconds = float(check_delay_seconds)
        self.deadline_tolerance = deadline_tolerance
        self._sleep = sleep
        self._clock = clock

    def reconcile(self, tracked: Sequence[TrackedPayment]) -> ReconcileResult:
        candidates = [t for t in tracked if t.amount > 0]
        if not candidates:
            logger.info("No amount-bearing pending payments to check")
            return ReconcileResult()

        pending = list(self.fetcher.fetch_pending_orders())
        logger.info(
            "Pending amounts in payment list: %s",
            ", ".join(
                format_rupiah(p.amount) + (f" ({p.deadline:%d %b %H:%M})" if p.deadline else "") for p in pending
            )
            or "none",
        )

        # Back-to-back page loads look like a bot.
        logger.info("Waiting %.1fs before checking processed orders...", self.check_delay_seconds)
        self._sleep(self.check_delay_seconds)

        processed = list(self.fetcher.fetch_processed_orders())
        logger.info(
            "Processed amounts in order list: %s",
            ", ".join(format_rupiah(o.amount) for o in processed) or "none",
        )

        result = ReconcileResult()
        for payment in candidates:
            result.checked += 1

            pending_idx = match_pending_order(payment, pending, tolerance=self.deadline_tolerance)
            processed_idx = next((i for i, o in enumerate(processed) if o.amount == payment.amount), None)

            if pending_idx is None and processed_idx is not None:
                paid_at = self._clock()
                result.paid.append(PaidTransition(payment_id=payment.id, amount=payment.amount, paid_at=paid_at))
                result.updated += 1
                processed.pop(processed_idx)
                logger.info(
                    "Paid: %s (id=%s) not in pending list, present in processed list",
                    format_rupiah(payment.amount),
                    payment.id,
                )
            elif pending_idx is not None:
                logger.info("Still pending: %s (id=%s)", format_rupiah(payment.amount), payment.id)
            else:
                logger.info("Not found in either list: %s (id=%s)", format_rupiah(payment.amount), payment.id)

        return result


def check_and_update_payments(
    store: StateStore,
    reconciler: Reconciler,
    *,
    events: Optional[PaymentEvents] = None,
) -> ReconcileResult:
    """
    Reconcile every pending payment in the store and persist the paid transitions.

    Store errors propagate: losing a paid transition silently is worse than a failed run.
    """
    pending = store.find_pending_tracked_payments()
    if not pending:
        logger.info("No pending QRIS payments to check")
        return ReconcileResult()

    by_id = {p.id: p for p in pending}
    result = reconciler.reconcile(pending)

    confirmed: list[PaidTransition] = []
    for transition in result.paid:
        payment = by_id[transition.payment_id]
        if not store.update_tracked_payment_status(payment.id, "paid", paid_at=transition.paid_at):
            # Another run (or the operator) settled it after we loaded the pending rows.
            logger.info("Payment %s is no longer pending; leaving it as is", payment.id)
            continue
        confirmed.append(transition)
        store.append_log_entry(
            "payment_confirmed",
            f"Payment confirmed: {payment.label or 'QRIS'} - {format_rupiah(payment.amount)}",
            "info",
        )
        if events is not None:
            events.emit(
                QRIS_PAID,
                {"id": payment.id, "label": payment.label, "amount": payment.amount},
            )

    result.paid = confirmed
    result.updated = len(confirmed)
    store.append_log_entry(
        "payment_check",
        f"Checked {result.checked} payments, updated {result.updated}",
        "info",
    )
    return result
