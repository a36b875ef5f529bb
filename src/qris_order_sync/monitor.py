from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Optional

from .events import QRIS_EXPIRED, PaymentEvents
from .models import ReconcileResult
from .reconcile import Reconciler, check_and_update_payments
from .state import StateStore


logger = logging.getLogger(__name__)


def sweep_expired(
    store: StateStore,
    *,
    events: Optional[PaymentEvents] = None,
    now: Optional[datetime] = None,
) -> list[str]:
    expired = store.expire_overdue(now=now)
    for payment_id in expired:
        store.append_log_entry("qris_expired", f"QRIS {payment_id} has expired", "warning")
        if events is not None:
            events.emit(QRIS_EXPIRED, {"id": payment_id})
    if expired:
        logger.info("Expired %d overdue payments", len(expired))
    return expired


def run_once(
    store: StateStore,
    reconciler: Reconciler,
    *,
    events: Optional[PaymentEvents] = None,
) -> ReconcileResult:
    """
    One reconciliation pass, then the expiry sweep.

    Reconciling first gives a payment made just before its deadline the chance to be confirmed
    instead of expired.
    """
    run_id = store.record_run_start()
    t0 = time.time()
    try:
        result = check_and_update_payments(store, reconciler, events=events)
        sweep_expired(store, events=events)
    except Exception as e:
        store.record_run_finish(run_id, ok=False, message=str(e))
        logger.error("Run failed (run_id=%s ok=false seconds=%.2f)", run_id, time.time() - t0)
        raise

    store.record_run_finish(run_id, ok=True, message=f"checked={result.checked} updated={result.updated}")
    logger.info(
        "Run finished (run_id=%s checked=%d updated=%d seconds=%.2f)",
        run_id,
        result.checked,
        result.updated,
        time.time() - t0,
    )
    return result


def run_monitor(
    store: StateStore,
    reconciler: Reconciler,
    *,
    interval_seconds: float,
    events: Optional[PaymentEvents] = None,
    stop_event: Optional[threading.Event] = None,
    max_runs: Optional[int] = None,
) -> int:
    """
    Run `run_once` every `interval_seconds` until `stop_event` is set (or `max_runs` is reached).

    A failed run is logged and the loop carries on; the next tick is the retry.
    Returns the number of runs attempted.
    """
    stop = stop_event or threading.Event()
    runs = 0
    logger.info("Starting payment monitor (interval=%.0fs)", interval_seconds)
    while not stop.is_set():
        try:
            run_once(store, reconciler, events=events)
        except Exception:
            logger.exception("Payment monitor run failed; retrying on the next tick.")
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        stop.wait(interval_seconds)
    logger.info("Payment monitor stopped after %d runs", runs)
    return runs
