from __future__ import annotations

import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from qris_order_sync.events import QRIS_EXPIRED, QRIS_PAID, PaymentEvents
from qris_order_sync.models import PendingExternalOrder, ProcessedExternalOrder, TrackedPayment
from qris_order_sync.monitor import run_monitor, run_once, sweep_expired
from qris_order_sync.reconcile import Reconciler
from qris_order_sync.state import StateStore


class FakeFetcher:
    def __init__(self, processed: list[ProcessedExternalOrder]) -> None:
        self.processed = processed
        self.fail = False

    def fetch_pending_orders(self) -> list[PendingExternalOrder]:
        if self.fail:
            raise RuntimeError("unexpected")
        return []

    def fetch_processed_orders(self) -> list[ProcessedExternalOrder]:
        return list(self.processed)


@pytest.fixture()
def store(tmp_path: Path):
    s = StateStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()


def _reconciler(fetcher: FakeFetcher) -> Reconciler:
    return Reconciler(fetcher, check_delay_seconds=0, sleep=lambda _s: None)


def test_sweep_expired_logs_and_emits(store: StateStore) -> None:
    now = datetime.now()
    p = store.create_tracked_payment(TrackedPayment(amount=50000, expires_at=now - timedelta(minutes=1)))
    events = PaymentEvents()
    seen: list[dict] = []
    events.subscribe(seen.append)

    assert sweep_expired(store, events=events, now=now) == [p.id]
    assert [e["type"] for e in seen] == [QRIS_EXPIRED]
    assert store.recent_log_entries()[0].action == "qris_expired"
    assert store.recent_log_entries()[0].level == "warning"


def test_run_once_confirms_before_expiring(store: StateStore) -> None:
    # Paid just before its deadline passed: reconciliation wins over the sweep.
    late = store.create_tracked_payment(
        TrackedPayment(amount=150000, expires_at=datetime.now() - timedelta(seconds=30))
    )
    unpaid = store.create_tracked_payment(
        TrackedPayment(amount=80000, expires_at=datetime.now() - timedelta(seconds=30))
    )
    events = PaymentEvents()
    seen: list[str] = []
    events.subscribe(lambda e: seen.append(e["type"]))

    result = run_once(store, _reconciler(FakeFetcher([ProcessedExternalOrder(amount=150000)])), events=events)

    assert result.paid_ids == [late.id]
    got_late = store.get_tracked_payment(late.id)
    got_unpaid = store.get_tracked_payment(unpaid.id)
    assert got_late is not None and got_late.status == "paid"
    assert got_unpaid is not None and got_unpaid.status == "expired"
    assert seen == [QRIS_PAID, QRIS_EXPIRED]


def test_run_once_records_failed_run(store: StateStore) -> None:
    store.create_tracked_payment(TrackedPayment(amount=150000))
    fetcher = FakeFetcher([])
    fetcher.fail = True
    with pytest.raises(RuntimeError):
        run_once(store, _reconciler(fetcher))

    row = store._conn.execute("SELECT ok, message FROM runs ORDER BY id DESC LIMIT 1;").fetchone()
    assert row["ok"] == 0
    assert row["message"] == "unexpected"


def test_run_monitor_keeps_going_after_failures(store: StateStore) -> None:
    store.create_tracked_payment(TrackedPayment(amount=150000))
    fetcher = FakeFetcher([])
    fetcher.fail = True
    runs = run_monitor(store, _reconciler(fetcher), interval_seconds=0.01, max_runs=3)
    assert runs == 3


def test_run_monitor_stops_on_event(store: StateStore) -> None:
    stop = threading.Event()
    stop.set()
    assert run_monitor(store, _reconciler(FakeFetcher([])), interval_seconds=10, stop_event=stop) == 0
