from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from qris_order_sync.events import QRIS_PAID, PaymentEvents
from qris_order_sync.models import PendingExternalOrder, ProcessedExternalOrder, TrackedPayment
from qris_order_sync.reconcile import (
    Reconciler,
    check_and_update_payments,
    find_pending_by_amount,
    match_pending_order,
)
from qris_order_sync.state import StateStore


NOW = datetime(2025, 1, 10, 9, 0)


class FakeFetcher:
    def __init__(self, pending: list[PendingExternalOrder], processed: list[ProcessedExternalOrder]) -> None:
        self.pending = pending
        self.processed = processed
        self.calls: list[str] = []

    def fetch_pending_orders(self) -> list[PendingExternalOrder]:
        self.calls.append("pending")
        return list(self.pending)

    def fetch_processed_orders(self) -> list[ProcessedExternalOrder]:
        self.calls.append("processed")
        return list(self.processed)


def _reconciler(fetcher: FakeFetcher, sleeps: list[float] | None = None) -> Reconciler:
    return Reconciler(
        fetcher,
        check_delay_seconds=5,
        sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
        clock=lambda: NOW,
    )


def _payment(amount: int, *, expires_at: datetime | None = None) -> TrackedPayment:
    return TrackedPayment(amount=amount, created_at=NOW, expires_at=expires_at)


def test_paid_when_gone_from_pending_and_present_in_processed() -> None:
    fetcher = FakeFetcher(pending=[], processed=[ProcessedExternalOrder(amount=150000)])
    p = _payment(150000)
    result = _reconciler(fetcher).reconcile([p])
    assert result.checked == 1
    assert result.updated == 1
    assert result.paid_ids == [p.id]
    assert result.paid[0].paid_at == NOW


def test_still_pending_when_listed_in_pending() -> None:
    fetcher = FakeFetcher(
        pending=[PendingExternalOrder(amount=75000, deadline=NOW + timedelta(minutes=10))],
        processed=[ProcessedExternalOrder(amount=75000)],
    )
    result = _reconciler(fetcher).reconcile([_payment(75000)])
    assert result.checked == 1
    assert result.updated == 0
    assert result.paid_ids == []


def test_not_in_either_list_stays_pending() -> None:
    fetcher = FakeFetcher(pending=[], processed=[])
    result = _reconciler(fetcher).reconcile([_payment(50000)])
    assert (result.checked, result.updated) == (1, 0)


def test_same_amount_tie_break_pays_exactly_one() -> None:
    fetcher = FakeFetcher(pending=[], processed=[ProcessedExternalOrder(amount=100000)])
    first, second = _payment(100000), _payment(100000)
    result = _reconciler(fetcher).reconcile([first, second])
    assert result.checked == 2
    assert result.updated == 1
    # Evaluation order decides which one.
    assert result.paid_ids == [first.id]


def test_two_processed_orders_pay_both() -> None:
    fetcher = FakeFetcher(
        pending=[],
        processed=[ProcessedExternalOrder(amount=100000), ProcessedExternalOrder(amount=100000)],
    )
    result = _reconciler(fetcher).reconcile([_payment(100000), _payment(100000)])
    assert result.updated == 2


def test_deadline_outside_tolerance_is_not_a_pending_match() -> None:
    deadline = NOW + timedelta(minutes=15)
    fetcher = FakeFetcher(
        pending=[PendingExternalOrder(amount=90000, deadline=deadline + timedelta(minutes=6))],
        processed=[ProcessedExternalOrder(amount=90000)],
    )
    result = _reconciler(fetcher).reconcile([_payment(90000, expires_at=deadline)])
    assert result.updated == 1


def test_deadline_inside_tolerance_is_a_pending_match() -> None:
    deadline = NOW + timedelta(minutes=15)
    fetcher = FakeFetcher(
        pending=[PendingExternalOrder(amount=90000, deadline=deadline + timedelta(minutes=4))],
        processed=[ProcessedExternalOrder(amount=90000)],
    )
    result = _reconciler(fetcher).reconcile([_payment(90000, expires_at=deadline)])
    assert result.updated == 0


def test_match_pending_order_amount_only_without_deadlines() -> None:
    pending = [PendingExternalOrder(amount=1), PendingExternalOrder(amount=2, deadline=NOW)]
    assert match_pending_order(_payment(2), pending) == 1
    assert match_pending_order(_payment(3), pending) is None


def test_reconcile_is_idempotent_over_unchanged_snapshots() -> None:
    fetcher = FakeFetcher(
        pending=[PendingExternalOrder(amount=75000)],
        processed=[ProcessedExternalOrder(amount=150000)],
    )
    tracked = [_payment(150000), _payment(75000)]
    first = _reconciler(fetcher).reconcile(tracked)
    second = _reconciler(fetcher).reconcile(tracked)
    assert first.paid_ids == second.paid_ids
    assert (first.checked, first.updated) == (second.checked, second.updated)


def test_fetch_order_and_delay() -> None:
    sleeps: list[float] = []
    fetcher = FakeFetcher(pending=[], processed=[])
    _ = _reconciler(fetcher, sleeps).reconcile([_payment(10001)])
    assert fetcher.calls == ["pending", "processed"]
    assert sleeps == [5.0]


def test_nothing_amount_bearing_skips_storefront() -> None:
    fetcher = FakeFetcher(pending=[], processed=[ProcessedExternalOrder(amount=0)])
    result = _reconciler(fetcher).reconcile([_payment(0)])
    assert (result.checked, result.updated) == (0, 0)
    assert fetcher.calls == []


def test_find_pending_by_amount_tolerance() -> None:
    pending = [PendingExternalOrder(amount=150500), PendingExternalOrder(amount=150000)]
    assert find_pending_by_amount(pending, 150000) == pending[0]
    assert find_pending_by_amount(pending, 152000) is None
    assert find_pending_by_amount(pending, 152000, tolerance=2000) == pending[0]


@pytest.fixture()
def store(tmp_path: Path):
    s = StateStore(str(tmp_path / "state.db"))
    try:
        yield s
    finally:
        s.close()


def test_check_and_update_payments_persists_and_notifies(store: StateStore) -> None:
    paid = store.create_tracked_payment(TrackedPayment(amount=150000, label="Kaos", created_at=NOW))
    waiting = store.create_tracked_payment(TrackedPayment(amount=75000, created_at=NOW + timedelta(seconds=1)))

    events = PaymentEvents()
    seen: list[dict] = []
    events.subscribe(seen.append)

    fetcher = FakeFetcher(
        pending=[PendingExternalOrder(amount=75000)],
        processed=[ProcessedExternalOrder(amount=150000), ProcessedExternalOrder(amount=75000)],
    )
    result = check_and_update_payments(store, _reconciler(fetcher), events=events)

    assert result.paid_ids == [paid.id]
    after = store.get_tracked_payment(paid.id)
    assert after is not None and after.status == "paid"
    assert after.paid_at == NOW
    still = store.get_tracked_payment(waiting.id)
    assert still is not None and still.status == "pending"

    assert [e["type"] for e in seen] == [QRIS_PAID]
    assert seen[0]["data"]["id"] == paid.id

    actions = [e.action for e in store.recent_log_entries()]
    assert actions == ["payment_check", "payment_confirmed"]


def test_check_and_update_payments_second_run_changes_nothing(store: StateStore) -> None:
    p = store.create_tracked_payment(TrackedPayment(amount=150000, created_at=NOW))
    fetcher = FakeFetcher(pending=[], processed=[ProcessedExternalOrder(amount=150000)])

    first = check_and_update_payments(store, _reconciler(fetcher))
    second = check_and_update_payments(store, _reconciler(fetcher))

    assert first.paid_ids == [p.id]
    assert (second.checked, second.updated) == (0, 0)
    assert fetcher.calls == ["pending", "processed"]


def test_check_and_update_payments_store_errors_propagate(store: StateStore) -> None:
    store.create_tracked_payment(TrackedPayment(amount=150000, created_at=NOW))
    fetcher = FakeFetcher(pending=[], processed=[ProcessedExternalOrder(amount=150000)])

    def fail(*_a: object, **_kw: object) -> bool:
        raise RuntimeError("database is locked")

    store.update_tracked_payment_status = fail  # type: ignore[method-assign]
    with pytest.raises(RuntimeError):
        check_and_update_payments(store, _reconciler(fetcher))


def test_payment_settled_by_another_run_is_not_confirmed_twice(store: StateStore) -> None:
    p = store.create_tracked_payment(TrackedPayment(amount=150000, created_at=NOW))
    earlier = NOW - timedelta(minutes=10)

    class ConcurrentFetcher(FakeFetcher):
        def fetch_processed_orders(self) -> list[ProcessedExternalOrder]:
            # A parallel `check` confirms the same row while this run is between page loads.
            store.update_tracked_payment_status(p.id, "paid", paid_at=earlier)
            return super().fetch_processed_orders()

    events = PaymentEvents()
    seen: list[dict] = []
    events.subscribe(seen.append)

    fetcher = ConcurrentFetcher(pending=[], processed=[ProcessedExternalOrder(amount=150000)])
    result = check_and_update_payments(store, _reconciler(fetcher), events=events)

    assert result.paid_ids == []
    assert result.updated == 0
    after = store.get_tracked_payment(p.id)
    assert after is not None and after.paid_at == earlier
    assert seen == []
    assert "payment_confirmed" not in [e.action for e in store.recent_log_entries()]
