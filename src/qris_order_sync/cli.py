from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config import AppConfig, load_config
from .events import payment_events
from .logging_config import configure_logging
from .monitor import run_monitor, run_once
from .portal.client import DEFAULT_USER_AGENT, OrderFetcher, PageTextSource, PlaywrightPageSource
from .portal.selectors import StorefrontTexts
from .qris import amount_as_rupiah, decode
from .reconcile import Reconciler
from .session_gate import gate_for_storage_state
from .state import StateStore
from .tracking import delete_payment, issue_payment, mark_paid
from .util.money import format_rupiah


logger = logging.getLogger("qris_order_sync")


def _add_config_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="qris-order-sync")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    dec = sub.add_parser("decode", help="Decode a QRIS payload string and print its fields")
    dec.add_argument("payload", help="Raw EMVCo payload (the text encoded in the QR image)")

    track = sub.add_parser("track", help="Start tracking a QRIS payment")
    _add_config_arg(track)
    track.add_argument("--payload", default="", help="Raw QRIS payload; amount and merchant are decoded from it.")
    track.add_argument("--amount", type=int, default=0, help="Amount in Rupiah (overrides the decoded amount).")
    track.add_argument("--label", default="", help="Operator-facing label (default: decoded merchant name).")
    track.add_argument(
        "--expiry-minutes",
        type=int,
        default=0,
        help="Minutes until the payment expires (default: reconcile.default_expiry_minutes).",
    )
    track.add_argument("--order-ref", default="", help="Storefront order reference, if known.")
    track.add_argument(
        "--auto-match",
        action="store_true",
        help="Look up the storefront payment list and adopt the deadline/reference of the order with this amount.",
    )
    track.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    lst = sub.add_parser("list", help="List tracked payments")
    _add_config_arg(lst)
    lst.add_argument("--status", choices=["pending", "paid", "expired", "error"], default=None)

    mp = sub.add_parser("mark-paid", help="Manually mark a pending payment as paid")
    _add_config_arg(mp)
    mp.add_argument("payment_id")

    rm = sub.add_parser("delete", help="Stop tracking a payment")
    _add_config_arg(rm)
    rm.add_argument("payment_id")

    logs = sub.add_parser("logs", help="Show the operator log")
    _add_config_arg(logs)
    logs.add_argument("--limit", type=int, default=50, help="Number of entries to show (default: 50)")
    logs.add_argument(
        "--clear-older-than",
        type=int,
        default=0,
        metavar="DAYS",
        help="Delete entries older than this many days before listing.",
    )

    check = sub.add_parser("check", help="Run one reconciliation against the storefront, then expire overdue payments")
    _add_config_arg(check)
    check.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    mon = sub.add_parser("monitor", help="Reconcile periodically until interrupted")
    _add_config_arg(mon)
    mon.add_argument("--interval", type=float, default=0, help="Seconds between runs (default: monitor.interval_seconds)")
    mon.add_argument("--headful", action="store_true", help="Run browser headful (debug)")

    login = sub.add_parser("login", help="Open a browser, sign in to the storefront manually, and save the session")
    _add_config_arg(login)
    login.add_argument("--timeout", type=float, default=300.0, help="Seconds to wait for sign-in (default: 300)")

    return p


def _texts(cfg: AppConfig) -> StorefrontTexts:
    return StorefrontTexts(login_url_markers=tuple(cfg.storefront.login_markers))


def _page_source(cfg: AppConfig, *, headful: bool = False) -> PlaywrightPageSource:
    return PlaywrightPageSource(
        storage_state_path=cfg.storefront.storage_state_path,
        headless=cfg.storefront.headless and not headful,
        page_timeout_ms=cfg.fetcher.page_timeout_ms,
        settle_delay_ms=cfg.fetcher.settle_delay_ms,
        user_agent=cfg.storefront.user_agent or DEFAULT_USER_AGENT,
        debug_dir=cfg.storefront.debug_dir,
        texts=_texts(cfg),
    )


def _build_fetcher(cfg: AppConfig, source: PageTextSource, state: StateStore) -> OrderFetcher:
    return OrderFetcher(
        source,
        payment_list_url=cfg.storefront.payment_list_url,
        order_list_url=cfg.storefront.order_list_url,
        gate=gate_for_storage_state(cfg.storefront.storage_state_path),
        lock_wait_seconds=cfg.fetcher.lock_wait_seconds,
        max_retries=cfg.fetcher.max_retries,
        retry_delay_seconds=cfg.fetcher.retry_delay_seconds,
        noise_floor=cfg.reconcile.noise_floor,
        texts=_texts(cfg),
        operator_log=state.append_log_entry,
    )


def _build_reconciler(cfg: AppConfig, fetcher: OrderFetcher) -> Reconciler:
    return Reconciler(
        fetcher,
        check_delay_seconds=cfg.reconcile.check_delay_seconds,
        deadline_tolerance=timedelta(seconds=cfg.reconcile.deadline_tolerance_seconds),
    )


def _print_event(event: dict) -> None:
    data = event.get("data") or {}
    amount = data.get("amount")
    amount_s = f" {format_rupiah(amount)}" if amount else ""
    print(f"[{event.get('type')}] {data.get('id', '')}{amount_s} {data.get('label') or ''}".rstrip())


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.cmd == "decode":
        # Print only; no config/env required.
        decoded = decode(args.payload)
        amount = amount_as_rupiah(decoded)
        print(f"amount:          {format_rupiah(amount) if amount is not None else '-'}")
        print(f"merchant_name:   {decoded.merchant_name or '-'}")
        print(f"merchant_city:   {decoded.merchant_city or '-'}")
        print(f"transaction_ref: {decoded.transaction_ref or '-'}")
        return 0 if amount is not None else 1

    cfg = load_config(args.config)
    configure_logging(
        level=cfg.logging.level,
        file_path=cfg.logging.file_path,
        max_bytes=cfg.logging.max_bytes,
        backup_count=cfg.logging.backup_count,
    )

    if args.cmd == "login":
        source = _page_source(cfg, headful=True)
        try:
            path = source.interactive_login(login_url=cfg.storefront.login_url, timeout_s=args.timeout)
        except KeyboardInterrupt:
            print("Interrupted; session not saved.")
            return 130
        print(f"✅ Storefront session saved: {path}")
        return 0

    state = StateStore(cfg.state.db_path)
    try:
        if args.cmd == "track":
            pending_orders = None
            if args.auto_match:
                with _page_source(cfg, headful=args.headful) as source:
                    pending_orders = _build_fetcher(cfg, source, state).fetch_pending_orders()

            payment = issue_payment(
                state,
                payload=args.payload or None,
                amount=args.amount or None,
                label=args.label,
                expiry_minutes=args.expiry_minutes or cfg.reconcile.default_expiry_minutes,
                order_ref=args.order_ref or None,
                pending_orders=pending_orders,
                auto_match_tolerance=cfg.reconcile.auto_match_tolerance,
                events=payment_events,
            )
            if payment.amount <= 0:
                logger.warning("Payment %s has no amount; it will never be reconciled automatically.", payment.id)
            print(
                f"{payment.id}\t{format_rupiah(payment.amount)}\t{payment.label}\t"
                f"ref={payment.order_ref}\texpires={payment.expires_at:%Y-%m-%d %H:%M}"
            )
            return 0

        if args.cmd == "list":
            for p in state.list_tracked_payments(status=args.status):
                expires = f"{p.expires_at:%Y-%m-%d %H:%M}" if p.expires_at else "-"
                paid = f"{p.paid_at:%Y-%m-%d %H:%M}" if p.paid_at else "-"
                print(f"{p.id}\t{p.status}\t{format_rupiah(p.amount)}\t{p.label}\texpires={expires}\tpaid={paid}")
            return 0

        if args.cmd == "mark-paid":
            try:
                payment = mark_paid(state, args.payment_id, events=payment_events)
            except (LookupError, ValueError) as e:
                state.append_log_entry("mark_paid_error", f"Failed to mark QRIS as paid: {e}", "error")
                print(f"❌ {e}")
                return 1
            print(f"✅ Marked paid: {payment.id} {format_rupiah(payment.amount)}")
            return 0

        if args.cmd == "delete":
            if not delete_payment(state, args.payment_id, events=payment_events):
                print(f"❌ QRIS {args.payment_id} not found")
                return 1
            print(f"✅ Deleted: {args.payment_id}")
            return 0

        if args.cmd == "logs":
            if args.clear_older_than > 0:
                removed = state.clear_old_log_entries(days=args.clear_older_than)
                logger.info("Removed %d log entries older than %d days", removed, args.clear_older_than)
            for entry in reversed(state.recent_log_entries(limit=args.limit)):
                print(f"{entry.created_at:%Y-%m-%d %H:%M:%S}\t{entry.level.upper():7}\t{entry.action}\t{entry.message}")
            return 0

        if args.cmd == "check":
            with _page_source(cfg, headful=args.headful) as source:
                reconciler = _build_reconciler(cfg, _build_fetcher(cfg, source, state))
                try:
                    result = run_once(state, reconciler, events=payment_events)
                except Exception as e:
                    state.append_log_entry("payment_check_error", f"Failed: {e}", "error")
                    raise
            print(f"Checked {result.checked} payments, updated {result.updated}")
            for pid in result.paid_ids:
                print(f"✅ Paid: {pid}")
            return 0

        if args.cmd == "monitor":
            interval = args.interval or cfg.monitor.interval_seconds
            unsubscribe = payment_events.subscribe(_print_event)
            try:
                with _page_source(cfg, headful=args.headful) as source:
                    reconciler = _build_reconciler(cfg, _build_fetcher(cfg, source, state))
                    run_monitor(state, reconciler, interval_seconds=interval, events=payment_events)
            except KeyboardInterrupt:
                print("Interrupted; monitor stopped.")
                return 130
            finally:
                unsubscribe()
            return 0
    finally:
        state.close()

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    sys.exit(main())
