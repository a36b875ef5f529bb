#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def _emit(payload: dict, out: str) -> None:
    out_json = json.dumps(payload, indent=2, sort_keys=False, default=str)
    if out:
        Path(out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from qris_order_sync.portal.extract import extract_pending, extract_processed

    p = argparse.ArgumentParser(
        prog="parse_order_text_snapshot",
        description=(
            "Run the order-list extractor over Playwright-saved text snapshots (data/debug/*.txt).\n"
            "This is intended for debugging extraction regressions offline (no Playwright, no session)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    pending = sub.add_parser("pending", help="Parse a payment-list snapshot into pending orders")
    pending.add_argument("--file", required=True, help="Path to a debug .txt file captured from the payment list")
    pending.add_argument(
        "--now",
        default="",
        help="Reference time for deadline years, ISO format (default: now). Use the capture time for old snapshots.",
    )
    pending.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    processed = sub.add_parser("processed", help="Parse an order-list snapshot into processed orders")
    processed.add_argument("--file", required=True, help="Path to a debug .txt file captured from the order list")
    processed.add_argument("--main-file", default="", help="Optional text of the main content region only")
    processed.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)

    if args.cmd == "pending":
        now = datetime.fromisoformat(args.now) if args.now else None
        orders = extract_pending(_read_text(args.file), now=now)
        _emit({"pending_orders": [asdict(o) for o in orders]}, args.out)
        return 0

    if args.cmd == "processed":
        main_text = _read_text(args.main_file) if args.main_file else None
        orders = extract_processed(_read_text(args.file), main_text=main_text)
        _emit({"processed_orders": [asdict(o) for o in orders]}, args.out)
        return 0

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
