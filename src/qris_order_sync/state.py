from __future__ import annotations

import logging
import shutil
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .models import PAYMENT_STATUSES, LogEntry, TrackedPayment


logger = logging.getLogger(__name__)

_LOG_LEVELS = ("info", "warning", "error")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateStore:
    """
    SQLite record store for tracked QRIS payments and the operator log.

    Each status update is a single committed statement keyed by payment id, so reconciliation runs
    never need a transaction spanning the whole run.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.backup_path = self.db_path.with_name(f"{self.db_path.name}.bak")

        # Losing the tracked payments means losing every pending QR; heal from the backup first.
        self._conn = self._connect()
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        if not self.backup_path.exists():
            self._try_backup()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @staticmethod
    def _checked_connection(path: Path) -> Optional[sqlite3.Connection]:
        """
        A connection to `path` if SQLite can read it and `quick_check` passes, else None.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = sqlite3.connect(path)
            conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            if row and row[0] == "ok":
                return conn
        except sqlite3.DatabaseError as e:
            logger.debug("SQLite check failed for %s: %s", path, e)
        if conn is not None:
            conn.close()
        return None

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            return sqlite3.connect(self.db_path)

        conn = self._checked_connection(self.db_path)
        if conn is not None:
            return conn

        logger.warning("Payment DB %s failed its integrity check; moving it aside.", self.db_path)
        self._set_aside_db_files()

        if not self.backup_path.exists():
            logger.warning("No payment DB backup at %s; starting empty.", self.backup_path)
            return sqlite3.connect(self.db_path)

        try:
            shutil.copy2(self.backup_path, self.db_path)
        except OSError:
            logger.warning("Could not copy payment DB backup into place; starting empty.", exc_info=True)
            return sqlite3.connect(self.db_path)

        conn = self._checked_connection(self.db_path)
        if conn is not None:
            logger.warning("Payment DB restored from %s", self.backup_path)
            return conn

        logger.warning("Payment DB backup is unusable too; starting empty.")
        self._set_aside_db_files()
        return sqlite3.connect(self.db_path)

    def _set_aside_db_files(self) -> None:
        suffix = datetime.now(timezone.utc).strftime("corrupt-%Y%m%dT%H%M%SZ")
        for name in (self.db_path.name, f"{self.db_path.name}-wal", f"{self.db_path.name}-shm"):
            path = self.db_path.with_name(name)
            if not path.exists():
                continue
            try:
                path.replace(path.with_name(f"{name}.{suffix}"))
            except OSError:
                logger.debug("Could not move %s aside", path, exc_info=True)

    def _try_backup(self) -> None:
        try:
            self.backup()
        except (OSError, sqlite3.Error):
            logger.debug("Payment DB backup failed.", exc_info=True)

    def backup(self) -> None:
        """
        Snapshot the DB to `<db_path>.bak` through SQLite's online backup API.

        The snapshot is written next to the target and renamed over it, so a crash mid-backup
        never leaves a half-written `.bak`.
        """
        staging = self.backup_path.with_name(f"{self.backup_path.name}.tmp")
        staging.unlink(missing_ok=True)

        target = sqlite3.connect(staging)
        try:
            self._conn.backup(target)
        finally:
            target.close()
        staging.replace(self.backup_path)

    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tracked_payments (
              id TEXT PRIMARY KEY,
              amount INTEGER NOT NULL,
              label TEXT NOT NULL DEFAULT '',
              status TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT,
              order_ref TEXT,
              paid_at TEXT
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tracked_payments_status ON tracked_payments(status);"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS admin_logs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              action TEXT NOT NULL,
              message TEXT NOT NULL,
              level TEXT NOT NULL,
              created_at TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              started_at TEXT NOT NULL,
              finished_at TEXT,
              ok INTEGER,
              message TEXT
            );
            """
        )
        self._apply_light_migrations()
        self._conn.commit()

    def _apply_light_migrations(self) -> None:
        cols = {row[1] for row in self._conn.execute("PRAGMA table_info(tracked_payments);").fetchall()}
        if "qr_payload" not in cols:
            self._conn.execute("ALTER TABLE tracked_payments ADD COLUMN qr_payload TEXT;")

    # Tracked payments

    def _row_to_payment(self, row: sqlite3.Row) -> TrackedPayment:
        return TrackedPayment(
            id=row["id"],
            amount=row["amount"],
            label=row["label"] or "",
            status=row["status"],
            created_at=_from_iso(row["created_at"]),
            expires_at=_from_iso(row["expires_at"]),
            order_ref=row["order_ref"],
            paid_at=_from_iso(row["paid_at"]),
            qr_payload=row["qr_payload"],
        )

    def create_tracked_payment(self, payment: TrackedPayment) -> TrackedPayment:
        self._conn.execute(
            """
            INSERT INTO tracked_payments(id, amount, label, status, created_at, expires_at, order_ref, paid_at, qr_payload)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                payment.id,
                payment.amount,
                payment.label,
                payment.status,
                _iso(payment.created_at),
                _iso(payment.expires_at),
                payment.order_ref,
                _iso(payment.paid_at),
                payment.qr_payload,
            ),
        )
        self._conn.commit()
        return payment

    def get_tracked_payment(self, payment_id: str) -> Optional[TrackedPayment]:
        row = self._conn.execute("SELECT * FROM tracked_payments WHERE id = ?;", (payment_id,)).fetchone()
        return self._row_to_payment(row) if row else None

    def list_tracked_payments(self, status: Optional[str] = None) -> list[TrackedPayment]:
        if status is None:
            rows = self._conn.execute("SELECT * FROM tracked_payments ORDER BY created_at DESC;").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM tracked_payments WHERE status = ? ORDER BY created_at DESC;",
                (status,),
            ).fetchall()
        return [self._row_to_payment(r) for r in rows]

    def find_pending_tracked_payments(self) -> list[TrackedPayment]:
        # Oldest first: when two payments share an amount, the earlier one is matched first.
        rows = self._conn.execute(
            "SELECT * FROM tracked_payments WHERE status = 'pending' ORDER BY created_at ASC, rowid ASC;"
        ).fetchall()
        return [self._row_to_payment(r) for r in rows]

    def update_tracked_payment_status(
        self,
        payment_id: str,
        status: str,
        *,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        Move a payment to `status`. Returns True only when a row actually changed.

        Marking an already-paid payment as paid again is a no-op that keeps the first `paid_at`.
        """
        if status not in PAYMENT_STATUSES:
            raise ValueError(f"Unknown payment status: {status!r}")

        if status == "paid":
            cur = self._conn.execute(
                """
                UPDATE tracked_payments SET status = 'paid', paid_at = COALESCE(paid_at, ?)
                WHERE id = ? AND status != 'paid';
                """,
                (_iso(paid_at or datetime.now()), payment_id),
            )
        else:
            cur = self._conn.execute(
                "UPDATE tracked_payments SET status = ? WHERE id = ?;",
                (status, payment_id),
            )
        self._conn.commit()
        return cur.rowcount > 0

    def delete_tracked_payment(self, payment_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM tracked_payments WHERE id = ?;", (payment_id,))
        self._conn.commit()
        return cur.rowcount > 0

    def expire_overdue(self, now: Optional[datetime] = None) -> list[str]:
        """
        Expiry sweep: move pending payments whose deadline has passed to `expired`.
        """
        cutoff = _iso(now or datetime.now())
        rows = self._conn.execute(
            """
            SELECT id FROM tracked_payments
            WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at < ?
            ORDER BY expires_at ASC;
            """,
            (cutoff,),
        ).fetchall()
        ids = [r["id"] for r in rows]
        if ids:
            self._conn.executemany(
                "UPDATE tracked_payments SET status = 'expired' WHERE id = ? AND status = 'pending';",
                [(i,) for i in ids],
            )
            self._conn.commit()
        return ids

    # Operator log

    def append_log_entry(self, action: str, message: str, level: str = "info") -> int:
        if level not in _LOG_LEVELS:
            level = "info"
        cur = self._conn.execute(
            "INSERT INTO admin_logs(action, message, level, created_at) VALUES (?, ?, ?, ?);",
            (action, message, level, datetime.now().isoformat()),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def recent_log_entries(self, limit: int = 50) -> list[LogEntry]:
        rows = self._conn.execute(
            "SELECT * FROM admin_logs ORDER BY id DESC LIMIT ?;",
            (int(limit),),
        ).fetchall()
        return [
            LogEntry(
                id=r["id"],
                action=r["action"],
                message=r["message"],
                level=r["level"],
                created_at=_from_iso(r["created_at"]),
            )
            for r in rows
        ]

    def clear_old_log_entries(self, days: int = 7) -> int:
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        cur = self._conn.execute("DELETE FROM admin_logs WHERE created_at < ?;", (cutoff,))
        self._conn.commit()
        return cur.rowcount

    # Runs

    def record_run_start(self) -> int:
        cur = self._conn.execute(
            "INSERT INTO runs(started_at) VALUES (?);",
            (datetime.now(timezone.utc).isoformat(),),
        )
        self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(self, run_id: int, *, ok: bool, message: Optional[str] = None) -> None:
        self._conn.execute(
            "UPDATE runs SET finished_at = ?, ok = ?, message = ? WHERE id = ?;",
            (datetime.now(timezone.utc).isoformat(), int(ok), message, run_id),
        )
        self._conn.commit()

        # The backup is the last-known-good copy; a failed run may have left odd state behind.
        if ok:
            self._try_backup()
