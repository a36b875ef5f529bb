from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Union

from filelock import FileLock, Timeout


logger = logging.getLogger(__name__)


class SessionGate:
    """
    Single-holder gate around storefront browser automation.

    The storefront is a single-session UI; two automation sessions navigating at once end up with
    inconsistent page state and look far more like a bot. Every fetch holds the gate for the whole
    browser session and gives it back on every exit path via `hold()`.

    With `lock_path` set, the gate is also an OS file lock, so a manual `check` and a running
    `monitor` in another process wait for each other. Without it the gate only covers threads of
    this process.
    """

    def __init__(self, name: str = "storefront", *, lock_path: Optional[Union[str, Path]] = None) -> None:
        self.name = name
        self.lock_path = Path(lock_path) if lock_path else None
        self._lock = threading.Lock()
        self._file_lock: Optional[FileLock] = None
        if self.lock_path is not None:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            # Released from whichever thread holds `_lock`, not necessarily the acquiring one.
            self._file_lock = FileLock(str(self.lock_path), thread_local=False)
        self._held_since: Optional[datetime] = None
        self._held_at_monotonic: float = 0.0

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @property
    def held_since(self) -> Optional[datetime]:
        return self._held_since

    def acquire(self, max_wait_seconds: float) -> bool:
        """
        Wait up to `max_wait_seconds` for the gate. Returns False on timeout without side effects.
        """
        timeout = max(0.0, float(max_wait_seconds))
        started = time.monotonic()
        if not self._lock.acquire(timeout=timeout):
            logger.warning(
                "Timed out waiting %.1fs for %s session gate (held since %s).",
                timeout,
                self.name,
                self._held_since.isoformat() if self._held_since else "?",
            )
            return False

        if self._file_lock is not None:
            remaining = max(0.0, timeout - (time.monotonic() - started))
            try:
                self._file_lock.acquire(timeout=remaining)
            except Timeout:
                self._lock.release()
                logger.warning(
                    "Timed out waiting %.1fs for %s session gate; another process holds %s.",
                    timeout,
                    self.name,
                    self.lock_path,
                )
                return False

        self._held_since = datetime.now(timezone.utc)
        self._held_at_monotonic = time.monotonic()
        logger.debug("Acquired %s session gate.", self.name)
        return True

    def release(self) -> None:
        if not self._lock.locked():
            raise RuntimeError(f"{self.name} session gate released while not held")
        held_for = time.monotonic() - self._held_at_monotonic
        self._held_since = None
        try:
            if self._file_lock is not None:
                self._file_lock.release()
        finally:
            self._lock.release()
        logger.debug("Released %s session gate (held %.1fs).", self.name, held_for)

    @contextmanager
    def hold(self, max_wait_seconds: float) -> Iterator[bool]:
        acquired = self.acquire(max_wait_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


def gate_for_storage_state(storage_state_path: Union[str, Path], name: str = "storefront") -> SessionGate:
    """
    Gate shared by every process that drives the storefront with the same stored session.

    e.g. data/storefront_storage_state.json -> data/storefront_storage_state.json.lock
    """
    path = Path(storage_state_path)
    return SessionGate(name, lock_path=path.with_name(path.name + ".lock"))


# Fallback for fetchers built without a gate (tests, scripts): threads of one process only.
DEFAULT_GATE = SessionGate()
