from __future__ import annotations

import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, TypeVar

from playwright.sync_api import Browser, Page, Playwright, sync_playwright

from ..models import PendingExternalOrder, ProcessedExternalOrder
from ..session_gate import DEFAULT_GATE, SessionGate
from .extract import extract_pending, extract_processed
from .selectors import DEFAULT_NOISE_FLOOR, StorefrontTexts


logger = logging.getLogger(__name__)

T = TypeVar("T")

# (action, message, level) -> operator log stream
OperatorLog = Callable[[str, str, str], None]

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


class SessionExpiredError(RuntimeError):
    """
    Raised when the storefront bounces us to its sign-in surface, or no stored session exists.

    Retrying does not help; the operator has to run `qris-order-sync login` again.
    """


@dataclass(frozen=True)
class RenderedPage:
    url: str
    text: str
    # Text of the main content region (without the account sidebar), when one was found.
    main_text: Optional[str] = None


class PageTextSource(Protocol):
    def render(self, url: str) -> RenderedPage:
        ...


class PlaywrightPageSource:
    """
    Renders storefront pages in Chromium using a persisted Playwright `storage_state` (cookies).

    The browser is launched by the first `render()`; the caller owns `close()` (or uses it as a
    context manager).
    Each `render()` gets a fresh browser context so no page state leaks between list views.
    """

    def __init__(
        self,
        *,
        storage_state_path: str = "data/storefront_storage_state.json",
        headless: bool = True,
        page_timeout_ms: int = 60_000,
        settle_delay_ms: int = 3_000,
        user_agent: str = DEFAULT_USER_AGENT,
        debug_dir: str = "data/debug",
        texts: Optional[StorefrontTexts] = None,
    ) -> None:
        self.storage_state_path = Path(storage_state_path)
        self.headless = headless
        self.page_timeout_ms = int(page_timeout_ms)
        self.settle_delay_ms = int(settle_delay_ms)
        self.user_agent = user_agent
        self.debug_dir = debug_dir
        self.texts = texts or StorefrontTexts()

        self._pw_cm = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    def __enter__(self) -> "PlaywrightPageSource":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def open(self) -> None:
        if self._browser is not None:
            if self._browser.is_connected():
                return
            logger.warning("Chromium is no longer connected; relaunching.")
            self.close()
        self._pw_cm = sync_playwright()
        self._playwright = self._pw_cm.__enter__()
        try:
            self._browser = self._launch(self._playwright, headless=self.headless)
        except Exception:
            self._pw_cm.__exit__(None, None, None)
            self._pw_cm = None
            self._playwright = None
            raise

    def close(self) -> None:
        try:
            if self._browser is not None and self._browser.is_connected():
                self._browser.close()
        finally:
            self._browser = None
            if self._pw_cm is not None:
                self._pw_cm.__exit__(None, None, None)
            self._pw_cm = None
            self._playwright = None

    def _launch(self, p: Playwright, *, headless: bool) -> Browser:
        args = ["--disable-blink-features=AutomationControlled", "--disable-dev-shm-usage"]
        try:
            return p.chromium.launch(headless=headless, args=args)
        except Exception as e:
            msg = str(e)
            if "Executable doesn't exist" not in msg:
                raise
            logger.warning(
                "Playwright Chromium executable missing; falling back to system Chrome channel. (%s)",
                msg,
            )
            return p.chromium.launch(headless=headless, args=args, channel="chrome")

    def _context_kwargs(self) -> dict:
        return {
            "user_agent": self.user_agent,
            "locale": "id-ID",
            "extra_http_headers": {"Accept-Language": "id-ID,id;q=0.9,en-US;q=0.8,en;q=0.7"},
        }

    def looks_like_login(self, url: str) -> bool:
        u = (url or "").lower()
        return any(marker.lower() in u for marker in self.texts.login_url_markers)

    def render(self, url: str) -> RenderedPage:
        state_path = self.storage_state_path
        if not state_path.exists() or not self._validate_or_restore_storage_state(state_path):
            raise SessionExpiredError(
                f"No stored storefront session at {state_path}; run `qris-order-sync login` first."
            )

        # Launch on first use; a run with nothing to check never starts Chromium.
        self.open()
        assert self._browser is not None
        try:
            ctx = self._browser.new_context(storage_state=str(state_path), **self._context_kwargs())
        except Exception:
            # A crashed or wedged browser fails here on every call; start a fresh one next time.
            self.close()
            raise
        page = ctx.new_page()
        try:
            page.goto(url, wait_until="domcontentloaded", timeout=self.page_timeout_ms)
            # The lists are client-rendered; DOMContentLoaded fires well before the cards appear.
            page.wait_for_timeout(self.settle_delay_ms)

            if self.looks_like_login(page.url):
                self._save_debug(page, name_prefix="login_redirect")
                raise SessionExpiredError(f"Storefront redirected to sign-in (url={page.url}).")

            text = page.inner_text("body")
            main_text = self._main_region_text(page)

            # Refresh persisted cookies so the session keeps sliding forward.
            ctx.storage_state(path=str(state_path))
            self._backup_storage_state(state_path)

            return RenderedPage(url=page.url, text=text, main_text=main_text)
        except SessionExpiredError:
            raise
        except Exception:
            safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", url.split("?", 1)[0].rsplit("/", 1)[-1]).strip("_") or "page"
            self._save_debug(page, name_prefix=f"render_failed_{safe}")
            raise
        finally:
            ctx.close()

    def _main_region_text(self, page: Page) -> Optional[str]:
        try:
            loc = page.locator(self.texts.main_content_selector)
            if loc.count() > 0:
                return loc.first.inner_text()
        except Exception:
            logger.debug("Failed to read main content region.", exc_info=True)
        return None

    def interactive_login(self, *, login_url: str, timeout_s: float = 300.0) -> Path:
        """
        Open a visible browser on the sign-in page and wait for the operator to log in.

        Once the browser leaves the sign-in surface, the session is persisted to `storage_state_path`.
        """
        with sync_playwright() as p:
            browser = self._launch(p, headless=False)
            try:
                ctx = browser.new_context(**self._context_kwargs())
                page = ctx.new_page()
                page.goto(login_url, wait_until="domcontentloaded", timeout=self.page_timeout_ms)
                logger.info("Sign in to the storefront in the opened browser (waiting up to %.0fs)...", timeout_s)

                deadline = time.time() + timeout_s
                while time.time() < deadline:
                    page.wait_for_timeout(1_000)
                    if not self.looks_like_login(page.url):
                        break
                else:
                    self._save_debug(page, name_prefix="login_timeout")
                    raise TimeoutError("Storefront sign-in did not complete in time.")

                # Let post-login redirects set their cookies.
                page.wait_for_timeout(self.settle_delay_ms)
                self.storage_state_path.parent.mkdir(parents=True, exist_ok=True)
                ctx.storage_state(path=str(self.storage_state_path))
                self._backup_storage_state(self.storage_state_path)
                logger.info("Saved storefront session: %s", self.storage_state_path)
                return self.storage_state_path
            finally:
                browser.close()

    def _storage_state_backup_path(self, state_path: Path) -> Path:
        # e.g. data/storefront_storage_state.json -> data/storefront_storage_state.json.bak
        return state_path.with_name(state_path.name + ".bak")

    def _storage_state_looks_valid(self, path: Path) -> bool:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except Exception:
            return False
        return isinstance(data, dict) and ("cookies" in data or "origins" in data)

    def _validate_or_restore_storage_state(self, state_path: Path) -> bool:
        """
        Return True if `state_path` is usable as Playwright storage_state.

        A corrupted file is quarantined and the `.bak` copy restored when it is valid.
        """
        if self._storage_state_looks_valid(state_path):
            return True

        logger.warning("storage_state file is invalid JSON; attempting restore from backup: %s", state_path)
        self._quarantine_file(state_path, prefix="storage_state")

        bak = self._storage_state_backup_path(state_path)
        if bak.exists() and self._storage_state_looks_valid(bak):
            shutil.copy2(bak, state_path)
            logger.warning("Restored storage_state from backup: %s", bak)
            return True
        return False

    def _backup_storage_state(self, state_path: Path) -> None:
        try:
            if self._storage_state_looks_valid(state_path):
                shutil.copy2(state_path, self._storage_state_backup_path(state_path))
        except Exception:
            logger.debug("Failed to write storage_state backup.", exc_info=True)

    def _quarantine_file(self, path: Path, *, prefix: str) -> None:
        try:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            path.replace(path.with_name(f"{prefix}.{path.name}.corrupt-{stamp}"))
        except Exception:
            logger.debug("Failed to quarantine file=%s", path, exc_info=True)

    def _save_debug(self, page: Page, *, name_prefix: str) -> None:
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            page.screenshot(path=str(out_dir / f"{name_prefix}.png"), full_page=True)
            (out_dir / f"{name_prefix}.html").write_text(page.content(), encoding="utf-8")
            # Rendered text lets the extractor be replayed offline (scripts/parse_order_text_snapshot.py).
            (out_dir / f"{name_prefix}.txt").write_text(page.inner_text("body"), encoding="utf-8")
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)


class OrderFetcher:
    """
    Fetch pending and processed order snapshots from the storefront.

    Every fetch holds the session gate, retries transient failures a fixed number of times and
    degrades to an empty snapshot instead of raising. Terminal failures (expired session, exhausted
    retries) are written to the operator log so a human can step in.
    """

    def __init__(
        self,
        source: PageTextSource,
        *,
        payment_list_url: str,
        order_list_url: str,
        gate: Optional[SessionGate] = None,
        lock_wait_seconds: float = 120.0,
        max_retries: int = 2,
        retry_delay_seconds: float = 3.0,
        noise_floor: int = DEFAULT_NOISE_FLOOR,
        texts: Optional[StorefrontTexts] = None,
        operator_log: Optional[OperatorLog] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.source = source
        self.payment_list_url = payment_list_url
        self.order_list_url = order_list_url
        self.gate = gate or DEFAULT_GATE
        self.lock_wait_seconds = float(lock_wait_seconds)
        self.max_retries = max(0, int(max_retries))
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.noise_floor = int(noise_floor)
        self.texts = texts or StorefrontTexts()
        self._operator_log = operator_log
        self._sleep = sleep
        self._clock = clock

    def fetch_pending_orders(self) -> list[PendingExternalOrder]:
        return self._fetch(
            "pending",
            self.payment_list_url,
            lambda page: extract_pending(
                page.text,
                now=self._clock(),
                texts=self.texts,
                noise_floor=self.noise_floor,
            ),
        )

    def fetch_processed_orders(self) -> list[ProcessedExternalOrder]:
        return self._fetch(
            "processed",
            self.order_list_url,
            lambda page: extract_processed(
                page.text,
                main_text=page.main_text,
                texts=self.texts,
                noise_floor=self.noise_floor,
            ),
        )

    def _fetch(self, kind: str, url: str, parse: Callable[[RenderedPage], list[T]]) -> list[T]:
        with self.gate.hold(self.lock_wait_seconds) as held:
            if not held:
                logger.warning("Could not acquire session gate for %s orders; returning empty snapshot.", kind)
                return []

            attempts = self.max_retries + 1
            for attempt in range(1, attempts + 1):
                try:
                    logger.info("Fetching %s orders (attempt %d/%d): %s", kind, attempt, attempts, url)
                    orders = parse(self.source.render(url))
                    logger.info("Found %d %s orders", len(orders), kind)
                    return orders
                except SessionExpiredError as e:
                    logger.error("Storefront session expired while fetching %s orders: %s", kind, e)
                    self._log_operator(
                        "session_expired",
                        f"Storefront session expired ({kind} orders). Run `qris-order-sync login` to refresh it.",
                        "error",
                    )
                    return []
                except Exception as e:
                    logger.warning("Attempt %d/%d failed fetching %s orders: %s", attempt, attempts, kind, e)
                    if attempt < attempts:
                        logger.info("Retrying in %.1fs...", self.retry_delay_seconds)
                        self._sleep(self.retry_delay_seconds)

            self._log_operator(
                "fetch_failed",
                f"Fetching {kind} orders failed after {attempts} attempts.",
                "error",
            )
            return []

    def _log_operator(self, action: str, message: str, level: str) -> None:
        if self._operator_log is None:
            return
        try:
            self._operator_log(action, message, level)
        except Exception:
            logger.warning("Failed to write operator log entry (action=%s).", action, exc_info=True)
