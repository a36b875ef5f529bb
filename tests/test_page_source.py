from __future__ import annotations

import json
from pathlib import Path

import pytest

from qris_order_sync.portal import client as client_mod
from qris_order_sync.portal.client import PlaywrightPageSource


URL = "https://shop.example/payment-list"


class FakeLocator:
    def count(self) -> int:
        return 0


class FakePage:
    def __init__(self) -> None:
        self.url = ""

    def goto(self, url: str, **_kw: object) -> None:
        self.url = url

    def wait_for_timeout(self, _ms: int) -> None:
        pass

    def inner_text(self, _selector: str) -> str:
        return "Menunggu Pembayaran\nTotal Pembayaran\nRp150.000"

    def locator(self, _selector: str) -> FakeLocator:
        return FakeLocator()


class FakeContext:
    def new_page(self) -> FakePage:
        return FakePage()

    def storage_state(self, path: str) -> None:
        Path(path).write_text(json.dumps({"cookies": [], "origins": []}), encoding="utf-8")

    def close(self) -> None:
        pass


class FakeBrowser:
    def __init__(self, name: str) -> None:
        self.name = name
        self.connected = True
        self.fail_new_context = False
        self.closed = False

    def is_connected(self) -> bool:
        return self.connected

    def new_context(self, **_kw: object) -> FakeContext:
        if self.fail_new_context or not self.connected:
            raise RuntimeError("Target page, context or browser has been closed")
        return FakeContext()

    def close(self) -> None:
        self.closed = True
        self.connected = False


class FakePlaywrightManager:
    def __enter__(self) -> object:
        return object()

    def __exit__(self, *_exc: object) -> None:
        pass


@pytest.fixture()
def launches(monkeypatch: pytest.MonkeyPatch) -> list[FakeBrowser]:
    launched: list[FakeBrowser] = []

    def fake_launch(self: PlaywrightPageSource, _p: object, *, headless: bool) -> FakeBrowser:
        browser = FakeBrowser(f"chromium-{len(launched) + 1}")
        launched.append(browser)
        return browser

    monkeypatch.setattr(client_mod, "sync_playwright", FakePlaywrightManager)
    monkeypatch.setattr(PlaywrightPageSource, "_launch", fake_launch)
    return launched


def _source(tmp_path: Path) -> PlaywrightPageSource:
    state = tmp_path / "storage_state.json"
    state.write_text(json.dumps({"cookies": [], "origins": []}), encoding="utf-8")
    return PlaywrightPageSource(
        storage_state_path=str(state),
        settle_delay_ms=0,
        debug_dir=str(tmp_path / "debug"),
    )


def test_browser_launches_once_and_is_reused(tmp_path: Path, launches: list[FakeBrowser]) -> None:
    with _source(tmp_path) as source:
        assert source.render(URL).text.endswith("Rp150.000")
        source.render(URL)
    assert len(launches) == 1
    assert launches[0].closed is True


def test_disconnected_browser_is_relaunched(tmp_path: Path, launches: list[FakeBrowser]) -> None:
    with _source(tmp_path) as source:
        source.render(URL)
        launches[0].connected = False

        page = source.render(URL)

    assert page.url == URL
    assert [b.name for b in launches] == ["chromium-1", "chromium-2"]


def test_failed_context_drops_browser_for_next_render(tmp_path: Path, launches: list[FakeBrowser]) -> None:
    with _source(tmp_path) as source:
        source.render(URL)
        launches[0].fail_new_context = True

        with pytest.raises(RuntimeError):
            source.render(URL)
        assert launches[0].closed is True

        source.render(URL)

    assert len(launches) == 2
