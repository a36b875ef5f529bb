from __future__ import annotations

from pathlib import Path

import pytest

from qris_order_sync.config import load_config


def _write(tmp_path: Path, name: str, text: str) -> Path:
    p = tmp_path / name
    p.write_text(text, encoding="utf-8")
    return p


def test_defaults_without_yaml(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.storefront.base_url == "https://www.tokopedia.com"
    assert cfg.storefront.payment_list_url == "https://www.tokopedia.com/payment/payment-list?nref=pcside"
    assert cfg.storefront.order_list_url == "https://www.tokopedia.com/order-list"
    assert cfg.storefront.login_url == "https://www.tokopedia.com/login"
    assert cfg.fetcher.lock_wait_seconds == 120
    assert cfg.fetcher.max_retries == 2
    assert cfg.reconcile.deadline_tolerance_seconds == 300
    assert cfg.reconcile.noise_floor == 10_000
    assert cfg.monitor.interval_seconds == 30


def test_urls_follow_base_url(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
storefront:
  base_url: "https://shop.example/"
  order_list_url: "https://shop.example/orders?status=diproses"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.storefront.base_url == "https://shop.example"
    assert cfg.storefront.payment_list_url == "https://shop.example/payment/payment-list?nref=pcside"
    assert cfg.storefront.order_list_url == "https://shop.example/orders?status=diproses"


def test_env_overrides_and_yaml_expansion(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FETCH_MAX_RETRIES", "5")
    monkeypatch.setenv("STOREFRONT_HEADLESS", "false")
    monkeypatch.setenv("QRIS_DB", str(tmp_path / "q.db"))
    cfg_path = _write(
        tmp_path,
        "cfg.yaml",
        """
state:
  db_path: "${QRIS_DB}"
reconcile:
  noise_floor: 5000
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.fetcher.max_retries == 5
    assert cfg.storefront.headless is False
    assert cfg.state.db_path == str(tmp_path / "q.db")
    assert cfg.reconcile.noise_floor == 5000
    # Untouched siblings keep their env/defaults.
    assert cfg.reconcile.auto_match_tolerance == 1000


def test_login_markers_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STOREFRONT_LOGIN_MARKERS", "login, /masuk")
    cfg = load_config(tmp_path / "missing.yaml")
    assert cfg.storefront.login_markers == ["login", "/masuk"]


def test_invalid_base_url_rejected(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", 'storefront:\n  base_url: "tokopedia"\n')
    with pytest.raises(Exception):
        _ = load_config(cfg_path)


def test_negative_retry_budget_rejected(tmp_path: Path) -> None:
    cfg_path = _write(tmp_path, "cfg.yaml", "fetcher:\n  max_retries: -1\n")
    with pytest.raises(Exception):
        _ = load_config(cfg_path)
