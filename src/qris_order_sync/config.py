from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            out[k] = _deep_merge(out[k], v) if k in out else v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most setups only need `.env`; YAML is an optional override.
    """
    return {
        "storefront": {
            "base_url": os.getenv("STOREFRONT_BASE_URL", "https://www.tokopedia.com"),
            "payment_list_url": os.getenv("STOREFRONT_PAYMENT_LIST_URL", ""),
            "order_list_url": os.getenv("STOREFRONT_ORDER_LIST_URL", ""),
            "login_url": os.getenv("STOREFRONT_LOGIN_URL", ""),
            "login_markers": _env_list("STOREFRONT_LOGIN_MARKERS", ["login"]),
            "storage_state_path": os.getenv("STOREFRONT_STORAGE_STATE", "data/storefront_storage_state.json"),
            "debug_dir": os.getenv("STOREFRONT_DEBUG_DIR", "data/debug"),
            "headless": _env_bool("STOREFRONT_HEADLESS", default=True),
            "user_agent": os.getenv("STOREFRONT_USER_AGENT", ""),
        },
        "fetcher": {
            "lock_wait_seconds": os.getenv("FETCH_LOCK_WAIT_SECONDS", "120"),
            "max_retries": os.getenv("FETCH_MAX_RETRIES", "2"),
            "retry_delay_seconds": os.getenv("FETCH_RETRY_DELAY_SECONDS", "3"),
            "page_timeout_ms": os.getenv("FETCH_PAGE_TIMEOUT_MS", "60000"),
            "settle_delay_ms": os.getenv("FETCH_SETTLE_DELAY_MS", "3000"),
        },
        "reconcile": {
            "check_delay_seconds": os.getenv("RECONCILE_CHECK_DELAY_SECONDS", "5"),
            "deadline_tolerance_seconds": os.getenv("RECONCILE_DEADLINE_TOLERANCE_SECONDS", "300"),
            "noise_floor": os.getenv("RECONCILE_NOISE_FLOOR", "10000"),
            "auto_match_tolerance": os.getenv("RECONCILE_AUTO_MATCH_TOLERANCE", "1000"),
            "default_expiry_minutes": os.getenv("QRIS_DEFAULT_EXPIRY_MINUTES", "15"),
        },
        "monitor": {
            "interval_seconds": os.getenv("MONITOR_INTERVAL_SECONDS", "30"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/qris_sync.log"),
            "max_bytes": os.getenv("LOG_MAX_BYTES", "5000000"),
            "backup_count": os.getenv("LOG_BACKUP_COUNT", "3"),
        },
    }


class StorefrontConfig(BaseModel):
    """
    Where the storefront's payment list and order list live, and where its session is persisted.

    List/login URLs default to the Tokopedia paths under `base_url`; set them explicitly if yours differ.
    """

    base_url: str = "https://www.tokopedia.com"
    payment_list_url: str = ""
    order_list_url: str = ""
    login_url: str = ""
    login_markers: list[str] = Field(default_factory=lambda: ["login"])
    storage_state_path: str = "data/storefront_storage_state.json"
    debug_dir: str = "data/debug"
    headless: bool = True
    # Empty means the built-in desktop Chrome UA.
    user_agent: str = ""

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "StorefrontConfig":
        base_url = (self.base_url or "").strip().rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("storefront.base_url must be a full URL like 'https://www.tokopedia.com'")

        self.base_url = base_url
        if not self.payment_list_url:
            self.payment_list_url = f"{base_url}/payment/payment-list?nref=pcside"
        if not self.order_list_url:
            self.order_list_url = f"{base_url}/order-list"
        if not self.login_url:
            self.login_url = f"{base_url}/login"
        if not self.login_markers:
            raise ValueError("storefront.login_markers must name at least one URL fragment")
        return self


class FetcherConfig(BaseModel):
    lock_wait_seconds: float = Field(default=120.0, ge=0)
    max_retries: int = Field(default=2, ge=0)
    retry_delay_seconds: float = Field(default=3.0, ge=0)
    page_timeout_ms: int = Field(default=60_000, gt=0)
    settle_delay_ms: int = Field(default=3_000, ge=0)


class ReconcileConfig(BaseModel):
    # Heuristics tuned against the storefront's current UI; keep them adjustable.
    check_delay_seconds: float = Field(default=5.0, ge=0)
    deadline_tolerance_seconds: float = Field(default=300.0, ge=0)
    noise_floor: int = Field(default=10_000, ge=0)
    auto_match_tolerance: int = Field(default=1_000, ge=0)
    default_expiry_minutes: int = Field(default=15, gt=0)


class MonitorConfig(BaseModel):
    interval_seconds: float = Field(default=30.0, gt=0)


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/qris_sync.log"
    max_bytes: int = Field(default=5_000_000, ge=0)
    backup_count: int = Field(default=3, ge=0)


class AppConfig(BaseModel):
    storefront: StorefrontConfig = StorefrontConfig()
    fetcher: FetcherConfig = FetcherConfig()
    reconcile: ReconcileConfig = ReconcileConfig()
    monitor: MonitorConfig = MonitorConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
