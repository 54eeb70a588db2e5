"""Runtime settings resolved from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _default_brackets_path() -> Path:
    return Path(__file__).resolve().parent / "config" / "salary_brackets.yaml"


@dataclass(frozen=True)
class Settings:
    max_upload_bytes: int = 5 * 1024 * 1024
    header_scan_rows: int = 5
    reconcile_chunk_size: int = 100
    batch_lock_timeout_seconds: float = 10.0
    pipeline_timeout_seconds: float = 60.0
    default_unit_price: Decimal = Decimal("50.00")
    salary_brackets_path: Path = field(default_factory=_default_brackets_path)
    change_webhook_url: str | None = None
    cors_origins: tuple[str, ...] = ("http://localhost:3000", "http://127.0.0.1:3000")
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        origins_env = os.getenv("API_CORS_ORIGINS", "")
        origins = tuple(origin.strip() for origin in origins_env.split(",") if origin.strip())
        brackets_env = os.getenv("SALARY_BRACKETS_PATH")
        price_env = os.getenv("DEFAULT_UNIT_PRICE")
        return cls(
            max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", cls.max_upload_bytes),
            header_scan_rows=_env_int("HEADER_SCAN_ROWS", cls.header_scan_rows),
            reconcile_chunk_size=max(1, _env_int("RECONCILE_CHUNK_SIZE", cls.reconcile_chunk_size)),
            batch_lock_timeout_seconds=_env_float("BATCH_LOCK_TIMEOUT_SECONDS", cls.batch_lock_timeout_seconds),
            pipeline_timeout_seconds=_env_float("PIPELINE_TIMEOUT_SECONDS", cls.pipeline_timeout_seconds),
            default_unit_price=Decimal(price_env) if price_env else cls.default_unit_price,
            salary_brackets_path=Path(brackets_env).expanduser() if brackets_env else _default_brackets_path(),
            change_webhook_url=os.getenv("CHANGE_WEBHOOK_URL") or None,
            cors_origins=origins or cls.cors_origins,
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            log_json=_env_bool("LOG_JSON"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings, parsed once."""

    return Settings.from_env()
