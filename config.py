"""Lightweight configuration helpers for the WhatsApp session worker."""
from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_SESSIONS_DIR = "/app/.wwebjs_auth"
DEFAULT_DRIVER_CMD = "node /app/bridge/index.js"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    return value if value >= 0 else default


def _optional_str(raw: str | None) -> Optional[str]:
    cleaned = (raw or "").strip()
    return cleaned or None


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_SESSIONS_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    sessions_dir: Path
    driver_cmd: tuple[str, ...]
    start_timeout: float
    settle_delay: float
    restart_settle_delay: float
    nuke_attempts: int
    nuke_backoff: float
    verify_timeout: float
    inactive_ttl: float
    database_url: Optional[str]
    notify_webhook: Optional[str]
    webhook_token: Optional[str]
    admin_token: Optional[str]
    port: int


def worker_config() -> WorkerConfig:
    driver_cmd = tuple(shlex.split(os.getenv("WA_DRIVER_CMD") or DEFAULT_DRIVER_CMD))
    return WorkerConfig(
        sessions_dir=_resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR")),
        driver_cmd=driver_cmd,
        start_timeout=_parse_duration(os.getenv("WA_START_TIMEOUT"), default=60.0),
        settle_delay=_parse_duration(os.getenv("WA_SETTLE_DELAY"), default=1.0),
        restart_settle_delay=_parse_duration(
            os.getenv("WA_RESTART_SETTLE_DELAY"), default=3.0
        ),
        nuke_attempts=max(1, _coerce_int(os.getenv("WA_NUKE_ATTEMPTS"), 3)),
        nuke_backoff=_parse_duration(os.getenv("WA_NUKE_BACKOFF"), default=1.0),
        verify_timeout=_parse_duration(os.getenv("WA_VERIFY_TIMEOUT"), default=5.0),
        inactive_ttl=_parse_duration(os.getenv("WA_INACTIVE_TTL"), default=86400.0),
        database_url=_optional_str(os.getenv("DATABASE_URL")),
        notify_webhook=_optional_str(os.getenv("WA_NOTIFY_WEBHOOK")),
        webhook_token=_optional_str(os.getenv("WEBHOOK_SECRET")),
        admin_token=_optional_str(os.getenv("ADMIN_TOKEN")),
        port=_coerce_int(os.getenv("WAWORKER_PORT"), 9001),
    )


__all__ = ["WorkerConfig", "worker_config"]
