from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

MIN_TAIL_POLL_INTERVAL_SECONDS = 0.05


@dataclass
class AppConfig:
    sessions_root: str
    tail_poll_interval_seconds: float
    locator_poll_interval_seconds: float
    start_timeout_seconds: float
    notification_buffer_capacity: int
    include_jsonrpc_header: bool
    log_level: str
    log_consumers: list | None


def load_json_config(path: Path | None = None) -> dict:
    config_path = path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def resolve_sessions_root(override: str | None = None) -> str:
    """Sessions root: explicit override, then ``$CODEX_HOME/sessions``, then ``~/.codex/sessions``."""
    if override and override.strip():
        return str(Path(override).expanduser())
    codex_home = os.environ.get("CODEX_HOME", "").strip()
    if codex_home:
        return str(Path(codex_home).expanduser() / "sessions")
    return str(Path.home() / ".codex" / "sessions")


def parse_app_config(config: dict) -> AppConfig:
    app = AppConfig(
        sessions_root=resolve_sessions_root(config.get("SessionsRoot")),
        tail_poll_interval_seconds=float(config.get("TailPollIntervalSeconds", 0.2)),
        locator_poll_interval_seconds=float(config.get("LocatorPollIntervalSeconds", 0.1)),
        start_timeout_seconds=float(config.get("StartTimeoutSeconds", 30)),
        notification_buffer_capacity=int(config.get("NotificationBufferCapacity", 256)),
        include_jsonrpc_header=_to_bool(config.get("IncludeJsonRpcHeader", False), default=False),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )
    validate_app_config(app)
    return app


def validate_app_config(app: AppConfig) -> None:
    if app.tail_poll_interval_seconds < MIN_TAIL_POLL_INTERVAL_SECONDS:
        raise ValueError(
            f"TailPollIntervalSeconds must be at least {MIN_TAIL_POLL_INTERVAL_SECONDS}s "
            f"(got {app.tail_poll_interval_seconds})"
        )
    if app.locator_poll_interval_seconds <= 0:
        raise ValueError("LocatorPollIntervalSeconds must be positive")
    if app.start_timeout_seconds <= 0:
        raise ValueError("StartTimeoutSeconds must be positive")
    if app.notification_buffer_capacity < 1:
        raise ValueError("NotificationBufferCapacity must be at least 1")


def load_app_config(path: Path | None = None) -> AppConfig:
    load_dotenv()
    return parse_app_config(load_json_config(path))
