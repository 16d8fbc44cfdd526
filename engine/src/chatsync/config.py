from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class SyncConfig:
    message_poll_interval_s: float = 1.0
    presence_poll_interval_s: float = 2.5
    heartbeat_interval_s: float = 30.0
    media_bucket: str = "message-files"
    store_url: str | None = None
    log_level: str = "INFO"


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_log_level(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    level = raw.upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"{name} must be a logging level name")
    return level


def load_sync_config_from_env() -> SyncConfig:
    return SyncConfig(
        message_poll_interval_s=_parse_positive_float("CHATSYNC_MESSAGE_POLL_INTERVAL_S", 1.0),
        presence_poll_interval_s=_parse_positive_float("CHATSYNC_PRESENCE_POLL_INTERVAL_S", 2.5),
        heartbeat_interval_s=_parse_positive_float("CHATSYNC_HEARTBEAT_INTERVAL_S", 30.0),
        media_bucket=os.environ.get("CHATSYNC_MEDIA_BUCKET") or "message-files",
        store_url=os.environ.get("CHATSYNC_STORE_URL") or None,
        log_level=_parse_log_level("CHATSYNC_LOG_LEVEL", "INFO"),
    )
