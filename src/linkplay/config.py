from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from platformdirs import PlatformDirs

from .net.driver import MAX_QUEUED_AUDIO
from .net.protocol import DEFAULT_PORT, SYNC_INTERVAL

APP_NAME = "linkplay"
RUNTIME_DIR_ENV = "LINKPLAY_RUNTIME_DIR"
SYNC_INTERVAL_ENV = "LINKPLAY_SYNC_INTERVAL"


def _dirs() -> PlatformDirs:
    return PlatformDirs(appname=APP_NAME, appauthor=False)


def default_runtime_dir() -> Path:
    raw = os.environ.get(RUNTIME_DIR_ENV)
    if raw:
        return Path(raw).expanduser()
    return Path(_dirs().user_data_path)


def resolve_sync_interval(default_interval: int = SYNC_INTERVAL) -> int:
    interval = max(1, int(default_interval))
    raw = os.environ.get(SYNC_INTERVAL_ENV)
    if raw is None:
        return interval
    try:
        return max(1, int(raw))
    except ValueError:
        return interval


def _new_peer_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(slots=True)
class SyncConfig:
    bind_host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    peer_id: str = field(default_factory=_new_peer_id)
    sync_interval: int = field(default_factory=resolve_sync_interval)
    max_queued_audio: int = MAX_QUEUED_AUDIO
    resync_timeout_ms: int | None = None
    base_dir: Path = field(default_factory=default_runtime_dir)
    debug_log: bool = False

    def __post_init__(self) -> None:
        interval = int(self.sync_interval)
        if interval <= 0:
            raise ValueError(f"sync_interval must be positive, got {interval}")
        self.sync_interval = interval
        port = int(self.port)
        if port < 0 or port > 65535:
            raise ValueError(f"port out of range: {port}")
        self.port = port
        if self.resync_timeout_ms is not None and int(self.resync_timeout_ms) <= 0:
            self.resync_timeout_ms = None


__all__ = [
    "APP_NAME",
    "RUNTIME_DIR_ENV",
    "SYNC_INTERVAL_ENV",
    "SyncConfig",
    "default_runtime_dir",
    "resolve_sync_interval",
]
