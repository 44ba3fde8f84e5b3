from __future__ import annotations

import datetime as dt
import os
from dataclasses import dataclass
from pathlib import Path
from threading import Lock


_TRACE_LOCK = Lock()
_TRACE_PATH: Path | None = None
_TRACE_SEQ = 0


def _format_value(value: object) -> str:
    text = str(value)
    return text.replace("\n", "\\n")


def _format_fields(fields: dict[str, object]) -> str:
    parts: list[str] = []
    for key in sorted(fields):
        parts.append(f"{key}={_format_value(fields[key])}")
    return " ".join(parts)


def sync_debug_log_path() -> Path | None:
    with _TRACE_LOCK:
        return _TRACE_PATH


def init_sync_debug_log(
    *,
    base_dir: Path,
    role: str,
    peer_id: str,
    build_id: str,
    sync_interval: int,
) -> Path:
    role_name = str(role).strip().lower() or "unknown"
    timestamp = dt.datetime.now(dt.timezone.utc).strftime("%Y%m%dT%H%M%S.%fZ")
    path = base_dir / "logs" / "sync" / f"sync-{role_name}-pid{os.getpid()}-{timestamp}.log"
    path.parent.mkdir(parents=True, exist_ok=True)

    with _TRACE_LOCK:
        global _TRACE_PATH, _TRACE_SEQ
        _TRACE_PATH = path
        _TRACE_SEQ = 0

    sync_debug_log(
        "init",
        role=role_name,
        peer_id=str(peer_id),
        build_id=str(build_id),
        sync_interval=int(sync_interval),
        pid=int(os.getpid()),
    )
    return path


def _write(event: str, scope: str, fields: dict[str, object]) -> None:
    with _TRACE_LOCK:
        path = _TRACE_PATH
    if path is None:
        return

    timestamp = dt.datetime.now(dt.timezone.utc).isoformat(timespec="milliseconds")
    payload = _format_fields(fields)

    with _TRACE_LOCK:
        global _TRACE_SEQ
        _TRACE_SEQ += 1
        # Both peers of an in-process link share one file; seq keeps their lines ordered.
        line = f"{timestamp} seq={_TRACE_SEQ} [{scope or '-'}] event={str(event).strip()}"
        if payload:
            line += f" {payload}"
        line += "\n"
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line)


def sync_debug_log(event: str, **fields: object) -> None:
    _write(event, "", fields)


def session_key(peer_a: str, peer_b: str) -> str:
    """Name a link the same way on both ends."""
    return "~".join(sorted((str(peer_a), str(peer_b))))


@dataclass(slots=True)
class SyncTraceScope:
    """Tags one controller's trace lines with its peer, session and replay slot."""

    peer_id: str = ""
    session_id: str = ""
    slot: int | None = None

    def bind(self, session_id: str, slot: int) -> None:
        self.session_id = str(session_id)
        self.slot = int(slot)

    def unbind(self) -> None:
        self.session_id = ""
        self.slot = None

    def prefix(self) -> str:
        parts = [self.peer_id or "-"]
        if self.session_id:
            parts.append(self.session_id)
        if self.slot is not None:
            parts.append(f"slot{self.slot}")
        return "/".join(parts)

    def log(self, event: str, **fields: object) -> None:
        _write(event, self.prefix(), fields)


def close_sync_debug_log() -> None:
    with _TRACE_LOCK:
        global _TRACE_PATH
        _TRACE_PATH = None


__all__ = [
    "SyncTraceScope",
    "close_sync_debug_log",
    "init_sync_debug_log",
    "session_key",
    "sync_debug_log",
    "sync_debug_log_path",
]
