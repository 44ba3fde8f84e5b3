from __future__ import annotations

from .controller import SyncController
from .driver import MAX_QUEUED_AUDIO, AudioSink, TickDriver
from .errors import (
    EngineStateError,
    LateHandshakeError,
    ProtocolDesyncError,
    RejectedInputError,
    SyncError,
)
from .history import InputEvent, InputHistory, InputHistoryBuffer
from .protocol import (
    DEFAULT_PORT,
    PROTOCOL_VERSION,
    SYNC_INTERVAL,
    Init,
    InputHistoryMsg,
    Join,
    Leave,
    NetMessage,
)
from .resolve import replay_window
from .session import Checkpoint, SyncSession, SyncState
from .transport import LoopbackTransport, PeerAddr, TcpTransport, Transport

__all__ = [
    "AudioSink",
    "Checkpoint",
    "DEFAULT_PORT",
    "EngineStateError",
    "Init",
    "InputEvent",
    "InputHistory",
    "InputHistoryBuffer",
    "InputHistoryMsg",
    "Join",
    "LateHandshakeError",
    "Leave",
    "LoopbackTransport",
    "MAX_QUEUED_AUDIO",
    "NetMessage",
    "PROTOCOL_VERSION",
    "PeerAddr",
    "ProtocolDesyncError",
    "RejectedInputError",
    "SYNC_INTERVAL",
    "SyncController",
    "SyncError",
    "SyncSession",
    "SyncState",
    "TcpTransport",
    "TickDriver",
    "Transport",
    "replay_window",
]
