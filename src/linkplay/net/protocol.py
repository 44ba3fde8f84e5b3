from __future__ import annotations

from typing import TypeAlias

import msgspec

from .. import __version__
from .history import InputEvent, InputHistory

PROTOCOL_VERSION = 1
DEFAULT_PORT = 31994
SYNC_INTERVAL = 100_000


def current_build_id() -> str:
    return str(__version__)


class Join(msgspec.Struct, tag_field="kind", tag="join", forbid_unknown_fields=True):
    peer_id: str = ""
    initiator: bool = False
    protocol_version: int = PROTOCOL_VERSION
    build_id: str = ""


class Leave(msgspec.Struct, tag_field="kind", tag="leave", forbid_unknown_fields=True):
    reason: str = ""


class Init(msgspec.Struct, tag_field="kind", tag="init", forbid_unknown_fields=True):
    # Opaque engine blob; the engine owns its format and versioning.
    state_blob: bytes = b""
    sync_interval: int = SYNC_INTERVAL


class InputHistoryMsg(msgspec.Struct, tag_field="kind", tag="input_history", forbid_unknown_fields=True):
    boundary_cycle: int = 0
    events: list[InputEvent] = msgspec.field(default_factory=list)

    @classmethod
    def from_history(cls, history: InputHistory) -> InputHistoryMsg:
        return cls(boundary_cycle=int(history.boundary_cycle), events=list(history.events))

    def to_history(self) -> InputHistory:
        return InputHistory(boundary_cycle=int(self.boundary_cycle), events=list(self.events))


NetMessage: TypeAlias = Join | Leave | Init | InputHistoryMsg


_MESSAGE_DECODER = msgspec.msgpack.Decoder(type=NetMessage)


def encode_message(message: NetMessage) -> bytes:
    return msgspec.msgpack.encode(message)


def decode_message(blob: bytes) -> NetMessage:
    return _MESSAGE_DECODER.decode(blob)


def message_kind(message: NetMessage) -> str:
    return str(type(message).__struct_config__.tag or type(message).__name__)


__all__ = [
    "DEFAULT_PORT",
    "Init",
    "InputHistoryMsg",
    "Join",
    "Leave",
    "NetMessage",
    "PROTOCOL_VERSION",
    "SYNC_INTERVAL",
    "current_build_id",
    "decode_message",
    "encode_message",
    "message_kind",
]
