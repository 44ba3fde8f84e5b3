from __future__ import annotations

import hashlib
from dataclasses import dataclass

import msgspec

from .engine import Button, key_to_button
from .net.errors import EngineStateError

STATE_FORMAT_VERSION = 1
DEFAULT_CYCLES_PER_FRAME = 1_000

_LCG_MUL = 1103515245
_LCG_ADD = 12345


class _DemoState(msgspec.Struct, forbid_unknown_fields=True):
    version: int
    cycle: int
    frame: int
    cycles_per_frame: int
    joypad: int
    accum: int
    presses: int


_STATE_DECODER = msgspec.msgpack.Decoder(type=_DemoState)


@dataclass(slots=True)
class DemoEngine:
    """Tiny deterministic engine with a joypad and an LCG accumulator.

    The joypad byte is active-low: a held button clears its bit. Every step
    folds the joypad into the accumulator, so any difference in input timing
    shows up in `state_hash()`.
    """

    cycles_per_frame: int = DEFAULT_CYCLES_PER_FRAME
    cycle: int = 0
    frame: int = 0
    joypad: int = 0xFF
    accum: int = 0
    presses: int = 0

    def __post_init__(self) -> None:
        cycles_per_frame = int(self.cycles_per_frame)
        if cycles_per_frame <= 0:
            raise ValueError(f"cycles_per_frame must be positive, got {cycles_per_frame}")
        self.cycles_per_frame = cycles_per_frame

    def step(self) -> bool:
        self.accum = (self.accum * _LCG_MUL + _LCG_ADD + self.joypad) & 0xFFFF_FFFF
        self.cycle += 1
        if self.cycle % self.cycles_per_frame:
            return False
        self.frame += 1
        return True

    def apply_input(self, down: bool, code: str) -> bool:
        button = key_to_button(code)
        if button is None:
            return False
        mask = 1 << int(button)
        if down:
            if self.joypad & mask:
                self.presses += 1
            self.joypad &= ~mask & 0xFF
        else:
            self.joypad |= mask
        return True

    def is_pressed(self, button: Button) -> bool:
        return not (self.joypad >> int(button)) & 1

    def clone(self) -> DemoEngine:
        return DemoEngine(
            cycles_per_frame=self.cycles_per_frame,
            cycle=self.cycle,
            frame=self.frame,
            joypad=self.joypad,
            accum=self.accum,
            presses=self.presses,
        )

    def serialize(self) -> bytes:
        return msgspec.msgpack.encode(
            _DemoState(
                version=STATE_FORMAT_VERSION,
                cycle=self.cycle,
                frame=self.frame,
                cycles_per_frame=self.cycles_per_frame,
                joypad=self.joypad,
                accum=self.accum,
                presses=self.presses,
            )
        )

    @classmethod
    def deserialize(cls, blob: bytes) -> DemoEngine:
        try:
            state = _STATE_DECODER.decode(blob)
        except msgspec.DecodeError as exc:
            raise EngineStateError(f"malformed demo engine state: {exc}") from exc
        if int(state.version) != STATE_FORMAT_VERSION:
            raise EngineStateError(f"unsupported demo engine state version: {state.version}")
        return cls(
            cycles_per_frame=int(state.cycles_per_frame),
            cycle=int(state.cycle),
            frame=int(state.frame),
            joypad=int(state.joypad),
            accum=int(state.accum),
            presses=int(state.presses),
        )

    def state_hash(self) -> str:
        return hashlib.sha256(self.serialize()).hexdigest()


__all__ = ["DEFAULT_CYCLES_PER_FRAME", "DemoEngine", "STATE_FORMAT_VERSION"]
