from __future__ import annotations

from enum import IntEnum
from typing import Callable, Protocol, TypeAlias


class Engine(Protocol):
    """Capability surface of a deterministic, cycle-stepped engine.

    `clone()` must share no mutable state with the original, and
    `serialize()` output must restore bit-exactly through the matching
    factory.
    """

    def step(self) -> bool: ...

    def apply_input(self, down: bool, code: str) -> bool: ...

    def clone(self) -> Engine: ...

    def serialize(self) -> bytes: ...


EngineFactory: TypeAlias = Callable[[bytes], Engine]


class Button(IntEnum):
    DOWN = 0
    UP = 1
    LEFT = 2
    RIGHT = 3
    START = 4
    SELECT = 5
    B = 6
    A = 7


KEY_BINDINGS: dict[str, Button] = {
    "KeyW": Button.UP,
    "KeyS": Button.DOWN,
    "KeyA": Button.LEFT,
    "KeyD": Button.RIGHT,
    "Digit4": Button.START,
    "Digit3": Button.SELECT,
    "Digit2": Button.B,
    "Digit1": Button.A,
}


def key_to_button(code: str) -> Button | None:
    return KEY_BINDINGS.get(str(code))


__all__ = ["Button", "Engine", "EngineFactory", "KEY_BINDINGS", "key_to_button"]
