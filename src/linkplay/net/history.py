from __future__ import annotations

from dataclasses import dataclass, field

import msgspec

from .debug_log import sync_debug_log
from .errors import RejectedInputError

# Slot 0 belongs to the peer whose state seeded the session; replay applies it first.
SEED_SLOT = 0
ADOPTER_SLOT = 1


def slot_for(initiator: bool) -> int:
    return ADOPTER_SLOT if initiator else SEED_SLOT


class InputEvent(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    cycle: int
    down: bool
    code: str


class InputHistory(msgspec.Struct, frozen=True, forbid_unknown_fields=True):
    boundary_cycle: int
    events: list[InputEvent] = msgspec.field(default_factory=list)


@dataclass(slots=True)
class InputHistoryBuffer:
    """Ordered per-peer log of cycle-stamped input events awaiting exchange."""

    slot_index: int = SEED_SLOT
    _events: list[InputEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self._events)

    @property
    def events(self) -> tuple[InputEvent, ...]:
        return tuple(self._events)

    @property
    def tail_cycle(self) -> int:
        if not self._events:
            return -1
        return int(self._events[-1].cycle)

    def _validate(self, cycle: int, *, boundary_cycle: int, current_cycle: int) -> None:
        if int(cycle) < 0:
            raise RejectedInputError(cycle, "negative_cycle")
        if int(current_cycle) >= int(boundary_cycle):
            raise RejectedInputError(cycle, "frozen")
        tail = self.tail_cycle
        # Cycles are externally monotonic, so a duplicate can only sit at the tail.
        if int(cycle) == tail:
            raise RejectedInputError(cycle, "duplicate_cycle")
        if int(cycle) < tail:
            raise RejectedInputError(cycle, "out_of_order")

    def record(self, cycle: int, down: bool, code: str, *, boundary_cycle: int, current_cycle: int) -> bool:
        try:
            self._validate(int(cycle), boundary_cycle=int(boundary_cycle), current_cycle=int(current_cycle))
        except RejectedInputError as exc:
            sync_debug_log(
                "input_rejected",
                slot=int(self.slot_index),
                cycle=int(exc.cycle),
                reason=exc.reason,
                code=str(code),
            )
            return False
        self._events.append(InputEvent(cycle=int(cycle), down=bool(down), code=str(code)))
        return True

    def drain(self, boundary_cycle: int) -> InputHistory:
        events = list(self._events)
        self._events.clear()
        return InputHistory(boundary_cycle=int(boundary_cycle), events=events)

    def clear(self) -> None:
        self._events.clear()


@dataclass(slots=True)
class HistoryCursor:
    """Walks one peer's history in cycle order during replay."""

    history: InputHistory
    _index: int = 0

    @property
    def remaining(self) -> int:
        return len(self.history.events) - int(self._index)

    def take_at(self, cycle: int) -> InputEvent | None:
        events = self.history.events
        if self._index >= len(events):
            return None
        event = events[self._index]
        if int(event.cycle) != int(cycle):
            return None
        self._index += 1
        return event


__all__ = [
    "HistoryCursor",
    "InputEvent",
    "InputHistory",
    "InputHistoryBuffer",
    "ADOPTER_SLOT",
    "SEED_SLOT",
    "slot_for",
]
