from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .controller import SyncController
from .transport import Transport

# Audio buffers the sink may hold before the driver stops stepping.
MAX_QUEUED_AUDIO = 15
MAX_STEPS_PER_FRAME = 1 << 22


def _now_ms() -> int:
    return int(time.monotonic() * 1000.0)


class AudioSink(Protocol):
    def queued(self) -> int: ...


@dataclass(slots=True)
class TickDriver:
    """Step the controller's engine one frame at a time on a single timeline.

    Each `run_frame()` first moves every delivered message into the controller
    inbox and consumes it, then steps until the engine reports a frame or the
    controller blocks at a boundary.
    """

    controller: SyncController
    transport: Transport | None = None
    sink: AudioSink | None = None
    max_queued: int = MAX_QUEUED_AUDIO
    max_steps_per_frame: int = MAX_STEPS_PER_FRAME
    clock_ms: Callable[[], int] = field(default=_now_ms)
    frames: int = field(init=False, default=0)

    def poll(self) -> None:
        transport = self.transport
        if transport is not None:
            for message in transport.recv_messages():
                self.controller.post(message)
        self.controller.pump()

    def sink_saturated(self) -> bool:
        sink = self.sink
        if sink is None:
            return False
        return int(sink.queued()) >= int(self.max_queued)

    def run_frame(self) -> bool:
        self.poll()
        controller = self.controller
        if controller.engine is None or self.sink_saturated():
            return False
        now_ms = int(self.clock_ms())
        for _ in range(int(self.max_steps_per_frame)):
            if not controller.before_step(now_ms=now_ms):
                return False
            if controller.step():
                self.frames += 1
                return True
        return False


__all__ = ["AudioSink", "MAX_QUEUED_AUDIO", "MAX_STEPS_PER_FRAME", "TickDriver"]
