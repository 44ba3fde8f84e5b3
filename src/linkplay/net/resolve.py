from __future__ import annotations

from collections.abc import Sequence

from ..engine import Engine
from .errors import ProtocolDesyncError
from .history import HistoryCursor, InputHistory
from .session import Checkpoint


def replay_window(
    checkpoint: Checkpoint,
    boundary_cycle: int,
    histories: Sequence[InputHistory],
) -> Engine:
    """Replay `histories` from `checkpoint` up to `boundary_cycle`.

    `histories` is ordered by peer slot; at a shared cycle the lower slot's
    event is applied first. The checkpoint snapshot is cloned, never consumed.
    Raises `ProtocolDesyncError` when any history still holds events after the
    boundary is reached.
    """
    engine = checkpoint.snapshot.clone()
    cursors = [HistoryCursor(history=history) for history in histories]
    for cycle in range(int(checkpoint.cycle), int(boundary_cycle)):
        for cursor in cursors:
            event = cursor.take_at(cycle)
            if event is not None:
                engine.apply_input(bool(event.down), str(event.code))
        engine.step()

    leftovers = tuple(cursor.remaining for cursor in cursors)
    if any(leftovers):
        raise ProtocolDesyncError(boundary_cycle=int(boundary_cycle), unconsumed=leftovers)
    return engine


__all__ = ["replay_window"]
