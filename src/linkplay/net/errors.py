from __future__ import annotations


class SyncError(RuntimeError):
    pass


class ProtocolDesyncError(SyncError):
    """Replay reached the boundary without consuming every buffered event."""

    def __init__(self, *, boundary_cycle: int, unconsumed: tuple[int, ...]) -> None:
        self.boundary_cycle = int(boundary_cycle)
        # Leftover event count per peer slot.
        self.unconsumed = tuple(int(count) for count in unconsumed)
        super().__init__(f"desync at boundary {self.boundary_cycle}: unconsumed={list(self.unconsumed)}")


class RejectedInputError(SyncError):
    def __init__(self, cycle: int, reason: str) -> None:
        self.cycle = int(cycle)
        self.reason = str(reason)
        super().__init__(f"input at cycle {self.cycle} rejected: {self.reason}")


class LateHandshakeError(SyncError):
    pass


class EngineStateError(ValueError):
    pass


__all__ = [
    "EngineStateError",
    "LateHandshakeError",
    "ProtocolDesyncError",
    "RejectedInputError",
    "SyncError",
]
