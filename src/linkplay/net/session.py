from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from ..engine import Engine
from .history import InputHistory, InputHistoryBuffer, slot_for
from .protocol import SYNC_INTERVAL


class SyncState(str, Enum):
    UNSYNCED = "unsynced"
    ESTABLISHING = "establishing"
    SYNCHRONIZED = "synchronized"
    RESYNCING = "resyncing"


@dataclass(frozen=True, slots=True)
class Checkpoint:
    cycle: int
    snapshot: Engine


@dataclass(slots=True)
class SyncSession:
    """Bookkeeping for one linked peer; discarded wholesale on disconnect."""

    peer_id: str
    initiator: bool
    sync_interval: int = SYNC_INTERVAL
    state: SyncState = SyncState.ESTABLISHING
    last_sync_cycle: int = 0
    current_cycle: int = 0
    checkpoint: Checkpoint | None = None
    local: InputHistoryBuffer = field(default_factory=InputHistoryBuffer)
    # Remote histories may arrive before the local side reaches their boundary.
    remote_histories: dict[int, InputHistory] = field(default_factory=dict)
    pending_local: InputHistory | None = None
    resync_started_ms: int = 0

    def __post_init__(self) -> None:
        interval = int(self.sync_interval)
        if interval <= 0:
            raise ValueError(f"sync_interval must be positive, got {interval}")
        self.sync_interval = interval
        self.local.slot_index = self.local_slot

    @property
    def local_slot(self) -> int:
        return slot_for(bool(self.initiator))

    @property
    def boundary_cycle(self) -> int:
        return int(self.last_sync_cycle) + int(self.sync_interval)

    @property
    def at_boundary(self) -> bool:
        return int(self.current_cycle) >= int(self.boundary_cycle)

    def record_local(self, down: bool, code: str) -> bool:
        if self.state is not SyncState.SYNCHRONIZED:
            return False
        return self.local.record(
            int(self.current_cycle),
            bool(down),
            str(code),
            boundary_cycle=int(self.boundary_cycle),
            current_cycle=int(self.current_cycle),
        )

    def start(self, snapshot: Engine) -> None:
        self.checkpoint = Checkpoint(cycle=0, snapshot=snapshot)
        # The initiator flag may have flipped during a simultaneous link.
        self.local.slot_index = self.local_slot
        self.last_sync_cycle = 0
        self.current_cycle = 0
        self.local.clear()
        self.remote_histories.clear()
        self.pending_local = None
        self.state = SyncState.SYNCHRONIZED

    def advance_checkpoint(self, boundary_cycle: int, snapshot: Engine) -> None:
        self.checkpoint = Checkpoint(cycle=int(boundary_cycle), snapshot=snapshot)
        self.last_sync_cycle = int(boundary_cycle)
        self.current_cycle = int(boundary_cycle)
        self.local.clear()
        self.remote_histories.pop(int(boundary_cycle), None)
        self.pending_local = None
        self.state = SyncState.SYNCHRONIZED


__all__ = ["Checkpoint", "SyncSession", "SyncState"]
