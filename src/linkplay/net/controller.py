from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from ..engine import Engine, EngineFactory
from .debug_log import SyncTraceScope, session_key
from .errors import EngineStateError, LateHandshakeError, ProtocolDesyncError
from .history import SEED_SLOT, InputHistory
from .protocol import (
    PROTOCOL_VERSION,
    SYNC_INTERVAL,
    Init,
    InputHistoryMsg,
    Join,
    Leave,
    NetMessage,
    current_build_id,
    message_kind,
)
from .resolve import replay_window
from .session import SyncSession, SyncState
from .transport import Transport


@dataclass(slots=True)
class SyncController:
    """Own the live engine and the checkpoint/replay session for one peer.

    Transport callbacks only `post()` messages; everything else happens on the
    caller's timeline through `pump()`, `before_step()` and `step()`.
    """

    engine_factory: EngineFactory
    transport: Transport | None = None
    peer_id: str = ""
    sync_interval: int = SYNC_INTERVAL
    build_id: str = field(default_factory=current_build_id)
    resync_timeout_ms: int | None = None
    engine: Engine | None = field(init=False, default=None)
    session: SyncSession | None = field(init=False, default=None)
    last_error: str = field(init=False, default="")
    _inbox: deque[NetMessage] = field(init=False, default_factory=deque)
    _trace: SyncTraceScope = field(init=False, default_factory=SyncTraceScope)

    def __post_init__(self) -> None:
        self._trace.peer_id = str(self.peer_id)

    @property
    def state(self) -> SyncState:
        session = self.session
        if session is None:
            return SyncState.UNSYNCED
        return session.state

    @property
    def synchronizing(self) -> bool:
        return self.state in (SyncState.ESTABLISHING, SyncState.RESYNCING)

    @property
    def current_cycle(self) -> int:
        session = self.session
        if session is None:
            return 0
        return int(session.current_cycle)

    # Engine lifecycle.

    def power_on(self, engine: Engine) -> bool:
        if self.engine is not None:
            return False
        self.engine = engine
        self._trace.log("power_on")
        return True

    def power_off(self) -> None:
        if self.session is not None:
            self._end_session("power_off", notify=True)
        self._inbox.clear()
        self.engine = None
        self._trace.log("power_off")

    # Session lifecycle.

    def link(self, peer_id: str, *, initiator: bool) -> bool:
        """Start the handshake with `peer_id`; the initiator adopts the peer's state."""
        engine = self.engine
        if engine is None or self.session is not None:
            return False
        session = SyncSession(
            peer_id=str(peer_id),
            initiator=bool(initiator),
            sync_interval=int(self.sync_interval),
        )
        self.session = session
        self.last_error = ""
        self._trace.bind(session_key(self.peer_id, session.peer_id), session.local_slot)
        self._trace.log("link", remote=str(peer_id), initiator=bool(initiator))
        self._send(
            Join(
                peer_id=self.peer_id,
                initiator=bool(initiator),
                protocol_version=PROTOCOL_VERSION,
                build_id=self.build_id,
            )
        )
        self._send(Init(state_blob=engine.serialize(), sync_interval=int(self.sync_interval)))
        return True

    def disconnect(self, reason: str = "leave") -> None:
        if self.session is None:
            return
        self._end_session(str(reason), notify=True)

    def _end_session(self, reason: str, *, notify: bool) -> None:
        session = self.session
        self.session = None
        if session is None:
            return
        self._trace.log(
            "session_end",
            reason=reason,
            remote=session.peer_id,
            state=session.state.value,
            cycle=int(session.current_cycle),
        )
        if notify:
            self._send(Leave(reason=reason))
        self._trace.unbind()

    def _send(self, message: NetMessage) -> None:
        transport = self.transport
        if transport is None:
            return
        try:
            transport.send(message)
        except OSError as exc:
            self._trace.log("send_failed", kind=message_kind(message), error=str(exc))
            return
        self._trace.log("send", kind=message_kind(message))

    # Inbox.

    def post(self, message: NetMessage) -> None:
        self._inbox.append(message)

    def pump(self) -> None:
        while self._inbox:
            message = self._inbox.popleft()
            self._trace.log("recv", kind=message_kind(message), state=self.state.value)
            try:
                self._handle(message)
            except LateHandshakeError as exc:
                self._trace.log("late_handshake_ignored", error=str(exc))

    def _handle(self, message: NetMessage) -> None:
        if isinstance(message, Join):
            self._handle_join(message)
            return
        if isinstance(message, Init):
            self._handle_init(message)
            return
        if isinstance(message, InputHistoryMsg):
            self._handle_history(message)
            return
        if isinstance(message, Leave):
            self._handle_leave(message)
            return

    def _handle_join(self, join: Join) -> None:
        if int(join.protocol_version) != PROTOCOL_VERSION:
            self._refuse("protocol_mismatch")
            return
        if str(join.build_id) != str(self.build_id):
            self._trace.log("join_rejected", remote_build=str(join.build_id), build=str(self.build_id))
            self._refuse("build_mismatch")
            return
        session = self.session
        if session is not None:
            if session.state is SyncState.ESTABLISHING and session.initiator and bool(join.initiator):
                self._break_initiator_tie(session, str(join.peer_id))
            return
        if self.engine is None:
            self._send(Leave(reason="no_engine"))
            return
        self.link(str(join.peer_id), initiator=False)

    def _handle_leave(self, leave: Leave) -> None:
        if self.session is None:
            return
        reason = str(leave.reason or "leave")
        # Keep a local error if one was already recorded.
        self.last_error = self.last_error or reason
        self._end_session(reason, notify=False)

    def _break_initiator_tie(self, session: SyncSession, remote_id: str) -> None:
        # Both sides asked to link at once: the lower peer id keeps its state.
        if self.peer_id == remote_id:
            self._refuse("peer_id_conflict")
            return
        if self.peer_id < remote_id:
            session.initiator = False
        self._trace.log("initiator_tie", remote=remote_id, initiator=bool(session.initiator))

    def _refuse(self, reason: str) -> None:
        self.last_error = reason
        if self.session is not None:
            self._end_session(reason, notify=True)
        else:
            self._send(Leave(reason=reason))

    def _handle_init(self, init: Init) -> None:
        session = self.session
        engine = self.engine
        if session is None or engine is None:
            self._trace.log("init_without_session")
            return
        if session.state is not SyncState.ESTABLISHING:
            raise LateHandshakeError(f"init received while {session.state.value}")
        if int(init.sync_interval) != int(session.sync_interval):
            self._refuse("sync_interval_mismatch")
            return
        if session.initiator:
            try:
                engine = self.engine_factory(bytes(init.state_blob))
            except EngineStateError as exc:
                self._refuse("bad_state")
                self._trace.log("init_rejected", error=str(exc))
                return
            self.engine = engine
        session.start(engine.clone())
        self._trace.bind(session_key(self.peer_id, session.peer_id), session.local_slot)
        self._trace.log(
            "synchronized",
            remote=session.peer_id,
            adopted=bool(session.initiator),
            sync_interval=int(session.sync_interval),
        )

    def _handle_history(self, message: InputHistoryMsg) -> None:
        session = self.session
        if session is None or session.state is SyncState.ESTABLISHING:
            self._trace.log("history_dropped", boundary=int(message.boundary_cycle), reason="no_session")
            return
        boundary = int(message.boundary_cycle)
        if boundary < session.boundary_cycle or boundary in session.remote_histories:
            self._trace.log("history_dropped", boundary=boundary, reason="stale")
            return
        session.remote_histories[boundary] = message.to_history()
        self._trace.log("history_buffered", boundary=boundary, events=len(message.events))
        if session.state is SyncState.RESYNCING and boundary == session.boundary_cycle:
            self._resolve()

    # Stepping.

    def record_input(self, down: bool, code: str) -> bool:
        engine = self.engine
        if engine is None:
            return False
        session = self.session
        if session is None:
            return bool(engine.apply_input(bool(down), str(code)))
        if not session.record_local(bool(down), str(code)):
            return False
        # Applied live right away; the replay at the boundary reapplies it in order.
        engine.apply_input(bool(down), str(code))
        return True

    def before_step(self, *, now_ms: int = 0) -> bool:
        """Return whether the live engine may step now, running boundary work first."""
        if self.engine is None:
            return False
        session = self.session
        if session is None:
            return True
        if session.state is SyncState.ESTABLISHING:
            return False
        if session.state is SyncState.RESYNCING:
            self._check_resync_timeout(session, now_ms=int(now_ms))
            return self.session is None
        if not session.at_boundary:
            return True

        boundary = session.boundary_cycle
        drained = session.local.drain(boundary)
        session.pending_local = drained
        self._send(InputHistoryMsg.from_history(drained))
        if boundary in session.remote_histories:
            self._resolve()
            return True
        session.state = SyncState.RESYNCING
        session.resync_started_ms = int(now_ms)
        self._trace.log("resyncing", boundary=int(boundary), local_events=len(drained.events))
        return False

    def _check_resync_timeout(self, session: SyncSession, *, now_ms: int) -> None:
        timeout = self.resync_timeout_ms
        if timeout is None:
            return
        if int(now_ms) - int(session.resync_started_ms) < int(timeout):
            return
        self.last_error = "resync_timeout"
        self._end_session("resync_timeout", notify=True)

    def step(self) -> bool:
        engine = self.engine
        if engine is None:
            raise RuntimeError("no engine is powered on")
        session = self.session
        if session is None:
            return bool(engine.step())
        if session.state is not SyncState.SYNCHRONIZED or session.at_boundary:
            raise RuntimeError(f"cannot step while {session.state.value} at cycle {session.current_cycle}")
        frame_ready = bool(engine.step())
        session.current_cycle += 1
        return frame_ready

    # Resolution.

    def _slot_histories(self, session: SyncSession) -> tuple[InputHistory, InputHistory]:
        boundary = session.boundary_cycle
        local = session.pending_local or InputHistory(boundary_cycle=boundary)
        remote = session.remote_histories.get(boundary) or InputHistory(boundary_cycle=boundary)
        if session.local_slot == SEED_SLOT:
            return local, remote
        return remote, local

    def _resolve(self) -> None:
        session = self.session
        if session is None or session.checkpoint is None:
            return
        boundary = session.boundary_cycle
        try:
            replayed = replay_window(session.checkpoint, boundary, self._slot_histories(session))
        except ProtocolDesyncError as exc:
            self.last_error = str(exc)
            self._trace.log("desync", boundary=int(boundary), unconsumed=list(exc.unconsumed))
            self._end_session("desync", notify=True)
            raise
        self.engine = replayed
        session.advance_checkpoint(boundary, replayed.clone())
        self._trace.log("resolved", boundary=int(boundary))


__all__ = ["SyncController"]
