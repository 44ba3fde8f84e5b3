from __future__ import annotations

from dataclasses import dataclass

from linkplay.config import SyncConfig
from linkplay.demo_engine import DemoEngine
from linkplay.net.controller import SyncController
from linkplay.net.driver import MAX_QUEUED_AUDIO, TickDriver
from linkplay.net.session import SyncState
from linkplay.net.transport import LoopbackTransport


@dataclass(slots=True)
class _FakeSink:
    buffers: int = 0

    def queued(self) -> int:
        return int(self.buffers)


def _controller(name: str, transport: LoopbackTransport | None, *, sync_interval: int = 1_000) -> SyncController:
    controller = SyncController(
        engine_factory=DemoEngine.deserialize,
        transport=transport,
        peer_id=name,
        sync_interval=sync_interval,
    )
    controller.power_on(DemoEngine(cycles_per_frame=64))
    return controller


def test_standalone_driver_steps_until_frame_ready() -> None:
    controller = _controller("solo", None)
    driver = TickDriver(controller=controller)

    assert driver.run_frame() is True
    assert driver.run_frame() is True

    engine = controller.engine
    assert isinstance(engine, DemoEngine)
    assert engine.cycle == 128
    assert driver.frames == 2
    # Standalone engines carry no protocol cycle counter.
    assert controller.current_cycle == 0


def test_driver_skips_stepping_while_sink_is_saturated() -> None:
    controller = _controller("solo", None)
    sink = _FakeSink(buffers=15)
    driver = TickDriver(controller=controller, sink=sink, max_queued=15)
    engine = controller.engine
    assert engine is not None
    before = engine.serialize()

    assert driver.run_frame() is False
    assert engine.serialize() == before

    sink.buffers = 14
    assert driver.run_frame() is True


def test_driver_without_engine_does_nothing() -> None:
    controller = SyncController(engine_factory=DemoEngine.deserialize)
    driver = TickDriver(controller=controller)

    assert driver.run_frame() is False
    assert driver.frames == 0


def test_driver_waits_through_handshake_and_stops_at_boundary() -> None:
    transport_a, transport_b = LoopbackTransport.pair()
    a = _controller("a", transport_a, sync_interval=100)
    b = _controller("b", transport_b, sync_interval=100)
    driver_a = TickDriver(controller=a, transport=transport_a)
    driver_b = TickDriver(controller=b, transport=transport_b)

    a.link("b", initiator=True)
    assert driver_a.run_frame() is False
    assert a.state is SyncState.ESTABLISHING

    # `b` links, keeps its state and is synchronized before stepping.
    assert driver_b.run_frame() is True
    assert b.current_cycle == 64

    # `a` adopts `b`'s state, reaches the boundary and waits.
    assert driver_a.run_frame() is True
    assert driver_a.run_frame() is False
    assert a.state is SyncState.RESYNCING
    assert a.current_cycle == 100

    # `b` already holds `a`'s history when it reaches the boundary.
    assert driver_b.run_frame() is True
    assert b.state is SyncState.SYNCHRONIZED
    assert b.session is not None and b.session.last_sync_cycle == 100
    assert b.current_cycle == 128

    assert driver_a.run_frame() is True
    assert a.state is SyncState.SYNCHRONIZED
    assert a.current_cycle == 128
    assert a.engine is not None and b.engine is not None
    assert a.engine.serialize() == b.engine.serialize()


def test_driver_records_nothing_past_boundary_while_resyncing() -> None:
    transport_a, transport_b = LoopbackTransport.pair()
    a = _controller("a", transport_a, sync_interval=64)
    b = _controller("b", transport_b, sync_interval=64)
    driver_a = TickDriver(controller=a, transport=transport_a)
    driver_b = TickDriver(controller=b, transport=transport_b)
    a.link("b", initiator=True)
    driver_b.poll()
    driver_a.poll()

    assert driver_a.run_frame() is True
    assert a.current_cycle == 64
    for _ in range(3):
        assert driver_a.run_frame() is False
        assert a.record_input(True, "KeyW") is False
    assert a.current_cycle == 64
    assert driver_b.frames == 0


def test_driver_default_backpressure_limit() -> None:
    driver = TickDriver(controller=_controller("a", None))

    assert driver.max_queued == MAX_QUEUED_AUDIO == 15
    assert SyncConfig().max_queued_audio == MAX_QUEUED_AUDIO
