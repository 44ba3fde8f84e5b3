from __future__ import annotations

import hashlib
import random
import time
from pathlib import Path

import typer

from .config import SyncConfig, default_runtime_dir
from .demo_engine import DEFAULT_CYCLES_PER_FRAME, DemoEngine
from .engine import KEY_BINDINGS
from .net.controller import SyncController
from .net.debug_log import close_sync_debug_log, init_sync_debug_log
from .net.driver import TickDriver
from .net.errors import ProtocolDesyncError
from .net.protocol import DEFAULT_PORT, current_build_id
from .net.session import SyncState
from .net.transport import LoopbackTransport, TcpTransport

app = typer.Typer(add_completion=False)

_KEY_CODES = tuple(sorted(KEY_BINDINGS))
_IDLE_SLEEP_S = 0.001


def _snapshot_hash(controller: SyncController) -> str:
    session = controller.session
    if session is None or session.checkpoint is None:
        return ""
    return hashlib.sha256(session.checkpoint.snapshot.serialize()).hexdigest()


def _live_hash(controller: SyncController) -> str:
    engine = controller.engine
    if engine is None:
        return ""
    return hashlib.sha256(engine.serialize()).hexdigest()


def _random_input(rng: random.Random, controller: SyncController, *, press_chance: float) -> None:
    if rng.random() >= float(press_chance):
        return
    code = rng.choice(_KEY_CODES)
    controller.record_input(rng.random() < 0.5, code)


def _last_sync_cycle(controller: SyncController) -> int:
    session = controller.session
    if session is None:
        return -1
    return int(session.last_sync_cycle)


def _start_debug_log(cfg: SyncConfig, *, role: str) -> None:
    if not cfg.debug_log:
        return
    path = init_sync_debug_log(
        base_dir=cfg.base_dir,
        role=role,
        peer_id=cfg.peer_id,
        build_id=current_build_id(),
        sync_interval=int(cfg.sync_interval),
    )
    typer.echo(f"debug log: {path}")


@app.command("simulate")
def cmd_simulate(
    rounds: int = typer.Option(5, "--rounds", min=1, help="synchronization rounds to run"),
    sync_interval: int = typer.Option(10_000, "--sync-interval", min=1, help="cycles between exchanges"),
    cycles_per_frame: int = typer.Option(DEFAULT_CYCLES_PER_FRAME, "--cycles-per-frame", min=1),
    seed: int = typer.Option(0, "--seed", help="rng seed for scripted inputs"),
    press_chance: float = typer.Option(0.2, "--press-chance", min=0.0, max=1.0, help="input chance per frame"),
    debug_log: bool = typer.Option(False, "--debug-log", help="write a sync trace under base-dir/logs/sync"),
    base_dir: Path = typer.Option(
        default_runtime_dir(),
        "--base-dir",
        help="base path for runtime files (default: per-user OS data dir; override with LINKPLAY_RUNTIME_DIR)",
    ),
) -> None:
    """Run two linked peers in-process and compare their agreed checkpoints."""
    cfg = SyncConfig(sync_interval=int(sync_interval), base_dir=base_dir, debug_log=bool(debug_log))
    _start_debug_log(cfg, role="simulate")

    transport_a, transport_b = LoopbackTransport.pair()
    peers = []
    for name, transport, warmup in (("a", transport_a, 0), ("b", transport_b, 7)):
        controller = SyncController(
            engine_factory=DemoEngine.deserialize,
            transport=transport,
            peer_id=name,
            sync_interval=int(cfg.sync_interval),
        )
        engine = DemoEngine(cycles_per_frame=int(cycles_per_frame))
        for _ in range(warmup):
            engine.step()
        controller.power_on(engine)
        peers.append((controller, TickDriver(controller=controller, transport=transport)))

    (ctrl_a, _), (ctrl_b, _) = peers
    ctrl_a.link("b", initiator=True)
    rng = random.Random(int(seed))
    target = int(rounds) * int(cfg.sync_interval)

    established = False
    try:
        while True:
            synced_a = _last_sync_cycle(ctrl_a)
            synced_b = _last_sync_cycle(ctrl_b)
            if synced_a >= target and synced_a == synced_b:
                break
            states = (ctrl_a.state, ctrl_b.state)
            if SyncState.UNSYNCED in states and (established or ctrl_a.last_error or ctrl_b.last_error):
                typer.echo(f"session dropped: {ctrl_a.last_error or ctrl_b.last_error or 'leave'}", err=True)
                raise typer.Exit(code=1)
            if all(state in (SyncState.SYNCHRONIZED, SyncState.RESYNCING) for state in states):
                established = True
            for controller, driver in peers:
                if max(synced_a, synced_b) < target:
                    _random_input(rng, controller, press_chance=float(press_chance))
                driver.run_frame()
    except ProtocolDesyncError as exc:
        typer.echo(f"desync: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        close_sync_debug_log()

    hash_a = _snapshot_hash(ctrl_a)
    hash_b = _snapshot_hash(ctrl_b)
    typer.echo(f"checkpoint cycle={_last_sync_cycle(ctrl_a)}")
    typer.echo(f"a {hash_a}")
    typer.echo(f"b {hash_b}")
    if hash_a != hash_b:
        typer.echo("MISMATCH", err=True)
        raise typer.Exit(code=1)
    typer.echo("match")


def _run_linked(controller: SyncController, driver: TickDriver, *, frames: int, seed: int, press_chance: float) -> None:
    rng = random.Random(int(seed))
    while controller.state in (SyncState.UNSYNCED, SyncState.ESTABLISHING):
        if controller.last_error:
            typer.echo(f"link refused: {controller.last_error}", err=True)
            return
        driver.poll()
        time.sleep(_IDLE_SLEEP_S)

    done = 0
    while done < int(frames):
        if controller.state is SyncState.UNSYNCED:
            typer.echo(f"session ended: {controller.last_error or 'peer left'}", err=True)
            break
        if controller.state is SyncState.SYNCHRONIZED:
            _random_input(rng, controller, press_chance=float(press_chance))
        if driver.run_frame():
            done += 1
            continue
        time.sleep(_IDLE_SLEEP_S)
    typer.echo(f"state={controller.state.value} cycle={controller.current_cycle}")
    typer.echo(f"checkpoint {_snapshot_hash(controller)}")
    typer.echo(f"live {_live_hash(controller)}")


@app.command("host")
def cmd_host(
    bind: str = typer.Option("0.0.0.0", "--bind", help="bind address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", min=1, max=65535, help="TCP port"),
    frames: int = typer.Option(600, "--frames", min=1, help="frames to run after linking"),
    seed: int = typer.Option(1, "--seed"),
    press_chance: float = typer.Option(0.1, "--press-chance", min=0.0, max=1.0),
    resync_timeout_ms: int = typer.Option(0, "--resync-timeout-ms", min=0, help="drop the link after waiting this long (0: never)"),
    debug_log: bool = typer.Option(False, "--debug-log"),
    base_dir: Path = typer.Option(default_runtime_dir(), "--base-dir"),
) -> None:
    """Wait for one peer over TCP and run the demo engine linked to it."""
    cfg = SyncConfig(
        bind_host=str(bind),
        port=int(port),
        base_dir=base_dir,
        debug_log=bool(debug_log),
        resync_timeout_ms=int(resync_timeout_ms),
    )
    _start_debug_log(cfg, role="host")
    transport = TcpTransport()
    controller = SyncController(
        engine_factory=DemoEngine.deserialize,
        transport=transport,
        peer_id=cfg.peer_id,
        sync_interval=int(cfg.sync_interval),
        resync_timeout_ms=cfg.resync_timeout_ms,
    )
    controller.power_on(DemoEngine())
    driver = TickDriver(controller=controller, transport=transport, max_queued=int(cfg.max_queued_audio))
    try:
        transport.listen(cfg.bind_host, cfg.port)
        typer.echo(f"listening on {cfg.bind_host}:{transport.bound_port} as {cfg.peer_id}")
        while transport.accept() is None:
            time.sleep(0.05)
        _run_linked(controller, driver, frames=int(frames), seed=int(seed), press_chance=float(press_chance))
    except ProtocolDesyncError as exc:
        typer.echo(f"desync: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        controller.disconnect()
        transport.close()
        close_sync_debug_log()


@app.command("join")
def cmd_join(
    host: str = typer.Option(..., "--host", help="host address"),
    port: int = typer.Option(DEFAULT_PORT, "--port", min=1, max=65535, help="TCP port"),
    frames: int = typer.Option(600, "--frames", min=1, help="frames to run after linking"),
    seed: int = typer.Option(2, "--seed"),
    press_chance: float = typer.Option(0.1, "--press-chance", min=0.0, max=1.0),
    resync_timeout_ms: int = typer.Option(0, "--resync-timeout-ms", min=0, help="drop the link after waiting this long (0: never)"),
    debug_log: bool = typer.Option(False, "--debug-log"),
    base_dir: Path = typer.Option(default_runtime_dir(), "--base-dir"),
) -> None:
    """Connect to a host over TCP, adopt its state and run linked."""
    host_addr = str(host).strip()
    if not host_addr:
        raise typer.BadParameter("host address is required", param_hint="--host")
    cfg = SyncConfig(
        port=int(port),
        base_dir=base_dir,
        debug_log=bool(debug_log),
        resync_timeout_ms=int(resync_timeout_ms),
    )
    _start_debug_log(cfg, role="join")
    transport = TcpTransport()
    controller = SyncController(
        engine_factory=DemoEngine.deserialize,
        transport=transport,
        peer_id=cfg.peer_id,
        sync_interval=int(cfg.sync_interval),
        resync_timeout_ms=cfg.resync_timeout_ms,
    )
    controller.power_on(DemoEngine())
    driver = TickDriver(controller=controller, transport=transport, max_queued=int(cfg.max_queued_audio))
    try:
        try:
            transport.connect(host_addr, cfg.port)
        except OSError as exc:
            typer.echo(f"connect failed: {exc}", err=True)
            raise typer.Exit(code=1) from exc
        controller.link(f"{host_addr}:{cfg.port}", initiator=True)
        _run_linked(controller, driver, frames=int(frames), seed=int(seed), press_chance=float(press_chance))
    except ProtocolDesyncError as exc:
        typer.echo(f"desync: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    finally:
        controller.disconnect()
        transport.close()
        close_sync_debug_log()


def main(argv: list[str] | None = None) -> None:
    app(prog_name="linkplay", args=argv)


if __name__ == "__main__":
    main()
