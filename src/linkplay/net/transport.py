from __future__ import annotations

import socket
import struct
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

import msgspec

from .debug_log import sync_debug_log
from .protocol import Leave, NetMessage, decode_message, encode_message, message_kind


PeerAddr = tuple[str, int]

_FRAME_HEADER = struct.Struct(">I")
MAX_FRAME_SIZE = 64 * 1024 * 1024


class Transport(Protocol):
    def send(self, message: NetMessage) -> None: ...

    def recv_messages(self) -> list[NetMessage]: ...


@dataclass(slots=True)
class _LoopbackQueue:
    frames: deque[bytes] = field(default_factory=deque)


@dataclass(slots=True)
class LoopbackTransport:
    """In-memory endpoint; frames cross the encoder so tests see real bytes."""

    _outbound: _LoopbackQueue
    _inbound: _LoopbackQueue
    _held: bool = False

    @classmethod
    def pair(cls) -> tuple[LoopbackTransport, LoopbackTransport]:
        a_to_b = _LoopbackQueue()
        b_to_a = _LoopbackQueue()
        return cls(_outbound=a_to_b, _inbound=b_to_a), cls(_outbound=b_to_a, _inbound=a_to_b)

    def send(self, message: NetMessage) -> None:
        self._outbound.frames.append(encode_message(message))

    def hold(self) -> None:
        """Stop delivering inbound frames until `release()`; they stay queued in order."""
        self._held = True

    def release(self) -> None:
        self._held = False

    @property
    def pending(self) -> int:
        return len(self._inbound.frames)

    def recv_messages(self) -> list[NetMessage]:
        if self._held:
            return []
        out: list[NetMessage] = []
        while self._inbound.frames:
            out.append(decode_message(self._inbound.frames.popleft()))
        return out


@dataclass(slots=True)
class TcpTransport:
    """Length-prefixed msgpack frames over a single non-blocking TCP stream."""

    recv_buffer_size: int = 65536
    _sock: socket.socket | None = field(init=False, default=None)
    _listener: socket.socket | None = field(init=False, default=None)
    _rx: bytearray = field(init=False, default_factory=bytearray)
    _tx: bytearray = field(init=False, default_factory=bytearray)
    _lost: bool = field(init=False, default=False)

    @property
    def connected(self) -> bool:
        return self._sock is not None

    @property
    def bound_port(self) -> int:
        listener = self._listener
        if listener is None:
            return 0
        return int(listener.getsockname()[1])

    def listen(self, bind_host: str, bind_port: int) -> None:
        if self._listener is not None:
            return
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        listener.bind((str(bind_host), int(bind_port)))
        listener.listen(1)
        listener.setblocking(False)
        self._listener = listener
        sync_debug_log("tcp_listen", host=str(bind_host), port=int(self.bound_port))

    def accept(self) -> PeerAddr | None:
        listener = self._listener
        if listener is None or self._sock is not None:
            return None
        try:
            sock, raw_addr = listener.accept()
        except BlockingIOError:
            return None
        addr: PeerAddr = (str(raw_addr[0]), int(raw_addr[1]))
        self._adopt(sock)
        sync_debug_log("tcp_accept", addr=f"{addr[0]}:{addr[1]}")
        return addr

    def connect(self, host: str, port: int, *, timeout_s: float = 5.0) -> None:
        if self._sock is not None:
            return
        sock = socket.create_connection((str(host), int(port)), timeout=float(timeout_s))
        self._adopt(sock)
        sync_debug_log("tcp_connect", addr=f"{host}:{int(port)}")

    def _adopt(self, sock: socket.socket) -> None:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setblocking(False)
        self._sock = sock
        self._rx.clear()
        self._tx.clear()
        self._lost = False

    def close(self) -> None:
        sock = self._sock
        listener = self._listener
        self._sock = None
        self._listener = None
        for handle in (sock, listener):
            if handle is None:
                continue
            try:
                handle.close()
            except OSError:
                continue

    def send(self, message: NetMessage) -> None:
        if self._sock is None:
            raise ConnectionError("transport is not connected")
        blob = encode_message(message)
        self._tx += _FRAME_HEADER.pack(len(blob))
        self._tx += blob
        self._flush()

    def _flush(self) -> None:
        sock = self._sock
        while sock is not None and self._tx:
            try:
                sent = sock.send(self._tx)
            except BlockingIOError:
                return
            except OSError as exc:
                self._mark_lost(str(exc))
                return
            del self._tx[:sent]

    def _mark_lost(self, reason: str) -> None:
        if self._lost:
            return
        self._lost = True
        sync_debug_log("tcp_lost", reason=reason)
        sock = self._sock
        self._sock = None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def recv_messages(self) -> list[NetMessage]:
        self._flush()
        sock = self._sock
        out: list[NetMessage] = []
        while sock is not None:
            try:
                chunk = sock.recv(int(self.recv_buffer_size))
            except BlockingIOError:
                break
            except OSError as exc:
                self._mark_lost(str(exc))
                break
            if not chunk:
                self._mark_lost("eof")
                break
            self._rx += chunk

        while len(self._rx) >= _FRAME_HEADER.size:
            (size,) = _FRAME_HEADER.unpack_from(self._rx)
            if size > MAX_FRAME_SIZE:
                self._mark_lost(f"frame_too_large:{size}")
                self._rx.clear()
                break
            end = _FRAME_HEADER.size + int(size)
            if len(self._rx) < end:
                break
            blob = bytes(self._rx[_FRAME_HEADER.size : end])
            del self._rx[:end]
            try:
                message = decode_message(blob)
            except msgspec.DecodeError:
                # Ignore malformed frames.
                sync_debug_log("tcp_bad_frame", size=int(size))
                continue
            sync_debug_log("tcp_recv", kind=message_kind(message), size=int(size))
            out.append(message)

        if self._lost and self._sock is None:
            if self._rx:
                # The peer is gone; the tail can never complete.
                sync_debug_log("tcp_truncated_frame", size=len(self._rx))
                self._rx.clear()
            out.append(Leave(reason="connection_lost"))
            self._lost = False
        return out


__all__ = ["LoopbackTransport", "MAX_FRAME_SIZE", "PeerAddr", "TcpTransport", "Transport"]
