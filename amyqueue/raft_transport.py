"""Raft RPCs over TCP: a tag byte, then length-prefixed JSON frames."""

from __future__ import annotations

import socket
import struct
from typing import Any, Callable, TypeVar

from amyqueue.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    ClusterInfoRequest,
    ClusterInfoResponse,
    Handlers,
    ObserverJoinRequest,
    ObserverJoinResponse,
    VoteRequest,
    VoteResponse,
    from_wire,
    to_wire,
)
from amyqueue.tcp import TcpServer, dial

_T = TypeVar("_T")

# one-byte message tags so the receiver knows what to decode
TAG_VOTE_REQUEST = 1
TAG_APPEND_ENTRIES = 3
TAG_OBSERVER_JOIN = 5
TAG_CLUSTER_INFO = 7

_FRAME_HEADER = struct.Struct(">I")
_MAX_FRAME = 64 * 1024 * 1024
_SERVER_DEADLINE = 5.0


def _read_exact(conn: socket.socket, size: int) -> bytes:
    chunks = []
    remaining = size
    while remaining:
        chunk = conn.recv(remaining)
        if not chunk:
            raise ConnectionError("connection closed before the message was complete")
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _read_frame(conn: socket.socket) -> bytes:
    (size,) = _FRAME_HEADER.unpack(_read_exact(conn, _FRAME_HEADER.size))
    if size > _MAX_FRAME:
        raise ValueError(f"frame of {size} bytes exceeds the {_MAX_FRAME} byte limit")
    return _read_exact(conn, size)


def _frame(payload: bytes) -> bytes:
    return _FRAME_HEADER.pack(len(payload)) + payload


def _routes(handlers: Handlers) -> dict[int, tuple[type, Callable[[Any], Any]]]:
    return {
        TAG_VOTE_REQUEST: (VoteRequest, handlers.handle_vote_request),
        TAG_APPEND_ENTRIES: (AppendEntriesRequest, handlers.handle_append_entries),
        TAG_OBSERVER_JOIN: (ObserverJoinRequest, handlers.handle_observer_join),
        TAG_CLUSTER_INFO: (ClusterInfoRequest, handlers.handle_cluster_info),
    }


def _serve_connection(
    routes: dict[int, tuple[type, Callable[[Any], Any]]], conn: socket.socket
) -> None:
    with conn:
        conn.settimeout(_SERVER_DEADLINE)
        try:
            tag = _read_exact(conn, 1)[0]
            route = routes.get(tag)
            if route is None:
                return
            req_cls, handle = route
            req = from_wire(req_cls, _read_frame(conn))
            conn.sendall(_frame(to_wire(handle(req))))
        except (OSError, ValueError, TypeError):
            return


class TcpTransport:
    """The Raft transport over plain TCP, one connection per request."""

    def __init__(self, listen_addr: str) -> None:
        self.listen_addr = listen_addr
        self._server = TcpServer(listen_addr)

    @property
    def bound_addr(self) -> str | None:
        """The address actually listened on, once started."""
        return self._server.bound_addr

    def __enter__(self) -> TcpTransport:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self, handlers: Handlers) -> None:
        """Listen for inbound RPCs and route them to the handlers."""
        routes = _routes(handlers)
        self._server.start(lambda conn: _serve_connection(routes, conn))

    def close(self) -> None:
        self._server.close()

    def _call(self, addr: str, tag: int, req: Any, resp_cls: type[_T], timeout: float | None) -> _T:
        with dial(addr, timeout) as conn:
            conn.sendall(bytes([tag]) + _frame(to_wire(req)))
            return from_wire(resp_cls, _read_frame(conn))

    def send_vote_request(
        self, addr: str, req: VoteRequest, timeout: float | None = None
    ) -> VoteResponse:
        return self._call(addr, TAG_VOTE_REQUEST, req, VoteResponse, timeout)

    def send_append_entries(
        self, addr: str, req: AppendEntriesRequest, timeout: float | None = None
    ) -> AppendEntriesResponse:
        return self._call(addr, TAG_APPEND_ENTRIES, req, AppendEntriesResponse, timeout)

    def send_observer_join(
        self, addr: str, req: ObserverJoinRequest, timeout: float | None = None
    ) -> ObserverJoinResponse:
        return self._call(addr, TAG_OBSERVER_JOIN, req, ObserverJoinResponse, timeout)

    def send_cluster_info(
        self, addr: str, req: ClusterInfoRequest, timeout: float | None = None
    ) -> ClusterInfoResponse:
        return self._call(addr, TAG_CLUSTER_INFO, req, ClusterInfoResponse, timeout)