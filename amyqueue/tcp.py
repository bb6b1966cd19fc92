"""A protocol-agnostic TCP listener and a one-shot dialer."""

from __future__ import annotations

import socket
import threading
from typing import Callable

ConnHandler = Callable[[socket.socket], None]


def _split_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} is missing a port")
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"address {addr!r} has an invalid port") from None


def _join_addr(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def dial(addr: str, timeout: float | None = None) -> socket.socket:
    """Open one TCP connection to addr; the caller closes it."""
    host, port = _split_addr(addr)
    return socket.create_connection((host or "localhost", port), timeout=timeout)


class TcpServer:
    """A TCP listener that hands every accepted connection to a handler thread.

    The handler owns the connection and is responsible for closing it.
    """

    _POLL_SECONDS = 0.1

    def __init__(self, addr: str) -> None:
        self.addr = addr
        self.bound_addr: str | None = None
        self._listener: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._stopped = threading.Event()

    def __enter__(self) -> TcpServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def start(self, handler: ConnHandler) -> None:
        """Bind, listen and start accepting connections in the background."""
        if self._listener is not None:
            raise RuntimeError(f"tcp server {self.addr} already started")
        host, port = _split_addr(self.addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            listener = socket.create_server((host, port), family=family)
        except OSError as exc:
            raise OSError(exc.errno, f"tcp server listen {self.addr}: {exc.strerror or exc}") from exc
        listener.settimeout(self._POLL_SECONDS)
        bound_host, bound_port = listener.getsockname()[:2]
        self.bound_addr = _join_addr(bound_host, bound_port)
        self._listener = listener
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._accept_loop, args=(listener, handler), daemon=True
        )
        self._thread.start()

    def close(self) -> None:
        """Stop accepting connections; safe to call more than once."""
        self._stopped.set()
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.close()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _accept_loop(self, listener: socket.socket, handler: ConnHandler) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            conn.setblocking(True)
            threading.Thread(target=handler, args=(conn,), daemon=True).start()