import socket
import threading

import pytest

from amyqueue.tcp import TcpServer, dial


def _recv_all(conn):
    chunks = []
    while True:
        data = conn.recv(1024)
        if not data:
            return b"".join(chunks)
        chunks.append(data)


def _upper_echo(conn):
    with conn:
        data = conn.recv(1024)
        conn.sendall(data.upper())


@pytest.fixture
def echo_server():
    server = TcpServer("127.0.0.1:0")
    server.start(_upper_echo)
    yield server
    server.close()


def test_bound_address_has_a_real_port(echo_server):
    host, _, port = echo_server.bound_addr.rpartition(":")
    assert host == "127.0.0.1"
    assert int(port) > 0


def test_handler_serves_connection(echo_server):
    with dial(echo_server.bound_addr, timeout=2.0) as conn:
        conn.sendall(b"ping")
        assert _recv_all(conn) == b"PING"


def test_serves_several_connections_in_turn(echo_server):
    replies = []
    for word in (b"one", b"two", b"three"):
        with dial(echo_server.bound_addr, timeout=2.0) as conn:
            conn.sendall(word)
            replies.append(_recv_all(conn))
    assert replies == [b"ONE", b"TWO", b"THREE"]


def test_connections_are_handled_concurrently():
    barrier = threading.Barrier(2, timeout=2.0)

    def handler(conn):
        with conn:
            try:
                barrier.wait()
                conn.sendall(b"ok")
            except threading.BrokenBarrierError:
                conn.sendall(b"broken")

    with TcpServer("127.0.0.1:0") as server:
        server.start(handler)
        first = dial(server.bound_addr, timeout=3.0)
        second = dial(server.bound_addr, timeout=3.0)
        with first, second:
            assert _recv_all(first) == b"ok"
            assert _recv_all(second) == b"ok"


def test_dial_after_close_is_refused():
    server = TcpServer("127.0.0.1:0")
    server.start(_upper_echo)
    addr = server.bound_addr
    server.close()
    with pytest.raises(OSError):
        dial(addr, timeout=1.0).close()


def test_listen_on_busy_port_fails():
    with TcpServer("127.0.0.1:0") as first:
        first.start(_upper_echo)
        second = TcpServer(first.bound_addr)
        with pytest.raises(OSError, match="tcp server listen"):
            second.start(_upper_echo)


def test_start_twice_raises():
    with TcpServer("127.0.0.1:0") as server:
        server.start(_upper_echo)
        with pytest.raises(RuntimeError):
            server.start(_upper_echo)


def test_dial_requires_port():
    with pytest.raises(ValueError):
        dial("nohostport")


def test_dial_rejects_non_numeric_port():
    with pytest.raises(ValueError):
        dial("localhost:abc")


def test_server_rejects_bad_address():
    with pytest.raises(ValueError):
        TcpServer("localhost").start(_upper_echo)


def test_dial_returns_tcp_socket(echo_server):
    conn = dial(echo_server.bound_addr, timeout=2.0)
    with conn:
        assert conn.type == socket.SOCK_STREAM
        assert conn.gettimeout() == 2.0
        conn.sendall(b"x")
        assert _recv_all(conn) == b"X"