import socket
import struct

import pytest

from amyqueue.membership import Member, NodeState
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
from amyqueue.raft_transport import TAG_VOTE_REQUEST, TcpTransport
from amyqueue.raftlog import CommandType, LogEntry
from amyqueue.tcp import dial

MEMBERS = [
    Member("ctrl-1", "localhost:7001", NodeState.VOTER),
    Member("ctrl-4", "localhost:7004", NodeState.OBSERVER),
]


@pytest.fixture
def served():
    calls = []

    def on_vote(req):
        calls.append(req)
        return VoteResponse(term=req.term, vote_granted=True)

    def on_append(req):
        calls.append(req)
        return AppendEntriesResponse(term=req.term, success=True, next_index=req.leader_commit)

    def on_join(req):
        calls.append(req)
        return ObserverJoinResponse(leader_id="ctrl-1", leader_addr="localhost:7001", err=req.node_id)

    def on_info(req):
        calls.append(req)
        return ClusterInfoResponse(leader_id="ctrl-1", leader_addr="localhost:7001", members=MEMBERS)

    transport = TcpTransport("127.0.0.1:0")
    transport.start(Handlers(on_vote, on_append, on_join, on_info))
    yield transport, calls
    transport.close()


def test_vote_request_round_trip(served):
    transport, calls = served
    req = VoteRequest(term=4, candidate_id="ctrl-2", last_log_index=9, last_log_term=3)
    resp = transport.send_vote_request(transport.bound_addr, req, 2.0)
    assert resp == VoteResponse(term=4, vote_granted=True)
    assert calls == [req]


def test_append_entries_carries_entries(served):
    transport, calls = served
    entries = [
        LogEntry(1, 2, CommandType.DATA, b"payload"),
        LogEntry(2, 2, CommandType.MEMBERSHIP, b'{"Action":"add_voter"}'),
    ]
    req = AppendEntriesRequest(
        term=2,
        leader_id="ctrl-1",
        leader_addr="localhost:7001",
        prev_log_index=0,
        prev_log_term=0,
        entries=entries,
        leader_commit=2,
    )
    resp = transport.send_append_entries(transport.bound_addr, req, 2.0)
    assert resp == AppendEntriesResponse(term=2, success=True, next_index=2)
    assert calls == [req]
    assert calls[0].entries[1].type is CommandType.MEMBERSHIP


def test_observer_join_round_trip(served):
    transport, calls = served
    req = ObserverJoinRequest(node_id="ctrl-4", addr="localhost:7004")
    resp = transport.send_observer_join(transport.bound_addr, req, 2.0)
    assert resp.leader_addr == "localhost:7001"
    assert resp.err == "ctrl-4"
    assert resp.success is False
    assert calls == [req]


def test_cluster_info_returns_members(served):
    transport, _ = served
    resp = transport.send_cluster_info(transport.bound_addr, ClusterInfoRequest(), 2.0)
    assert resp.members == MEMBERS
    assert resp.members[1].state is NodeState.OBSERVER


def test_wire_frame_is_tag_then_length_prefixed_json(served):
    transport, _ = served
    req = VoteRequest(term=1, candidate_id="ctrl-3")
    payload = to_wire(req)
    with dial(transport.bound_addr, 2.0) as conn:
        conn.sendall(bytes([TAG_VOTE_REQUEST]) + struct.pack(">I", len(payload)) + payload)
        header = b""
        while len(header) < 4:
            header += conn.recv(4 - len(header))
        (size,) = struct.unpack(">I", header)
        body = b""
        while len(body) < size:
            body += conn.recv(size - len(body))
    assert from_wire(VoteResponse, body) == VoteResponse(term=1, vote_granted=True)


def test_unknown_tag_closes_without_reply(served):
    transport, calls = served
    with dial(transport.bound_addr, 2.0) as conn:
        conn.sendall(b"\x09")
        assert conn.recv(16) == b""
    assert calls == []


def test_malformed_request_closes_without_reply(served):
    transport, calls = served
    junk = b"not json"
    with dial(transport.bound_addr, 2.0) as conn:
        conn.sendall(bytes([TAG_VOTE_REQUEST]) + struct.pack(">I", len(junk)) + junk)
        assert conn.recv(16) == b""
    assert calls == []


def test_unreachable_peer_raises():
    probe = socket.socket()
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    transport = TcpTransport("127.0.0.1:0")
    with pytest.raises(OSError):
        transport.send_vote_request(f"127.0.0.1:{port}", VoteRequest(), 1.0)


def test_closed_transport_stops_answering(served):
    transport, _ = served
    addr = transport.bound_addr
    transport.close()
    with pytest.raises(OSError):
        transport.send_cluster_info(addr, ClusterInfoRequest(), 1.0)


def test_start_twice_is_rejected(served):
    transport, _ = served
    handlers = Handlers(
        lambda r: VoteResponse(),
        lambda r: AppendEntriesResponse(),
        lambda r: ObserverJoinResponse(),
        lambda r: ClusterInfoResponse(),
    )
    with pytest.raises(RuntimeError):
        transport.start(handlers)