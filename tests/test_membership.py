import threading

import pytest

from amyqueue.membership import (
    ClusterMode,
    Member,
    MembershipAction,
    MembershipChange,
    NodeState,
    VoterSet,
    decode_membership_change,
    encode_membership_change,
)


@pytest.fixture
def cluster():
    vs = VoterSet()
    vs.add_voter("self", "")
    vs.add_voter("b", "host-b:7002")
    vs.add_voter("c", "host-c:7003")
    vs.add_observer("d", "host-d:7004")
    return vs


def test_enum_values_match_wire_strings():
    assert ClusterMode("dynamic") is ClusterMode.DYNAMIC
    assert MembershipAction("remove_voter") is MembershipAction.REMOVE_VOTER
    assert NodeState("observer") is NodeState.OBSERVER


def test_voters_excludes_self_and_observers(cluster):
    assert sorted(cluster.voters("self")) == ["host-b:7002", "host-c:7003"]


def test_all_peer_addrs_includes_observers_but_not_blank(cluster):
    assert sorted(cluster.all_peer_addrs("self")) == [
        "host-b:7002",
        "host-c:7003",
        "host-d:7004",
    ]


def test_observers_do_not_change_quorum(cluster):
    before = cluster.quorum_size()
    cluster.add_observer("e", "host-e:7005")
    assert cluster.quorum_size() == before


def test_quorum_is_strict_majority(cluster):
    voters = sum(1 for m in cluster.members() if m.state is NodeState.VOTER)
    quorum = cluster.quorum_size()
    assert quorum * 2 > voters
    assert (quorum - 1) * 2 <= voters


def test_empty_set_quorum():
    assert VoterSet().quorum_size() == 1


def test_add_observer_does_not_demote_voter(cluster):
    cluster.add_observer("b", "elsewhere:1")
    assert cluster.is_voter("b")
    assert cluster.addr_of("b") == "host-b:7002"


def test_add_voter_promotes_observer(cluster):
    assert not cluster.is_voter("d")
    cluster.add_voter("d", "host-d:7004")
    assert cluster.is_voter("d")
    assert "host-d:7004" in cluster.voters("self")


def test_remove_and_unknown(cluster):
    cluster.remove("c")
    assert "c" not in cluster
    assert cluster.addr_of("c") == ""
    assert not cluster.is_voter("c")
    cluster.remove("never-there")
    assert len(cluster) == 3


def test_members_is_a_snapshot(cluster):
    snapshot = cluster.members()
    for m in snapshot:
        m.state = NodeState.OBSERVER
    assert cluster.is_voter("b")
    ids = {m.id for m in snapshot}
    assert ids == {"self", "b", "c", "d"}
    assert Member("d", "host-d:7004", NodeState.OBSERVER) in cluster.members()


def test_concurrent_adds():
    vs = VoterSet()

    def add(prefix):
        for i in range(200):
            vs.add_voter(f"{prefix}-{i}", f"{prefix}:{i}")

    threads = [threading.Thread(target=add, args=(p,)) for p in "abcd"]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(vs) == 800
    assert len(vs.voters("nobody")) == 800


def test_encode_wire_format():
    change = MembershipChange(MembershipAction.ADD_VOTER, "ctrl-4", "localhost:7004")
    assert (
        encode_membership_change(change)
        == b'{"Action":"add_voter","NodeID":"ctrl-4","Addr":"localhost:7004"}'
    )


@pytest.mark.parametrize(
    "change",
    [
        MembershipChange(MembershipAction.ADD_VOTER, "n1", "host:1"),
        MembershipChange(MembershipAction.REMOVE_VOTER, "n2"),
    ],
)
def test_round_trip(change):
    assert decode_membership_change(encode_membership_change(change)) == change


def test_decode_is_case_insensitive_and_tolerates_missing_fields():
    change = decode_membership_change(b'{"action":"remove_voter","nodeid":"x"}')
    assert change == MembershipChange(MembershipAction.REMOVE_VOTER, "x", "")


@pytest.mark.parametrize(
    "data",
    [b"not json", b"[1,2]", b'{"Action":"explode","NodeID":"x"}', b'{"Action":1}'],
)
def test_decode_rejects_malformed(data):
    with pytest.raises(ValueError):
        decode_membership_change(data)