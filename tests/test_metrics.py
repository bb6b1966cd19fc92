import urllib.error
import urllib.request

import pytest

from amyqueue.membership import Member, NodeState
from amyqueue.messages import MetricsSnapshot, State
from amyqueue.metrics import Collector, MetricsServer


class FakeSource:
    def __init__(self, snapshot):
        self.snapshot = snapshot

    def metrics_snapshot(self):
        return self.snapshot


def leader_snapshot():
    return MetricsSnapshot(
        node_id="ctrl-1",
        state=State.LEADER,
        term=7,
        commit_index=12,
        last_applied=11,
        leader_id="ctrl-1",
        members=[
            Member("ctrl-1", "", NodeState.VOTER),
            Member("ctrl-2", "localhost:7002", NodeState.VOTER),
            Member("ctrl-4", "localhost:7004", NodeState.OBSERVER),
        ],
        observer_lag={"ctrl-4": 3},
        elections_started=2,
        leader_changes=1,
        heartbeat_failures={"localhost:7002": 5},
    )


def by_name(samples):
    return {s.name: s for s in samples}


def test_describe_lists_every_metric_once():
    names = [d.name for d in Collector(FakeSource(leader_snapshot())).describe()]
    assert len(names) == len(set(names))
    assert all(name.startswith("amyqueue_raft_") for name in names)
    assert "amyqueue_raft_heartbeat_failures_total" in names


def test_collect_leader_values():
    snap = leader_snapshot()
    samples = by_name(Collector(FakeSource(snap)).collect())
    assert samples["amyqueue_raft_is_leader"].value == 1
    assert samples["amyqueue_raft_current_term"].value == snap.term
    assert samples["amyqueue_raft_commit_index"].value == snap.commit_index
    assert samples["amyqueue_raft_last_applied"].value == snap.last_applied
    assert samples["amyqueue_raft_member_count"].value == len(snap.members)
    voters = samples["amyqueue_raft_voter_count"].value
    observers = samples["amyqueue_raft_observer_count"].value
    assert voters + observers == len(snap.members)
    assert observers == 1
    assert samples["amyqueue_raft_current_term"].labels == {"node_id": "ctrl-1"}


def test_collect_follower_is_not_leader():
    snap = leader_snapshot()
    snap.state = State.FOLLOWER
    samples = by_name(Collector(FakeSource(snap)).collect())
    assert samples["amyqueue_raft_is_leader"].value == 0


def test_observer_lag_and_failures_carry_extra_labels():
    samples = Collector(FakeSource(leader_snapshot())).collect()
    lag = [s for s in samples if s.name == "amyqueue_raft_observer_lag"]
    failures = [s for s in samples if s.name == "amyqueue_raft_heartbeat_failures_total"]
    assert [(s.labels, s.value) for s in lag] == [({"node_id": "ctrl-1", "observer_id": "ctrl-4"}, 3)]
    assert failures[0].labels == {"node_id": "ctrl-1", "peer": "localhost:7002"}
    assert failures[0].kind == "counter"
    assert lag[0].kind == "gauge"


def test_render_text_format():
    text = Collector(FakeSource(leader_snapshot())).render()
    lines = text.splitlines()
    assert "# TYPE amyqueue_raft_elections_total counter" in lines
    assert "# HELP amyqueue_raft_current_term Current Raft term." in lines
    assert 'amyqueue_raft_current_term{node_id="ctrl-1"} 7' in lines
    assert 'amyqueue_raft_observer_lag{node_id="ctrl-1",observer_id="ctrl-4"} 3' in lines
    assert text.endswith("\n")


def test_render_omits_empty_families():
    snap = leader_snapshot()
    snap.observer_lag = {}
    snap.heartbeat_failures = {}
    text = Collector(FakeSource(snap)).render()
    assert "amyqueue_raft_observer_lag" not in text
    assert "amyqueue_raft_heartbeat_failures_total" not in text
    assert "amyqueue_raft_leader_changes_total" in text


def test_render_escapes_label_values():
    snap = leader_snapshot()
    snap.node_id = 'odd"id'
    text = Collector(FakeSource(snap)).render()
    assert 'amyqueue_raft_is_leader{node_id="odd\\"id"} 1' in text.splitlines()


@pytest.fixture
def metrics_server():
    server = MetricsServer(0, FakeSource(leader_snapshot()), host="127.0.0.1")
    server.start()
    yield server
    server.stop()


def test_server_serves_metrics(metrics_server):
    url = f"http://127.0.0.1:{metrics_server.bound_port}/metrics"
    with urllib.request.urlopen(url, timeout=5) as resp:
        body = resp.read().decode("utf-8")
        status = resp.status
    assert status == 200
    assert body == Collector(FakeSource(leader_snapshot())).render()


def test_server_unknown_path_is_404(metrics_server):
    url = f"http://127.0.0.1:{metrics_server.bound_port}/other"
    with pytest.raises(urllib.error.HTTPError) as info:
        urllib.request.urlopen(url, timeout=5)
    assert info.value.code == 404


def test_stop_without_start_leaves_no_port():
    server = MetricsServer(0, FakeSource(leader_snapshot()))
    server.stop()
    assert server.bound_port is None