import pytest

from amyqueue import broker

ENV_KEYS = [
    "NODE_ROLE", "CONTROLLER_HOST", "CONTROLLER_PORT", "PEER_NODES", "NODE_ID",
    "HTTP_PORT", "GRPC_PORT", "RAFT_PORT", "RAFT_ELECTION_TIMEOUT_MS",
    "CONTROLLER_HEART_BEAT_INTERVAL", "LOG_LEVEL", "LOG_FORMAT", "KILL_PORT_ON_START",
    "CLUSTER_MODE", "BOOTSTRAP_SERVERS", "JOIN_MAX_RETRIES", "JOIN_RETRY_INTERVAL_MS",
    "AUTO_PROMOTE", "AUTO_PROMOTE_LAG_THRESHOLD", "METRICS_PORT",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_defaults_are_reported(clean_env, capsys):
    assert broker.main([]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "AmyQueue Broker vdev (built: unknown)"
    assert "Node ID      : node-1" in lines
    assert "Role         : broker" in lines
    assert "Controller   : localhost:8080" in lines
    assert "Peer nodes   : []" in lines
    assert lines[-1] == "Starting broker node..."


def test_environment_values_are_reported(clean_env, capsys):
    clean_env.setenv("NODE_ID", "broker-7")
    clean_env.setenv("PEER_NODES", "a:1, b:2")
    clean_env.setenv("GRPC_PORT", "9999")
    assert broker.main([]) == 0
    out = capsys.readouterr().out
    assert "Node ID      : broker-7" in out
    assert "Peer nodes   : [a:1 b:2]" in out
    assert "gRPC port    : 9999" in out


def test_invalid_config_exits_with_error(clean_env, capsys):
    clean_env.setenv("HTTP_PORT", "not-a-number")
    assert broker.main([]) == 1
    err = capsys.readouterr().err
    assert err.startswith("config error:")
    assert "HTTP_PORT" in err