# amyqueue

A controller cluster that agrees on its membership through Raft consensus.
Controllers elect a leader, replicate an in-memory log over TCP, and let new
nodes join as non-voting observers that can later be promoted to voters. Each
controller serves an HTTP admin API and a Prometheus metrics endpoint.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Commands

- `amyqueue-controller` starts a Raft controller node, its HTTP admin server
  and its metrics server, and runs until it receives SIGINT or SIGTERM. If
  `KILL_PORT_ON_START` is on, it first kills any process listening on the Raft
  port (with `lsof` on macOS, `fuser` elsewhere).
- `amyqueue-broker` loads the configuration, prints it and exits.
- `amyqueue-cli` prints its version and a notice that its commands are not
  available yet. It accepts one of `topic`, `produce`, `consume`, `broker`,
  `cluster` or `group` as its first argument, but does nothing with it.

A configuration error makes `amyqueue-controller` and `amyqueue-broker` print
`config error: ...` to standard error and exit with status 1.

## Configuration

Settings come from environment variables. A `.env` file in the working
directory is read first; variables already set in the environment win over it.

| Variable | Default | Meaning |
|---|---|---|
| `NODE_ROLE` | `broker` | `controller` or `broker` |
| `NODE_ID` | `node-1` | identifier of this node |
| `CONTROLLER_HOST` / `CONTROLLER_PORT` | `localhost` / `8080` | controller address, reported by the broker |
| `PEER_NODES` | empty | comma-separated Raft addresses of the other voters (static mode) |
| `HTTP_PORT` | `8080` | admin HTTP port |
| `GRPC_PORT` | `8082` | reported by the broker; nothing listens on it |
| `RAFT_PORT` | `8081` | Raft TCP port |
| `RAFT_ELECTION_TIMEOUT_MS` | `1000` | base election timeout; up to half again is added at random |
| `CONTROLLER_HEART_BEAT_INTERVAL` | `100` | leader heartbeat interval in ms |
| `LOG_LEVEL` | `info` | `debug`, `info`, `warn` or `error` (anything else means `info`) |
| `LOG_FORMAT` | `text` | `text` or `json` |
| `KILL_PORT_ON_START` | `true` | free the Raft port before binding |
| `CLUSTER_MODE` | `static` | `static` or `dynamic` |
| `BOOTSTRAP_SERVERS` | empty | dynamic mode: seed Raft addresses to join through |
| `JOIN_MAX_RETRIES` | `10` | full passes over the seeds before giving up |
| `JOIN_RETRY_INTERVAL_MS` | `2000` | wait between passes |
| `AUTO_PROMOTE` | `false` | promote observers to voters once caught up |
| `AUTO_PROMOTE_LAG_THRESHOLD` | `10` | largest lag still counted as caught up |
| `METRICS_PORT` | `9090` | port serving `/metrics` |

Integer settings must be whole numbers. Boolean settings are false for
`false`, `0` or `no` (any case) and true for any other value.

A static three-node cluster on one machine:

```
NODE_ROLE=controller NODE_ID=c1 RAFT_PORT=7001 HTTP_PORT=8001 METRICS_PORT=9001 \
  PEER_NODES=localhost:7002,localhost:7003 amyqueue-controller
```

Start the other two the same way, each with its own ports and peer list.

## Dynamic membership

With `CLUSTER_MODE=dynamic` and `BOOTSTRAP_SERVERS` set, a new controller
asks each seed in turn to register it as an observer. A seed that is not the
leader answers with the leader's address, and the request is sent there at
once. After `JOIN_MAX_RETRIES` failed passes the controller exits with
status 1.

Observers receive the replicated log but neither vote nor count toward quorum.
A voter is added or removed by a membership entry in the Raft log, and the
change takes effect once that entry is committed. The leader logs a hint when
an observer has caught up; with `AUTO_PROMOTE` on, it promotes the observer
itself. In static mode joins and membership changes are refused.

The admin HTTP server on `HTTP_PORT` serves:

- `GET /cluster/status` returns `LeaderID`, `LeaderAddr`, `Term` and `Members`.
- `POST /cluster/observers/join` with `{"node_id": ..., "addr": ...}` registers an observer.
- `POST /cluster/voters` with `{"node_id": ..., "addr": ...}` promotes an observer to voter;
  it waits up to five seconds for the change to commit.
- `DELETE /cluster/voters/<id>` removes a voter.

Request keys are matched ignoring case and underscores, so `NodeID` works as
well as `node_id`. Responses carry `Success` and `Err`; a refused operation or
a malformed body answers with status 400.

## Metrics

`GET /metrics` on `METRICS_PORT` serves the Prometheus text format:
`amyqueue_raft_current_term`, `amyqueue_raft_is_leader`,
`amyqueue_raft_commit_index`, `amyqueue_raft_last_applied`,
`amyqueue_raft_member_count`, `amyqueue_raft_voter_count`,
`amyqueue_raft_observer_count`, `amyqueue_raft_observer_lag` (leader only,
per observer), and the counters `amyqueue_raft_elections_total`,
`amyqueue_raft_leader_changes_total` and
`amyqueue_raft_heartbeat_failures_total` (per peer).

## Library use

The parts can be used from Python:

```python
from amyqueue.config import load
from amyqueue.node import Node, RaftConfig
from amyqueue.raft_transport import TcpTransport

cfg = load()
transport = TcpTransport(f":{cfg.raft_port}")
node = Node(RaftConfig(id=cfg.node_id, addr=f"localhost:{cfg.raft_port}",
                       peers=cfg.peer_nodes), transport)
node.start()
print(node.cluster_status())
node.stop()
```

Other modules: `amyqueue.membership` (`VoterSet`, membership changes),
`amyqueue.raftlog` (`RaftLog`, `LogEntry`), `amyqueue.replication`
(`RaftState`, the vote, append and commit rules), `amyqueue.messages` (the
message types and their JSON wire form via `to_wire` / `from_wire`),
`amyqueue.tcp` (`TcpServer`, `dial`), `amyqueue.admin_http` (`AdminServer`)
and `amyqueue.metrics` (`Collector`, `MetricsServer`).

Raft RPCs travel one per TCP connection: a one-byte message tag followed by
a four-byte big-endian length and a JSON body, answered by one framed JSON
reply.

## What it does not do

- There is no message broker: no topics, partitions, producers, consumers or
  consumer groups. `amyqueue-broker` only prints its configuration.
- `amyqueue-cli` has no working commands.
- The Raft log lives in memory only and is lost when a node stops; there are
  no snapshots. Committed data entries are not applied to any state machine;
  only membership entries change anything.
- Nothing listens on `GRPC_PORT`.