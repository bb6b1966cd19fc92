"""Prometheus metrics for a Raft node and the HTTP endpoint that serves them."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import NamedTuple
from urllib.parse import urlsplit

from amyqueue.membership import NodeState
from amyqueue.messages import MetricsSource, State

_NAMESPACE = "amyqueue_raft"
_GAUGE = "gauge"
_COUNTER = "counter"
_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class _Descriptor(NamedTuple):
    name: str
    help: str
    label_names: tuple[str, ...]
    kind: str


def _desc(suffix: str, help_text: str, kind: str, labels: tuple[str, ...] = ("node_id",)) -> _Descriptor:
    return _Descriptor(f"{_NAMESPACE}_{suffix}", help_text, labels, kind)


@dataclass
class Sample:
    """One metric value with its labels."""

    name: str
    kind: str
    value: float
    labels: dict[str, str] = field(default_factory=dict)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels.items())
    return "{" + inner + "}"


class Collector:
    """Turns a node's metrics snapshot into Prometheus samples on every scrape."""

    def __init__(self, src: MetricsSource) -> None:
        self.src = src
        self._current_term = _desc("current_term", "Current Raft term.", _GAUGE)
        self._is_leader = _desc(
            "is_leader", "1 if this node is the current leader, 0 otherwise.", _GAUGE
        )
        self._commit_index = _desc(
            "commit_index", "Highest log index committed by a quorum.", _GAUGE
        )
        self._last_applied = _desc(
            "last_applied", "Highest log index applied to the state machine.", _GAUGE
        )
        self._member_count = _desc(
            "member_count", "Total cluster members (voters + observers).", _GAUGE
        )
        self._voter_count = _desc("voter_count", "Number of voting members.", _GAUGE)
        self._observer_count = _desc(
            "observer_count", "Number of observer (non-voting) members.", _GAUGE
        )
        self._observer_lag = _desc(
            "observer_lag",
            "Log entries the observer is behind the leader (leader only).",
            _GAUGE,
            ("node_id", "observer_id"),
        )
        self._elections_total = _desc(
            "elections_total",
            "Total elections started by this node. A rising value indicates instability.",
            _COUNTER,
        )
        self._leader_changes_total = _desc(
            "leader_changes_total", "Total times this node observed a new leader.", _COUNTER
        )
        self._heartbeat_failures_total = _desc(
            "heartbeat_failures_total",
            "Total failed AppendEntries RPCs per peer.",
            _COUNTER,
            ("node_id", "peer"),
        )

    def describe(self) -> list[_Descriptor]:
        """Every metric this collector can emit."""
        return [
            self._current_term,
            self._is_leader,
            self._commit_index,
            self._last_applied,
            self._member_count,
            self._voter_count,
            self._observer_count,
            self._observer_lag,
            self._elections_total,
            self._leader_changes_total,
            self._heartbeat_failures_total,
        ]

    def collect(self) -> list[Sample]:
        """Read a fresh snapshot and return all current metric values."""
        snap = self.src.metrics_snapshot()
        node_id = snap.node_id

        def sample(desc: _Descriptor, value: float, *extra: str) -> Sample:
            values = (node_id, *extra)
            return Sample(desc.name, desc.kind, float(value), dict(zip(desc.label_names, values)))

        voters = sum(1 for m in snap.members if m.state == NodeState.VOTER)
        observers = len(snap.members) - voters

        samples = [
            sample(self._current_term, snap.term),
            sample(self._is_leader, 1 if snap.state == State.LEADER else 0),
            sample(self._commit_index, snap.commit_index),
            sample(self._last_applied, snap.last_applied),
            sample(self._member_count, len(snap.members)),
            sample(self._voter_count, voters),
            sample(self._observer_count, observers),
        ]
        samples.extend(
            sample(self._observer_lag, lag, observer_id)
            for observer_id, lag in snap.observer_lag.items()
        )
        samples.append(sample(self._elections_total, snap.elections_started))
        samples.append(sample(self._leader_changes_total, snap.leader_changes))
        samples.extend(
            sample(self._heartbeat_failures_total, count, peer)
            for peer, count in snap.heartbeat_failures.items()
        )
        return samples

    def render(self) -> str:
        """The current values in the Prometheus text exposition format."""
        samples = self.collect()
        lines: list[str] = []
        for desc in sorted(self.describe(), key=lambda d: d.name):
            family = sorted(
                (s for s in samples if s.name == desc.name),
                key=lambda s: tuple(s.labels.values()),
            )
            if not family:
                continue
            lines.append(f"# HELP {desc.name} {_escape_help(desc.help)}")
            lines.append(f"# TYPE {desc.name} {desc.kind}")
            lines.extend(
                f"{s.name}{_format_labels(s.labels)} {_format_value(s.value)}" for s in family
            )
        return "".join(line + "\n" for line in lines)


class _MetricsHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    collector: Collector


class _MetricsHandler(BaseHTTPRequestHandler):
    server: _MetricsHTTPServer

    def _serve(self) -> None:
        if urlsplit(self.path).path == "/metrics":
            status, ctype, body = 200, _CONTENT_TYPE, self.server.collector.render().encode("utf-8")
        else:
            status, ctype, body = 404, "text/plain; charset=utf-8", b"404 page not found\n"
        self.send_response(status)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    do_GET = do_HEAD = do_POST = do_PUT = do_DELETE = _serve

    def log_message(self, format: str, *args: object) -> None:
        pass


class MetricsServer:
    """Serves /metrics on its own port, apart from the admin server."""

    def __init__(self, port: int, src: MetricsSource, host: str = "") -> None:
        self.host = host
        self.port = port
        self.collector = Collector(src)
        self._httpd: _MetricsHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def bound_port(self) -> int | None:
        return self._httpd.server_address[1] if self._httpd is not None else None

    def start(self) -> None:
        """Bind the port and serve scrapes in the background."""
        if self._httpd is not None:
            raise RuntimeError("metrics server already started")
        httpd = _MetricsHTTPServer((self.host, self.port), _MetricsHandler)
        httpd.collector = self.collector
        self._httpd = httpd
        self._thread = threading.Thread(
            target=httpd.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop serving; safe to call when not started."""
        httpd, self._httpd = self._httpd, None
        if httpd is None:
            return
        httpd.shutdown()
        httpd.server_close()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=1.0)