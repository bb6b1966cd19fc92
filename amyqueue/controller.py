"""Controller process: runs a Raft node with its admin and metrics servers."""

from __future__ import annotations

import json
import logging
import signal
import subprocess
import sys
import threading
import time
from typing import Any, Sequence

from amyqueue.admin_http import AdminServer
from amyqueue.config import ConfigError, load
from amyqueue.membership import ClusterMode
from amyqueue.messages import ObserverJoinRequest
from amyqueue.metrics import MetricsServer
from amyqueue.node import Node, RaftConfig
from amyqueue.raft_transport import TcpTransport

VERSION = "dev"
BUILD_TIME = "unknown"

_JOIN_RPC_TIMEOUT = 3.0
_LEVELS = {
    "debug": logging.DEBUG,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}
_LEVEL_NAMES = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


def _level_name(levelno: int) -> str:
    return _LEVEL_NAMES.get(levelno, logging.getLevelName(levelno))


def _timestamp(record: logging.LogRecord) -> str:
    stamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(record.created))
    return f"{stamp}.{int(record.msecs):03d}"


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"time={_timestamp(record)} level={_level_name(record.levelno)} "
            f"msg={json.dumps(record.getMessage())}"
        )
        node = getattr(record, "node", None)
        if node is not None:
            line += f" node={node}"
        return line


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": _timestamp(record),
            "level": _level_name(record.levelno),
            "msg": record.getMessage(),
        }
        node = getattr(record, "node", None)
        if node is not None:
            payload["node"] = node
        return json.dumps(payload)


def build_logger(level: str, fmt: str) -> logging.Logger:
    """A stdout logger at the named level, in text or JSON form."""
    logger = logging.getLogger("amyqueue.controller")
    logger.setLevel(_LEVELS.get(level, logging.INFO))
    logger.propagate = False
    for old in list(logger.handlers):
        logger.removeHandler(old)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JsonFormatter() if fmt == "json" else _TextFormatter())
    logger.addHandler(handler)
    return logger


def join_cluster(cfg: Any, self_raft_addr: str, transport: Any, logger: logging.Logger) -> None:
    """Register this node as an observer with an existing cluster.

    Each pass tries the bootstrap seeds in order, following a leader redirect
    at once; after a failed pass it waits and tries again, up to the
    configured number of passes. Raises RuntimeError when every pass fails.
    """
    req = ObserverJoinRequest(node_id=cfg.node_id, addr=self_raft_addr)
    retry_interval = cfg.join_retry_interval_ms / 1000
    max_retries = cfg.join_max_retries
    seeds = list(cfg.bootstrap_servers)

    for attempt in range(1, max_retries + 1):
        logger.info("join attempt %d of %d seeds=%s", attempt, max_retries, seeds)
        for seed in seeds:
            target = seed
            while True:
                try:
                    resp = transport.send_observer_join(target, req, _JOIN_RPC_TIMEOUT)
                except (OSError, ValueError, TypeError) as exc:
                    logger.warning(
                        "seed unreachable, trying next target=%s attempt=%d err=%s",
                        target, attempt, exc,
                    )
                    break

                if resp.success:
                    logger.info("joined cluster as observer via=%s", target)
                    return

                if resp.leader_addr and resp.leader_addr != target:
                    logger.info(
                        "not leader, redirecting from=%s to_leader=%s leader_id=%s",
                        target, resp.leader_addr, resp.leader_id,
                    )
                    target = resp.leader_addr
                    continue

                logger.warning(
                    "join rejected, will retry seed=%s attempt=%d reason=%s",
                    target, attempt, resp.err,
                )
                break

        if attempt < max_retries:
            logger.info(
                "all seeds tried, waiting before next attempt wait=%.3fs attempt=%d",
                retry_interval, attempt,
            )
            time.sleep(retry_interval)

    raise RuntimeError(f"failed to join cluster after {max_retries} attempts via {seeds}")


def _run_output(cmd: list[str]) -> str:
    try:
        done = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError:
        return ""
    return done.stdout if done.returncode == 0 else ""


def kill_port(port: int, logger: logging.Logger) -> list[str]:
    """Kill whatever listens on the TCP port; returns the pids killed.

    Uses lsof on macOS and fuser elsewhere. Failures are logged, never raised.
    """
    if sys.platform == "darwin":
        out = _run_output(["lsof", "-ti", f"TCP:{port}"])
        pids = [line.strip() for line in out.strip().splitlines() if line.strip()]
    else:
        out = _run_output(["fuser", f"{port}/tcp"])
        pids = out.split()

    killed = []
    for pid in pids:
        try:
            done = subprocess.run(["kill", "-9", pid], capture_output=True, check=False)
            error = f"exit status {done.returncode}" if done.returncode != 0 else ""
        except OSError as exc:
            error = str(exc)
        if error:
            logger.warning("could not kill process on port port=%d pid=%s err=%s", port, pid, error)
        else:
            logger.info("killed process occupying port port=%d pid=%s", port, pid)
            killed.append(pid)
    return killed


def _wait_for_signal() -> None:
    stop = threading.Event()

    def _on_signal(signum: int, frame: object) -> None:
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)
    while not stop.wait(0.5):
        pass


def main(argv: Sequence[str] | None = None) -> int:
    """Run the controller until SIGINT or SIGTERM; returns the exit status."""
    print(f"AmyQueue Controller v{VERSION} (built: {BUILD_TIME})")

    try:
        cfg = load("")
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 1

    logger = build_logger(cfg.log_level, cfg.log_format)
    mode = ClusterMode(cfg.cluster_mode)
    logger.info(
        "controller starting node_id=%s role=%s cluster_mode=%s raft_port=%d peers=%s",
        cfg.node_id, getattr(cfg.node_role, "value", cfg.node_role), mode.value,
        cfg.raft_port, cfg.peer_nodes,
    )

    if cfg.kill_port_on_start:
        kill_port(cfg.raft_port, logger)

    transport = TcpTransport(f":{cfg.raft_port}")
    self_raft_addr = f"localhost:{cfg.raft_port}"

    node = Node(
        RaftConfig(
            id=cfg.node_id,
            addr=self_raft_addr,
            peers=list(cfg.peer_nodes or []),
            mode=mode,
            election_timeout_ms=cfg.raft_election_timeout_ms,
            heartbeat_ms=cfg.raft_heartbeat_ms,
            auto_promote=cfg.auto_promote,
            auto_promote_lag_threshold=cfg.auto_promote_lag_threshold,
        ),
        transport,
        logger,
    )

    try:
        node.start()
    except OSError as exc:
        logger.error("failed to start raft node err=%s", exc)
        return 1

    if mode is ClusterMode.DYNAMIC and cfg.bootstrap_servers:
        try:
            join_cluster(cfg, self_raft_addr, transport, logger)
        except RuntimeError as exc:
            logger.error("failed to join cluster err=%s", exc)
            node.stop()
            return 1

    admin_addr = f":{cfg.http_port}"
    admin = AdminServer(admin_addr, node)
    try:
        admin.start()
    except OSError as exc:
        logger.error("failed to start admin server err=%s", exc)
        node.stop()
        return 1
    logger.info("admin HTTP server started addr=%s", admin_addr)

    metrics = MetricsServer(cfg.metrics_port, node)
    try:
        metrics.start()
    except OSError as exc:
        logger.error("failed to start metrics server err=%s", exc)
        admin.stop()
        node.stop()
        return 1
    logger.info("metrics server started addr=:%d", cfg.metrics_port)

    _wait_for_signal()

    logger.info("shutting down")
    metrics.stop()
    admin.stop()
    node.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())