"""Node configuration loaded from the environment and an optional .env file."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum

from dotenv import load_dotenv

_INTEGER = re.compile(r"[+-]?[0-9]+")


class ConfigError(ValueError):
    """Raised when a configuration value is missing its expected form."""


class NodeRole(str, Enum):
    """The role a process plays in the cluster."""

    CONTROLLER = "controller"
    BROKER = "broker"

    def __str__(self) -> str:
        return self.value


@dataclass
class Config:
    """Settings for a controller or broker node."""

    node_role: NodeRole = NodeRole.BROKER
    controller_host: str = "localhost"
    controller_port: int = 8080
    peer_nodes: list[str] = field(default_factory=list)
    node_id: str = "node-1"
    http_port: int = 8080
    grpc_port: int = 8082
    raft_port: int = 8081
    raft_election_timeout_ms: int = 1000
    raft_heartbeat_ms: int = 100
    log_level: str = "info"
    log_format: str = "text"
    kill_port_on_start: bool = True
    cluster_mode: str = "static"
    bootstrap_servers: list[str] = field(default_factory=list)
    join_max_retries: int = 10
    join_retry_interval_ms: int = 2000
    auto_promote: bool = False
    auto_promote_lag_threshold: int = 10
    metrics_port: int = 9090


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _int_setting(key: str, fallback: int) -> int:
    try:
        return get_env_int(key, fallback)
    except ConfigError as exc:
        raise ConfigError(f"{key}: {exc}") from exc


def load(env_file: str | None = None) -> Config:
    """Read the .env file (if present), then the environment; real variables win."""
    load_dotenv(env_file or ".env", override=False)

    role = get_env("NODE_ROLE", "broker")
    try:
        node_role = NodeRole(role)
    except ValueError:
        raise ConfigError(
            f"NODE_ROLE must be 'controller' or 'broker', got {_quote(role)}"
        ) from None

    controller_host = get_env("CONTROLLER_HOST", "localhost")
    controller_port = _int_setting("CONTROLLER_PORT", 8080)
    peer_nodes = parse_peer_nodes(get_env("PEER_NODES", ""))
    node_id = get_env("NODE_ID", "node-1")
    http_port = _int_setting("HTTP_PORT", 8080)
    grpc_port = _int_setting("GRPC_PORT", 8082)
    raft_port = _int_setting("RAFT_PORT", 8081)
    election_timeout = _int_setting("RAFT_ELECTION_TIMEOUT_MS", 1000)
    heartbeat = _int_setting("CONTROLLER_HEART_BEAT_INTERVAL", 100)

    log_level = get_env("LOG_LEVEL", "info")
    log_format = get_env("LOG_FORMAT", "text")
    if log_format not in ("text", "json"):
        raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {_quote(log_format)}")
    kill_port = get_env_bool("KILL_PORT_ON_START", True)

    cluster_mode = get_env("CLUSTER_MODE", "static")
    if cluster_mode not in ("static", "dynamic"):
        raise ConfigError(
            f"CLUSTER_MODE must be 'static' or 'dynamic', got {_quote(cluster_mode)}"
        )
    bootstrap_servers = parse_peer_nodes(get_env("BOOTSTRAP_SERVERS", ""))

    join_max_retries = _int_setting("JOIN_MAX_RETRIES", 10)
    join_retry_interval = _int_setting("JOIN_RETRY_INTERVAL_MS", 2000)

    auto_promote = get_env_bool("AUTO_PROMOTE", False)
    lag_threshold = _int_setting("AUTO_PROMOTE_LAG_THRESHOLD", 10)
    metrics_port = _int_setting("METRICS_PORT", 9090)

    return Config(
        node_role=node_role,
        controller_host=controller_host,
        controller_port=controller_port,
        peer_nodes=peer_nodes,
        node_id=node_id,
        http_port=http_port,
        grpc_port=grpc_port,
        raft_port=raft_port,
        raft_election_timeout_ms=election_timeout,
        raft_heartbeat_ms=heartbeat,
        log_level=log_level,
        log_format=log_format,
        kill_port_on_start=kill_port,
        cluster_mode=cluster_mode,
        bootstrap_servers=bootstrap_servers,
        join_max_retries=join_max_retries,
        join_retry_interval_ms=join_retry_interval,
        auto_promote=auto_promote,
        auto_promote_lag_threshold=lag_threshold,
        metrics_port=metrics_port,
    )


def parse_peer_nodes(raw: str) -> list[str]:
    """Split a comma-separated address list, trimming blanks and dropping empties."""
    return [addr for addr in (part.strip() for part in raw.split(",")) if addr]


def get_env(key: str, fallback: str) -> str:
    """Return the variable's value, or the fallback when it is unset."""
    return os.environ.get(key, fallback)


def get_env_bool(key: str, fallback: bool) -> bool:
    """Any set value other than false/0/no counts as true."""
    value = os.environ.get(key)
    if value is None:
        return fallback
    return value.strip().lower() not in ("false", "0", "no")


def get_env_int(key: str, fallback: int) -> int:
    """Return the variable as an integer, or the fallback when it is unset."""
    value = os.environ.get(key)
    if value is None:
        return fallback
    if not _INTEGER.fullmatch(value):
        raise ConfigError(f"expected integer, got {_quote(value)}")
    return int(value)