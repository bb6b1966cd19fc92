"""Broker process entry point: loads and reports its configuration."""

from __future__ import annotations

import sys
from typing import Sequence

from amyqueue.config import ConfigError, load

VERSION = "dev"
BUILD_TIME = "unknown"


def main(argv: Sequence[str] | None = None) -> int:
    """Print the broker's configuration; returns the exit status."""
    print(f"AmyQueue Broker v{VERSION} (built: {BUILD_TIME})")

    try:
        cfg = load("")
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 1

    role = getattr(cfg.node_role, "value", cfg.node_role)
    peers = " ".join(cfg.peer_nodes or [])
    print(f"Node ID      : {cfg.node_id}")
    print(f"Role         : {role}")
    print(f"Controller   : {cfg.controller_host}:{cfg.controller_port}")
    print(f"Peer nodes   : [{peers}]")
    print(f"HTTP port    : {cfg.http_port}")
    print(f"gRPC port    : {cfg.grpc_port}")
    print(f"Log level    : {cfg.log_level}")
    print()
    print("Starting broker node...")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())