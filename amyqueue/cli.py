"""Command-line tool for managing an AmyQueue cluster.

Planned commands: topic, produce, consume, broker, cluster and group.
"""

from __future__ import annotations

import argparse
import sys
from typing import Sequence

VERSION = "dev"
BUILD_TIME = "unknown"

COMMANDS = ("topic", "produce", "consume", "broker", "cluster", "group")


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="amyqueue-cli",
        description="Manage an AmyQueue cluster.",
    )
    parser.add_argument("command", nargs="?", choices=COMMANDS, help="command to run")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="arguments for the command")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Parse the command line and report the tool's status; returns the exit status."""
    _parser().parse_args(argv)
    lines = [
        f"AmyQueue CLI v{VERSION} (built: {BUILD_TIME})",
        "",
        "CLI tool - coming soon!",
        "Check docs/ROADMAP.md for implementation status",
    ]
    sys.stdout.write("\n".join(lines) + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())