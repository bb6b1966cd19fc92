"""Raft controller cluster with dynamic membership, an HTTP admin API and metrics."""

__version__ = "0.1.0"