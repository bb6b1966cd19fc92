"""Cluster membership: who votes, who observes, and membership log commands."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, replace
from enum import Enum


class ClusterMode(str, Enum):
    """How the voter set is managed."""

    STATIC = "static"
    DYNAMIC = "dynamic"

    def __str__(self) -> str:
        return self.value


class MembershipAction(str, Enum):
    """The operation carried by a membership log entry."""

    ADD_VOTER = "add_voter"
    REMOVE_VOTER = "remove_voter"

    def __str__(self) -> str:
        return self.value


class NodeState(str, Enum):
    """Whether a member votes or only replicates."""

    OBSERVER = "observer"
    VOTER = "voter"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MembershipChange:
    """A membership change carried in a log entry's command bytes."""

    action: MembershipAction
    node_id: str
    addr: str = ""


@dataclass
class Member:
    """One node in the cluster view."""

    id: str
    addr: str
    state: NodeState


class VoterSet:
    """The authoritative, thread-safe list of voters and observers."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._members: dict[str, Member] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._members)

    def __contains__(self, node_id: object) -> bool:
        with self._lock:
            return node_id in self._members

    def add_voter(self, node_id: str, addr: str) -> None:
        """Promote a node to voter, inserting it if it is new."""
        with self._lock:
            self._members[node_id] = Member(node_id, addr, NodeState.VOTER)

    def add_observer(self, node_id: str, addr: str) -> None:
        """Register a node as observer; an existing member is left as it is."""
        with self._lock:
            self._members.setdefault(node_id, Member(node_id, addr, NodeState.OBSERVER))

    def remove(self, node_id: str) -> None:
        """Drop a node from the set; unknown ids are ignored."""
        with self._lock:
            self._members.pop(node_id, None)

    def voters(self, self_id: str) -> list[str]:
        """Addresses of all voters except self_id."""
        with self._lock:
            return [
                m.addr
                for node_id, m in self._members.items()
                if node_id != self_id and m.state is NodeState.VOTER
            ]

    def quorum_size(self) -> int:
        """Minimum votes, self included, that form a majority of voters."""
        with self._lock:
            total = sum(1 for m in self._members.values() if m.state is NodeState.VOTER)
        return total // 2 + 1

    def members(self) -> list[Member]:
        """A snapshot of all members, voters and observers alike."""
        with self._lock:
            return [replace(m) for m in self._members.values()]

    def is_voter(self, node_id: str) -> bool:
        with self._lock:
            member = self._members.get(node_id)
            return member is not None and member.state is NodeState.VOTER

    def all_peer_addrs(self, self_id: str) -> list[str]:
        """Addresses of every member except self_id that has an address."""
        with self._lock:
            return [
                m.addr
                for node_id, m in self._members.items()
                if node_id != self_id and m.addr
            ]

    def addr_of(self, node_id: str) -> str:
        """The member's Raft address, or an empty string if unknown."""
        with self._lock:
            member = self._members.get(node_id)
            return member.addr if member is not None else ""


def encode_membership_change(change: MembershipChange) -> bytes:
    """Serialise a change into the bytes stored in a log entry's command."""
    payload = {"Action": change.action.value, "NodeID": change.node_id, "Addr": change.addr}
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode_membership_change(data: bytes) -> MembershipChange:
    """Parse command bytes back into a change; raises ValueError if malformed."""
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(f"invalid membership change: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("invalid membership change: expected a JSON object")
    fields = {str(key).lower(): value for key, value in payload.items()}
    action = fields.get("action", "")
    node_id = fields.get("nodeid", "")
    addr = fields.get("addr", "")
    if not all(isinstance(v, str) for v in (action, node_id, addr)):
        raise ValueError("invalid membership change: fields must be strings")
    try:
        parsed_action = MembershipAction(action)
    except ValueError:
        raise ValueError(f"unknown membership action {action!r}") from None
    return MembershipChange(parsed_action, node_id, addr)