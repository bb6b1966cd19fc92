"""Raft wire messages, service interfaces and their JSON wire encoding."""

import base64
import dataclasses
import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import (
    Any,
    Callable,
    Protocol,
    TypeVar,
    get_args,
    get_origin,
    runtime_checkable,
)

from amyqueue.membership import Member, NodeState
from amyqueue.raftlog import CommandType, LogEntry

_T = TypeVar("_T")


class State(IntEnum):
    """The role a Raft node currently plays."""

    FOLLOWER = 0
    CANDIDATE = 1
    LEADER = 2

    def __str__(self) -> str:
        return self.name.lower()


@dataclass
class ObserverJoinRequest:
    """Sent by a new node asking the leader to replicate to it as an observer."""

    node_id: str = ""
    addr: str = ""


@dataclass
class ObserverJoinResponse:
    """Outcome of a join; carries a redirect hint when sent to a non-leader."""

    success: bool = False
    leader_id: str = ""
    leader_addr: str = ""
    err: str = ""


@dataclass
class AddVoterRequest:
    """Admin request to promote an observer to voter."""

    node_id: str = ""
    addr: str = ""


@dataclass
class AddVoterResponse:
    success: bool = False
    err: str = ""


@dataclass
class RemoveVoterRequest:
    """Admin request to remove a voter from the set."""

    node_id: str = ""


@dataclass
class RemoveVoterResponse:
    success: bool = False
    err: str = ""


@dataclass
class VoteRequest:
    term: int = 0
    candidate_id: str = ""
    last_log_index: int = 0
    last_log_term: int = 0


@dataclass
class VoteResponse:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesRequest:
    """Replication request; with no entries it doubles as a heartbeat."""

    term: int = 0
    leader_id: str = ""
    leader_addr: str = ""
    prev_log_index: int = 0
    prev_log_term: int = 0
    entries: list[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesResponse:
    term: int = 0
    success: bool = False
    # next index the follower expects, letting the leader back off quickly
    next_index: int = 0


@dataclass
class ClusterInfoRequest:
    """Bootstrap discovery request; may be sent to any node."""


@dataclass
class ClusterInfoResponse:
    leader_id: str = ""
    leader_addr: str = ""
    members: list[Member] = field(default_factory=list)


@dataclass
class ClusterStatusResponse:
    leader_id: str = ""
    leader_addr: str = ""
    term: int = 0
    members: list[Member] = field(default_factory=list)


@dataclass
class MetricsSnapshot:
    """A point-in-time copy of a node's state for metrics collection."""

    node_id: str = ""
    state: State = State.FOLLOWER
    term: int = 0
    commit_index: int = 0
    last_applied: int = 0
    leader_id: str = ""
    members: list[Member] = field(default_factory=list)
    # leader only: observer id -> entries behind the leader
    observer_lag: dict[str, int] = field(default_factory=dict)
    elections_started: int = 0
    leader_changes: int = 0
    # peer address -> failed AppendEntries count
    heartbeat_failures: dict[str, int] = field(default_factory=dict)


@dataclass
class Handlers:
    """Callbacks the transport invokes when an inbound RPC arrives."""

    handle_vote_request: Callable[[VoteRequest], VoteResponse]
    handle_append_entries: Callable[[AppendEntriesRequest], AppendEntriesResponse]
    handle_observer_join: Callable[[ObserverJoinRequest], ObserverJoinResponse]
    handle_cluster_info: Callable[[ClusterInfoRequest], ClusterInfoResponse]


@runtime_checkable
class Transport(Protocol):
    """The network seam of the Raft core."""

    def start(self, handlers: Handlers) -> None:
        """Begin listening and route inbound RPCs to the handlers."""

    def send_vote_request(
        self, addr: str, req: VoteRequest, timeout: float | None
    ) -> VoteResponse:
        """Send a RequestVote RPC to the peer at addr."""

    def send_append_entries(
        self, addr: str, req: AppendEntriesRequest, timeout: float | None
    ) -> AppendEntriesResponse:
        """Send an AppendEntries RPC to the peer at addr."""

    def send_observer_join(
        self, addr: str, req: ObserverJoinRequest, timeout: float | None
    ) -> ObserverJoinResponse:
        """Ask the node at addr to register the sender as an observer."""

    def send_cluster_info(
        self, addr: str, req: ClusterInfoRequest, timeout: float | None
    ) -> ClusterInfoResponse:
        """Ask any node for the current leader and member list."""

    def close(self) -> None:
        """Shut the transport down."""


@runtime_checkable
class AdminService(Protocol):
    """Cluster membership operations, independent of any wire protocol."""

    def add_voter(self, req: AddVoterRequest) -> AddVoterResponse:
        """Promote an observer to voter through the Raft log."""

    def remove_voter(self, req: RemoveVoterRequest) -> RemoveVoterResponse:
        """Remove a voter through the Raft log."""

    def join_as_observer(self, req: ObserverJoinRequest) -> ObserverJoinResponse:
        """Register a new node as an observer."""

    def cluster_status(self) -> ClusterStatusResponse:
        """The current membership snapshot."""


@runtime_checkable
class MetricsSource(Protocol):
    """A read-only view of a node's runtime state."""

    def metrics_snapshot(self) -> MetricsSnapshot:
        """A point-in-time copy of the node's state."""


# Simple annotation names that may appear as text on dataclasses defined
# in modules using postponed annotations.
_NAMED_TYPES: dict[str, Any] = {
    "int": int,
    "str": str,
    "bytes": bytes,
    "bool": bool,
    "float": float,
    "CommandType": CommandType,
    "NodeState": NodeState,
    "State": State,
    "LogEntry": LogEntry,
    "Member": Member,
}


def _field_type(f: dataclasses.Field) -> Any:
    tp = f.type
    if isinstance(tp, str):
        try:
            return _NAMED_TYPES[tp.strip()]
        except KeyError:
            raise TypeError(f"unsupported wire type {tp!r} for field {f.name!r}") from None
    return tp


def _encode(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return _encode(value.value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _encode(item) for key, item in value.items()}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise TypeError(f"cannot encode {type(value).__name__} for the wire")


def _decode_dataclass(cls: type[_T], payload: Any) -> _T:
    if not isinstance(payload, dict):
        raise ValueError(f"expected an object for {cls.__name__}, got {type(payload).__name__}")
    kwargs = {
        f.name: _decode(_field_type(f), payload[f.name])
        for f in dataclasses.fields(cls)
        if f.init and f.name in payload
    }
    return cls(**kwargs)


def _decode(tp: Any, value: Any) -> Any:
    origin = get_origin(tp)
    if origin is list:
        (item_tp,) = get_args(tp)
        if not isinstance(value, list):
            raise ValueError(f"expected a list, got {type(value).__name__}")
        return [_decode(item_tp, item) for item in value]
    if origin is dict:
        key_tp, val_tp = get_args(tp)
        if not isinstance(value, dict):
            raise ValueError(f"expected an object, got {type(value).__name__}")
        return {_decode(key_tp, k): _decode(val_tp, v) for k, v in value.items()}
    if isinstance(tp, type):
        if dataclasses.is_dataclass(tp):
            return _decode_dataclass(tp, value)
        if issubclass(tp, Enum):
            return tp(value)
        if tp is bytes:
            if not isinstance(value, str):
                raise ValueError("expected base64 text for bytes")
            return base64.b64decode(value, validate=True)
        if tp is bool:
            if not isinstance(value, bool):
                raise ValueError(f"expected a boolean, got {value!r}")
            return value
        if tp is int:
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"expected an integer, got {value!r}")
            return value
        if tp is float:
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValueError(f"expected a number, got {value!r}")
            return float(value)
        if tp is str:
            if not isinstance(value, str):
                raise ValueError(f"expected a string, got {value!r}")
            return value
    raise TypeError(f"unsupported wire type {tp!r}")


def to_wire(message: Any) -> bytes:
    """Encode a message dataclass as compact UTF-8 JSON."""
    if not dataclasses.is_dataclass(message) or isinstance(message, type):
        raise TypeError(f"cannot encode {type(message).__name__}: not a message")
    return json.dumps(_encode(message), separators=(",", ":")).encode("utf-8")


def from_wire(cls: type[_T], data: bytes | str) -> _T:
    """Decode wire bytes into an instance of cls; missing fields keep their defaults."""
    if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
        raise TypeError(f"{cls!r} is not a message type")
    payload = json.loads(data)
    return _decode_dataclass(cls, payload)