"""A Raft participant: election and heartbeat loops plus membership admin."""

from __future__ import annotations

import logging
import queue
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from amyqueue.membership import (
    ClusterMode,
    MembershipAction,
    MembershipChange,
    NodeState,
    VoterSet,
    encode_membership_change,
)
from amyqueue.messages import (
    AddVoterRequest,
    AddVoterResponse,
    AppendEntriesRequest,
    ClusterInfoRequest,
    ClusterInfoResponse,
    ClusterStatusResponse,
    Handlers,
    MetricsSnapshot,
    ObserverJoinRequest,
    ObserverJoinResponse,
    RemoveVoterRequest,
    RemoveVoterResponse,
    State,
    Transport,
    VoteRequest,
)
from amyqueue.raftlog import CommandType, LogEntry, RaftLog
from amyqueue.replication import RaftState

NOT_LEADER = "not the leader"

_VOTE_TIMEOUT = 0.3
_APPEND_TIMEOUT = 0.2
_POLL = 0.01


@dataclass
class RaftConfig:
    """Tunable knobs for a Raft node."""

    id: str
    addr: str = ""
    peers: list[str] = field(default_factory=list)
    mode: ClusterMode = ClusterMode.STATIC
    election_timeout_ms: int = 1000
    heartbeat_ms: int = 100
    auto_promote: bool = False
    auto_promote_lag_threshold: int = 10

    def __post_init__(self) -> None:
        self.mode = ClusterMode(self.mode) if self.mode else ClusterMode.STATIC
        if self.heartbeat_ms <= 0:
            raise ValueError(f"heartbeat interval must be positive, got {self.heartbeat_ms}")


class Node:
    """A single Raft participant driving elections, heartbeats and replication.

    In static mode the voter set is seeded from the peers and never changes;
    in dynamic mode it changes only when a membership log entry commits.
    """

    def __init__(
        self,
        cfg: RaftConfig,
        transport: Transport,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
    ) -> None:
        self.cfg = cfg
        self.transport = transport
        base = logger if logger is not None else logging.getLogger(__name__)
        self.logger: Any = logging.LoggerAdapter(base, {"node": cfg.id})

        voters = VoterSet()
        # self is always a voter; its own address is never needed for outbound RPCs
        voters.add_voter(cfg.id, "")
        for addr in cfg.peers:
            voters.add_voter(addr, addr)

        self.raft = RaftState(cfg.id, voters, RaftLog(), self.logger)
        self.commit_timeout = 5.0

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def voters(self) -> VoterSet:
        return self.raft.voters

    @property
    def log(self) -> RaftLog:
        return self.raft.log

    # ─── lifecycle ───────────────────────────────────────────────────────────

    def start(self) -> None:
        """Register the RPC handlers with the transport and start the event loop."""
        handlers = Handlers(
            handle_vote_request=self.raft.handle_vote_request,
            handle_append_entries=self.raft.handle_append_entries,
            handle_observer_join=self.join_as_observer,
            handle_cluster_info=self._handle_cluster_info,
        )
        self.transport.start(handlers)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"raft-{self.cfg.id}", daemon=True)
        self._thread.start()
        self.logger.info("raft node started mode=%s peers=%s", self.cfg.mode, self.cfg.peers)

    def stop(self) -> None:
        """Stop the event loop and close the transport."""
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()
        self.transport.close()
        self.logger.info("raft node stopped")

    def current_state(self) -> State:
        with self.raft.lock:
            return self.raft.state

    def term(self) -> int:
        with self.raft.lock:
            return self.raft.current_term

    # ─── admin service ───────────────────────────────────────────────────────

    def cluster_status(self) -> ClusterStatusResponse:
        with self.raft.lock:
            return ClusterStatusResponse(
                leader_id=self.raft.leader_id,
                leader_addr=self.raft.leader_addr,
                term=self.raft.current_term,
                members=self.voters.members(),
            )

    def metrics_snapshot(self) -> MetricsSnapshot:
        """A point-in-time copy of the node's state for metrics collection."""
        with self.raft.lock:
            return MetricsSnapshot(
                node_id=self.cfg.id,
                state=self.raft.state,
                term=self.raft.current_term,
                commit_index=self.raft.commit_index,
                last_applied=self.raft.last_applied,
                leader_id=self.raft.leader_id,
                members=self.voters.members(),
                observer_lag=self.raft.observer_lag(),
                elections_started=self.raft.elections_started,
                leader_changes=self.raft.leader_changes,
                heartbeat_failures=dict(self.raft.heartbeat_failures),
            )

    def _handle_cluster_info(self, _req: ClusterInfoRequest) -> ClusterInfoResponse:
        with self.raft.lock:
            return ClusterInfoResponse(
                leader_id=self.raft.leader_id,
                leader_addr=self.raft.leader_addr,
                members=self.voters.members(),
            )

    def join_as_observer(self, req: ObserverJoinRequest) -> ObserverJoinResponse:
        """Register a new node as observer; non-leaders answer with a redirect hint."""
        with self.raft.lock:
            state = self.raft.state
            leader_id = self.raft.leader_id
            leader_addr = self.raft.leader_addr

        if state is not State.LEADER:
            return ObserverJoinResponse(leader_id=leader_id, leader_addr=leader_addr, err=NOT_LEADER)
        if self.cfg.mode is ClusterMode.STATIC:
            return ObserverJoinResponse(err="cluster is in static mode, dynamic join not allowed")

        self.voters.add_observer(req.node_id, req.addr)
        with self.raft.lock:
            self.raft.next_index[req.addr] = self.log.last_index() + 1
            self.raft.match_index[req.addr] = 0

        self.logger.info("observer joined node_id=%s addr=%s", req.node_id, req.addr)
        return ObserverJoinResponse(success=True)

    def _admin_refusal(self) -> str:
        with self.raft.lock:
            state = self.raft.state
            leader_id = self.raft.leader_id
        if state is not State.LEADER:
            return f"{NOT_LEADER}, leader is {leader_id}"
        if self.cfg.mode is ClusterMode.STATIC:
            return "cluster is in static mode"
        return ""

    def add_voter(self, req: AddVoterRequest) -> AddVoterResponse:
        """Promote an observer to voter; blocks until the change commits."""
        refusal = self._admin_refusal()
        if refusal:
            return AddVoterResponse(err=refusal)
        cmd = encode_membership_change(
            MembershipChange(MembershipAction.ADD_VOTER, req.node_id, req.addr)
        )
        try:
            self._append_and_wait_commit(CommandType.MEMBERSHIP, cmd)
        except TimeoutError as exc:
            return AddVoterResponse(err=str(exc))
        return AddVoterResponse(success=True)

    def remove_voter(self, req: RemoveVoterRequest) -> RemoveVoterResponse:
        """Remove a voter; blocks until the change commits."""
        refusal = self._admin_refusal()
        if refusal:
            return RemoveVoterResponse(err=refusal)
        cmd = encode_membership_change(
            MembershipChange(MembershipAction.REMOVE_VOTER, req.node_id)
        )
        try:
            self._append_and_wait_commit(CommandType.MEMBERSHIP, cmd)
        except TimeoutError as exc:
            return RemoveVoterResponse(err=str(exc))
        return RemoveVoterResponse(success=True)

    def _append_and_wait_commit(self, cmd_type: CommandType, cmd: bytes) -> None:
        with self.raft.lock:
            idx = self.log.last_index() + 1
            self.log.append_one(LogEntry(idx, self.raft.current_term, cmd_type, cmd))

        deadline = time.monotonic() + self.commit_timeout
        while time.monotonic() < deadline:
            with self.raft.lock:
                if self.raft.commit_index >= idx:
                    return
            time.sleep(_POLL)
        raise TimeoutError("timeout waiting for log entry to commit")

    # ─── event loop ──────────────────────────────────────────────────────────

    def _run(self) -> None:
        while not self._stop.is_set():
            state = self.current_state()
            if state is State.FOLLOWER:
                self._run_follower()
            elif state is State.CANDIDATE:
                self._run_candidate()
            else:
                self._run_leader()

    def _run_follower(self) -> None:
        timeout = self.election_timeout()
        self.logger.info("entering follower state term=%d timeout=%.3fs", self.term(), timeout)
        deadline = time.monotonic() + timeout
        heartbeat = self.raft.heartbeat_received
        while not self._stop.is_set():
            remaining = deadline - time.monotonic()
            if heartbeat.wait(max(0.0, min(remaining, _POLL))):
                heartbeat.clear()
                deadline = time.monotonic() + self.election_timeout()
                continue
            if time.monotonic() < deadline:
                continue
            # only voters call elections; observers wait indefinitely
            if not self.voters.is_voter(self.cfg.id):
                deadline = time.monotonic() + self.election_timeout()
                continue
            self.logger.info("election timeout, becoming candidate")
            with self.raft.lock:
                self.raft.state = State.CANDIDATE
            return

    def _run_candidate(self) -> None:
        with self.raft.lock:
            self.raft.current_term += 1
            self.raft.voted_for = self.cfg.id
            self.raft.elections_started += 1
            term = self.raft.current_term

        self.logger.info("starting election term=%d", term)

        votes = 1
        needed = self._quorum()
        peers = self.voters.voters(self.cfg.id)
        results: queue.Queue[bool] = queue.Queue()
        req = VoteRequest(
            term=term,
            candidate_id=self.cfg.id,
            last_log_index=self.log.last_index(),
            last_log_term=self.log.last_term(),
        )
        for peer in peers:
            threading.Thread(
                target=self._request_vote, args=(peer, req, results), daemon=True
            ).start()

        deadline = time.monotonic() + self.election_timeout()
        while not self._stop.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.info("election timed out, restarting term=%d", term)
                return
            if self.raft.heartbeat_received.is_set():
                self.raft.heartbeat_received.clear()
                with self.raft.lock:
                    self.raft.state = State.FOLLOWER
                return
            try:
                granted = results.get(timeout=min(remaining, _POLL))
            except queue.Empty:
                continue
            if granted:
                votes += 1
                if votes >= needed:
                    self._become_leader()
                    return

    def _request_vote(self, addr: str, req: VoteRequest, results: queue.Queue[bool]) -> None:
        try:
            resp = self.transport.send_vote_request(addr, req, _VOTE_TIMEOUT)
        except Exception:
            results.put(False)
            return
        with self.raft.lock:
            if resp.term > self.raft.current_term:
                self.raft.current_term = resp.term
                self.raft.state = State.FOLLOWER
                self.raft.voted_for = ""
        results.put(resp.vote_granted)

    def _become_leader(self) -> None:
        with self.raft.lock:
            self.raft.state = State.LEADER
            self.raft.leader_id = self.cfg.id
            self.raft.leader_addr = self.cfg.addr
            next_idx = self.log.last_index() + 1
            for addr in self.voters.voters(self.cfg.id):
                self.raft.next_index[addr] = next_idx
                self.raft.match_index[addr] = 0
            # fresh slate: every observer is evaluated again
            self.raft.pending_promotion = set()
            term = self.raft.current_term
        self.logger.info("became leader term=%d addr=%s", term, self.cfg.addr)

    def _run_leader(self) -> None:
        interval = self.cfg.heartbeat_ms / 1000
        self.broadcast_heartbeat()
        while not self._stop.wait(interval):
            self.broadcast_heartbeat()
            if self.current_state() is not State.LEADER:
                return
            self.maybe_promote_observers()

    # ─── replication ─────────────────────────────────────────────────────────

    def broadcast_heartbeat(self) -> list[threading.Thread]:
        """Send AppendEntries to every voter and observer; returns the sender threads."""
        with self.raft.lock:
            term = self.raft.current_term
            commit_index = self.raft.commit_index

        threads = []
        for addr in self.voters.all_peer_addrs(self.cfg.id):
            thread = threading.Thread(
                target=self._replicate_to, args=(addr, term, commit_index), daemon=True
            )
            thread.start()
            threads.append(thread)
        return threads

    def _replicate_to(self, addr: str, term: int, commit_index: int) -> None:
        with self.raft.lock:
            next_idx = self.raft.next_index.get(addr, 0)
            if next_idx == 0:
                next_idx = self.log.last_index() + 1
                self.raft.next_index[addr] = next_idx

        prev_index = next_idx - 1
        prev_entry = self.log.entry(prev_index)
        req = AppendEntriesRequest(
            term=term,
            leader_id=self.cfg.id,
            leader_addr=self.cfg.addr,
            prev_log_index=prev_index,
            prev_log_term=prev_entry.term if prev_entry is not None else 0,
            entries=self.log.entries_from(next_idx),
            leader_commit=commit_index,
        )
        self.logger.debug(
            "sending heartbeat to=%s term=%d commit_index=%d prev_log_index=%d entries=%d",
            addr,
            req.term,
            req.leader_commit,
            req.prev_log_index,
            len(req.entries),
        )
        try:
            resp = self.transport.send_append_entries(addr, req, _APPEND_TIMEOUT)
        except Exception as exc:
            self.logger.debug("heartbeat failed to=%s err=%s", addr, exc)
            self.raft.record_append_failure(addr)
            return
        self.raft.record_append_response(addr, req, resp)

    def maybe_promote_observers(self) -> list[threading.Thread]:
        """Put caught-up observers forward for promotion; returns promotion threads."""
        if self.cfg.mode is not ClusterMode.DYNAMIC:
            return []
        with self.raft.lock:
            if self.raft.state is not State.LEADER:
                return []
            last_idx = self.log.last_index()
        threshold = self.cfg.auto_promote_lag_threshold
        if threshold <= 0:
            threshold = 10

        threads = []
        for member in self.voters.members():
            if member.state is not NodeState.OBSERVER:
                continue
            with self.raft.lock:
                match = self.raft.match_index.get(member.addr, 0)
                already_pending = member.id in self.raft.pending_promotion
            lag = max(0, last_idx - match)
            if lag > threshold:
                continue

            if not self.cfg.auto_promote:
                if not already_pending:
                    self.logger.info(
                        "observer caught up, safe to promote to voter node_id=%s addr=%s "
                        'lag=%d hint=POST /cluster/voters {"node_id":"%s","addr":"%s"}',
                        member.id,
                        member.addr,
                        lag,
                        member.id,
                        member.addr,
                    )
                    with self.raft.lock:
                        self.raft.pending_promotion.add(member.id)
                continue

            if already_pending:
                continue
            with self.raft.lock:
                self.raft.pending_promotion.add(member.id)
            self.logger.info(
                "auto-promoting observer to voter node_id=%s addr=%s lag=%d",
                member.id,
                member.addr,
                lag,
            )
            thread = threading.Thread(
                target=self._auto_promote, args=(member.id, member.addr), daemon=True
            )
            thread.start()
            threads.append(thread)
        return threads

    def _auto_promote(self, node_id: str, addr: str) -> None:
        resp = self.add_voter(AddVoterRequest(node_id=node_id, addr=addr))
        if resp.err:
            self.logger.warning(
                "auto-promote failed, will retry next heartbeat node_id=%s err=%s",
                node_id,
                resp.err,
            )
            with self.raft.lock:
                self.raft.pending_promotion.discard(node_id)

    # ─── helpers ─────────────────────────────────────────────────────────────

    def _quorum(self) -> int:
        return self.voters.quorum_size()

    def election_timeout(self) -> float:
        """A randomised election timeout in seconds: base plus up to half again."""
        base = self.cfg.election_timeout_ms if self.cfg.election_timeout_ms > 0 else 1000
        half = base // 2
        jitter = random.randrange(half) if half > 0 else 0
        return (base + jitter) / 1000