"""The Raft consensus state of one node: RPC handling, commit and apply rules."""

from __future__ import annotations

import logging
import threading

from amyqueue.membership import (
    MembershipAction,
    NodeState,
    VoterSet,
    decode_membership_change,
)
from amyqueue.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    State,
    VoteRequest,
    VoteResponse,
)
from amyqueue.raftlog import CommandType, LogEntry, RaftLog


class RaftState:
    """Term, vote, log and replication progress of a single Raft participant.

    Every public method takes ``lock`` itself; the lock is re-entrant, so a
    caller that already holds it may call them freely.
    """

    def __init__(
        self,
        node_id: str,
        voters: VoterSet | None = None,
        log: RaftLog | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.node_id = node_id
        self.voters = voters if voters is not None else VoterSet()
        self.log = log if log is not None else RaftLog()
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self.lock = threading.RLock()
        self.state = State.FOLLOWER
        self.current_term = 0
        self.voted_for = ""
        self.commit_index = 0
        self.last_applied = 0
        self.leader_id = ""
        self.leader_addr = ""

        # leader only: replication progress per peer address
        self.next_index: dict[str, int] = {}
        self.match_index: dict[str, int] = {}
        # leader only: observer ids already put forward for promotion
        self.pending_promotion: set[str] = set()

        # cumulative counters for metrics
        self.elections_started = 0
        self.leader_changes = 0
        self.heartbeat_failures: dict[str, int] = {}

        # set whenever a valid AppendEntries arrives from a leader
        self.heartbeat_received = threading.Event()

    # ─── inbound RPCs ────────────────────────────────────────────────────────

    def handle_vote_request(self, req: VoteRequest) -> VoteResponse:
        """Decide whether to grant a vote to the requesting candidate."""
        with self.lock:
            resp = VoteResponse(term=self.current_term)
            if req.term < self.current_term:
                return resp
            if req.term > self.current_term:
                self.current_term = req.term
                self.state = State.FOLLOWER
                self.voted_for = ""

            already_voted = self.voted_for not in ("", req.candidate_id)
            last_term = self.log.last_term()
            log_ok = req.last_log_term > last_term or (
                req.last_log_term == last_term and req.last_log_index >= self.log.last_index()
            )

            if not already_voted and log_ok:
                self.voted_for = req.candidate_id
                resp.vote_granted = True
                resp.term = self.current_term
                self.logger.info("granted vote to %s for term %d", req.candidate_id, req.term)
            return resp

    def handle_append_entries(self, req: AppendEntriesRequest) -> AppendEntriesResponse:
        """Accept a heartbeat or replicated entries from the leader."""
        with self.lock:
            resp = AppendEntriesResponse(term=self.current_term)
            if req.term < self.current_term:
                return resp
            if req.term > self.current_term:
                self.current_term = req.term
                self.voted_for = ""
            if req.leader_id != self.leader_id:
                self.leader_changes += 1
            self.state = State.FOLLOWER
            self.leader_id = req.leader_id
            self.leader_addr = req.leader_addr
            self.heartbeat_received.set()

            self.logger.debug(
                "received heartbeat from %s term=%d leader_commit=%d prev_log_index=%d "
                "entries=%d our_log_index=%d",
                req.leader_id,
                req.term,
                req.leader_commit,
                req.prev_log_index,
                len(req.entries),
                self.log.last_index(),
            )

            if req.prev_log_index > 0:
                prev = self.log.entry(req.prev_log_index)
                if prev is None or prev.term != req.prev_log_term:
                    resp.next_index = self.log.last_index() + 1
                    return resp

            if req.entries:
                self.log.append(req.prev_log_index, req.entries)

            if req.leader_commit > self.commit_index:
                self.commit_index = min(req.leader_commit, self.log.last_index())
                self.apply_committed()

            resp.success = True
            resp.term = self.current_term
            return resp

    # ─── leader-side bookkeeping ─────────────────────────────────────────────

    def record_append_response(
        self, addr: str, req: AppendEntriesRequest, resp: AppendEntriesResponse
    ) -> None:
        """Update replication progress for addr from its AppendEntries reply."""
        with self.lock:
            if resp.term > self.current_term:
                self.current_term = resp.term
                self.state = State.FOLLOWER
                self.voted_for = ""
                return
            if resp.success:
                matched = req.prev_log_index + len(req.entries)
                self.match_index[addr] = matched
                self.next_index[addr] = matched + 1
                self.advance_commit_index()
                return
            current_next = self.next_index.get(addr, 0)
            if 0 < resp.next_index < current_next:
                self.next_index[addr] = resp.next_index
            elif current_next > 1:
                self.next_index[addr] = current_next - 1

    def record_append_failure(self, addr: str) -> None:
        """Count one failed AppendEntries RPC to addr."""
        with self.lock:
            self.heartbeat_failures[addr] = self.heartbeat_failures.get(addr, 0) + 1

    def advance_commit_index(self) -> None:
        """Commit the newest current-term entry that a quorum of voters holds."""
        with self.lock:
            quorum = self.voters.quorum_size()
            members = self.voters.members()
            for idx in range(self.log.last_index(), self.commit_index, -1):
                entry = self.log.entry(idx)
                if entry is None or entry.term != self.current_term:
                    continue
                count = 1 + sum(
                    1
                    for m in members
                    if m.id != self.node_id
                    and m.state is NodeState.VOTER
                    and self.match_index.get(m.addr, 0) >= idx
                )
                if count >= quorum:
                    self.commit_index = idx
                    self.logger.info("committed log index %d", idx)
                    self.apply_committed()
                    break

    def apply_committed(self) -> list[LogEntry]:
        """Apply every entry up to the commit index; returns the entries applied."""
        applied: list[LogEntry] = []
        with self.lock:
            while self.last_applied < self.commit_index:
                self.last_applied += 1
                entry = self.log.entry(self.last_applied)
                if entry is None:
                    continue
                if entry.type is CommandType.MEMBERSHIP:
                    self.apply_membership_entry(entry)
                applied.append(entry)
        return applied

    def apply_membership_entry(self, entry: LogEntry) -> None:
        """Apply a committed membership change to the voter set."""
        try:
            change = decode_membership_change(entry.command)
        except ValueError as exc:
            self.logger.error("failed to decode membership change: %s", exc)
            return

        with self.lock:
            if change.action is MembershipAction.ADD_VOTER:
                self.voters.add_voter(change.node_id, change.addr)
                self.logger.info("membership: voter added %s at %s", change.node_id, change.addr)
            elif change.action is MembershipAction.REMOVE_VOTER:
                self.voters.remove(change.node_id)
                self.logger.info("membership: voter removed %s", change.node_id)
                if change.node_id == self.node_id:
                    self.state = State.FOLLOWER

    def observer_lag(self) -> dict[str, int]:
        """Entries each observer is behind the leader; empty unless leading."""
        with self.lock:
            if self.state is not State.LEADER:
                return {}
            last = self.log.last_index()
            return {
                m.id: max(0, last - self.match_index.get(m.addr, 0))
                for m in self.voters.members()
                if m.state is NodeState.OBSERVER
            }