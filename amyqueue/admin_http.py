"""HTTP admin API for cluster membership, backed by an AdminService."""

from __future__ import annotations

import json
import re
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, TypeVar
from urllib.parse import unquote, urlsplit

from amyqueue.membership import Member
from amyqueue.messages import (
    AddVoterRequest,
    AddVoterResponse,
    AdminService,
    ClusterStatusResponse,
    ObserverJoinRequest,
    ObserverJoinResponse,
    RemoveVoterRequest,
    RemoveVoterResponse,
)

_T = TypeVar("_T")
_VOTER_PATH = re.compile(r"/cluster/voters/([^/]+)")
_Reply = tuple[int, dict[str, str], bytes]


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"address {addr!r} is missing a port")
    try:
        return host.strip("[]"), int(port)
    except ValueError:
        raise ValueError(f"address {addr!r} has an invalid port") from None


def _json_reply(status: int, payload: Any) -> _Reply:
    body = (json.dumps(payload, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")
    return status, {"Content-Type": "application/json"}, body


def _error_reply(status: int, message: str) -> _Reply:
    return _json_reply(status, {"error": message})


def _member_json(m: Member) -> dict[str, Any]:
    return {"ID": m.id, "Addr": m.addr, "State": str(m.state)}


def _status_json(r: ClusterStatusResponse) -> dict[str, Any]:
    return {
        "LeaderID": r.leader_id,
        "LeaderAddr": r.leader_addr,
        "Term": r.term,
        "Members": [_member_json(m) for m in r.members],
    }


def _join_json(r: ObserverJoinResponse) -> dict[str, Any]:
    return {
        "Success": r.success,
        "LeaderID": r.leader_id,
        "LeaderAddr": r.leader_addr,
        "Err": r.err,
    }


def _result_json(r: AddVoterResponse | RemoveVoterResponse) -> dict[str, Any]:
    return {"Success": r.success, "Err": r.err}


def _decode_request(body: bytes, cls: Callable[..., _T], fields: dict[str, str]) -> _T:
    """Decode a JSON object; keys match field names ignoring case and underscores."""
    if not body.strip():
        raise ValueError("EOF")
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError(str(exc)) from exc
    if payload is None:
        return cls()
    if not isinstance(payload, dict):
        raise ValueError(f"cannot unmarshal {type(payload).__name__} into request object")
    kwargs: dict[str, str] = {}
    for key, value in payload.items():
        attr = fields.get(key.lower().replace("_", ""))
        if attr is None or value is None:
            continue
        if not isinstance(value, str):
            raise ValueError(
                f"cannot unmarshal {type(value).__name__} into field {key} of type string"
            )
        kwargs[attr] = value
    return cls(**kwargs)


class _AdminHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    admin: AdminServer


class _AdminHandler(BaseHTTPRequestHandler):
    server: _AdminHTTPServer

    def _dispatch(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length > 0 else b""
        status, headers, payload = self.server.admin._handle(
            self.command, urlsplit(self.path).path, body
        )
        self.send_response(status)
        for name, value in headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = do_HEAD = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _dispatch

    def log_message(self, format: str, *args: object) -> None:
        pass


class AdminServer:
    """Exposes cluster membership over HTTP.

    Routes: GET /cluster/status, POST /cluster/observers/join,
    POST /cluster/voters and DELETE /cluster/voters/{id}.
    """

    def __init__(self, addr: str, svc: AdminService) -> None:
        self.addr = addr
        self.svc = svc
        self._httpd: _AdminHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def bound_port(self) -> int | None:
        return self._httpd.server_address[1] if self._httpd is not None else None

    def start(self) -> None:
        """Bind the address and serve requests in the background."""
        if self._httpd is not None:
            raise RuntimeError("admin server already started")
        httpd = _AdminHTTPServer(_parse_addr(self.addr), _AdminHandler)
        httpd.admin = self
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

    # ─── routing ─────────────────────────────────────────────────────────────

    def _handle(self, method: str, path: str, body: bytes) -> _Reply:
        match = _VOTER_PATH.fullmatch(path)
        if path == "/cluster/status":
            allowed, action = ("GET", "HEAD"), lambda: self._status()
        elif path == "/cluster/observers/join":
            allowed, action = ("POST",), lambda: self._join(body)
        elif path == "/cluster/voters":
            allowed, action = ("POST",), lambda: self._add_voter(body)
        elif match is not None:
            voter_id = unquote(match.group(1))
            allowed, action = ("DELETE",), lambda: self._remove_voter(voter_id)
        else:
            return 404, {"Content-Type": "text/plain; charset=utf-8"}, b"404 page not found\n"

        if method not in allowed:
            return (
                405,
                {"Content-Type": "text/plain; charset=utf-8", "Allow": ", ".join(allowed)},
                b"Method Not Allowed\n",
            )
        return action()

    def _status(self) -> _Reply:
        return _json_reply(200, _status_json(self.svc.cluster_status()))

    def _join(self, body: bytes) -> _Reply:
        try:
            req = _decode_request(body, ObserverJoinRequest, {"nodeid": "node_id", "addr": "addr"})
        except ValueError as exc:
            return _error_reply(400, str(exc))
        resp = self.svc.join_as_observer(req)
        return _json_reply(200 if resp.success else 400, _join_json(resp))

    def _add_voter(self, body: bytes) -> _Reply:
        try:
            req = _decode_request(body, AddVoterRequest, {"nodeid": "node_id", "addr": "addr"})
        except ValueError as exc:
            return _error_reply(400, str(exc))
        resp = self.svc.add_voter(req)
        return _json_reply(200 if resp.success else 400, _result_json(resp))

    def _remove_voter(self, voter_id: str) -> _Reply:
        if not voter_id:
            return _error_reply(400, "missing voter id in path")
        resp = self.svc.remove_voter(RemoveVoterRequest(node_id=voter_id))
        return _json_reply(200 if resp.success else 400, _result_json(resp))