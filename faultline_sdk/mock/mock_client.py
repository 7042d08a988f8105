# faultline_sdk/mock/mock_client.py
# SPDX-License-Identifier: Apache-2.0
"""
Mock realtime data client used by Faultline tests and examples.

An in-memory, path-addressed database following the callback convention
Faultline instruments. Simulates latency, per-path security rules,
credentials (including simulate + debug credentials), rule-evaluation debug
traces, on-disconnect operations and value listeners.

    db = MockDatabase(rules={
        "/": {".read": "true", ".write": "true"},
        "/forbidden": {".read": "false", ".write": "false"},
        "/private": {".read": "auth != null", ".write": "auth != null"},
    }, latency_ms=5)
    ref = db.connect()
    ref.child("allowed").set(True, lambda error: print(error))

Rules
-----
For each access the deepest path with a ``.read`` / ``.write`` rule decides.
Supported expressions: ``true``, ``false``, ``auth != null``,
``auth == null`` and ``auth.uid == '<uid>'``. Paths without a rule deny.

Credentials
-----------
``mint_token(uid, simulate=..., debug=...)`` returns an opaque token. A
connection authenticated with a *simulate* token evaluates rules without
mutating data; a *debug* token makes the connection write ``RULES:`` trace
fragments to its ``log_sink``.

Query refinements are recorded on the returned query but not applied to the
data; only ``value`` events are modelled.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

from faultline_sdk.client.client_base import (
    AuthError,
    BadRequest,
    DataClientError,
    Disconnected,
    LogSink,
    PermissionDenied,
)
from faultline_sdk.core.futures import consume_exception
from faultline_sdk.instrument.debug_log import TRACE_MARKER

LOG = logging.getLogger(__name__)

DEFAULT_URL = "mock://faultline.test/"
DEFAULT_RULES: Mapping[str, Mapping[str, str]] = {"/": {".read": "true", ".write": "true"}}

_UID_RULE = re.compile(r"^auth\.uid\s*==\s*'([^']*)'$")


# -----------------------------
# Small helpers
# -----------------------------

def _segments(path: str) -> List[str]:
    return [part for part in path.split("/") if part]


def _normalize(path: str) -> str:
    return "/" + "/".join(_segments(path))


def _join(base: str, child: str) -> str:
    return _normalize(base + "/" + child)


def _ancestors(path: str) -> List[str]:
    """``/a/b`` -> ``['/a/b', '/a', '/']``."""
    parts = _segments(path)
    return ["/" + "/".join(parts[:i]) for i in range(len(parts), -1, -1)]


def _related(a: str, b: str) -> bool:
    a_parts, b_parts = _segments(a), _segments(b)
    n = min(len(a_parts), len(b_parts))
    return a_parts[:n] == b_parts[:n]


def _settle(future: asyncio.Future, error: Optional[BaseException], result: Any = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


@dataclass
class DataSnapshot:
    key: Optional[str]
    value: Any
    priority: Any = None

    def val(self) -> Any:
        return copy.deepcopy(self.value)

    def exists(self) -> bool:
        return self.value is not None


@dataclass(eq=False)
class _Listener:
    connection: "_Connection"
    path: str
    event_type: str
    callback: Callable[..., Any]
    cancel_callback: Optional[Callable[..., Any]] = None


class _Connection:
    """Auth state and side channels shared by every reference of one connection."""

    def __init__(self, database: "MockDatabase", log_sink: Optional[LogSink] = None) -> None:
        self.database = database
        self.log_sink = log_sink
        self.auth: Optional[Dict[str, Any]] = None
        self.closed = False
        self.on_disconnect_ops: List[Tuple[str, Callable[[], None]]] = []

    @property
    def simulated(self) -> bool:
        return bool((self.auth or {}).get("simulate"))

    @property
    def debug(self) -> bool:
        return bool((self.auth or {}).get("debug"))


# -----------------------------
# Database
# -----------------------------

class MockDatabase:
    """In-memory data tree, rules and token registry."""

    def __init__(
        self,
        *,
        url: str = DEFAULT_URL,
        rules: Optional[Mapping[str, Mapping[str, str]]] = None,
        data: Any = None,
        latency_ms: float = 0.0,
    ) -> None:
        self.url = url if url.endswith("/") else url + "/"
        self.rules: Dict[str, Dict[str, str]] = {
            _normalize(path): dict(rule) for path, rule in (rules or DEFAULT_RULES).items()
        }
        self.latency_ms = latency_ms
        self._data: Any = copy.deepcopy(data)
        self._priorities: Dict[str, Any] = {}
        self._tokens: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[_Listener] = []
        self._token_ids = itertools.count(1)
        self._push_ids = itertools.count(1)
        self._anonymous_ids = itertools.count(1)

    def connect(self, *, log_sink: Optional[LogSink] = None) -> "MockDataClient":
        """Open a new, unauthenticated connection and return its root reference."""
        return MockDataClient(_Connection(self, log_sink), "/")

    # ----- credentials -------------------------------------------------------

    def mint_token(self, uid: str, *, simulate: bool = False, debug: bool = False) -> str:
        token = f"mock-token-{next(self._token_ids)}"
        self._tokens[token] = {"uid": uid, "simulate": simulate, "debug": debug}
        return token

    def claims_for(self, token: Any) -> Optional[Dict[str, Any]]:
        claims = self._tokens.get(token) if isinstance(token, str) else None
        return dict(claims) if claims is not None else None

    def anonymous_claims(self) -> Dict[str, Any]:
        return {"uid": f"anonymous-{next(self._anonymous_ids)}", "provider": "anonymous"}

    def next_push_key(self) -> str:
        return f"-M{next(self._push_ids):08d}"

    # ----- rules -------------------------------------------------------------

    def rule_for(self, path: str, kind: str) -> Tuple[str, str]:
        key = f".{kind}"
        for candidate in _ancestors(path):
            rule = self.rules.get(candidate)
            if rule is not None and key in rule:
                return candidate, rule[key]
        return "/", "false"

    def evaluate(self, expression: str, auth: Optional[Mapping[str, Any]]) -> bool:
        expression = expression.strip()
        if expression == "true":
            return True
        if expression == "false":
            return False
        if expression == "auth != null":
            return auth is not None
        if expression == "auth == null":
            return auth is None
        match = _UID_RULE.match(expression)
        if match is not None:
            return auth is not None and auth.get("uid") == match.group(1)
        LOG.warning("unsupported rule expression %r evaluates to false", expression)
        return False

    # ----- data --------------------------------------------------------------

    def get(self, path: str) -> Any:
        node = self._data
        for part in _segments(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def put(self, path: str, value: Any) -> None:
        parts = _segments(path)
        if not parts:
            self._data = copy.deepcopy(value)
            return
        if not isinstance(self._data, dict):
            self._data = {}
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if value is None:
            node.pop(parts[-1], None)
            self._priorities.pop(_normalize(path), None)
        else:
            node[parts[-1]] = copy.deepcopy(value)

    def get_priority(self, path: str) -> Any:
        return self._priorities.get(_normalize(path))

    def set_priority(self, path: str, priority: Any) -> None:
        self._priorities[_normalize(path)] = priority

    # ----- listeners ---------------------------------------------------------

    def add_listener(self, listener: _Listener) -> None:
        self._listeners.append(listener)

    def remove_listeners(self, predicate: Callable[[_Listener], bool]) -> None:
        self._listeners = [item for item in self._listeners if not predicate(item)]

    def notify(self, path: str) -> None:
        for listener in tuple(self._listeners):
            if listener.connection.closed or not _related(listener.path, path):
                continue
            key = _segments(listener.path)[-1] if _segments(listener.path) else None
            listener.callback(DataSnapshot(key, self.get(listener.path), self.get_priority(listener.path)))


# -----------------------------
# References and queries
# -----------------------------

class MockDataClient:
    """A reference (or query, when refinements are present) into a ``MockDatabase``."""

    def __init__(
        self,
        connection: _Connection,
        path: str,
        query: Tuple[Tuple[str, Tuple[Any, ...]], ...] = (),
    ) -> None:
        self._conn = connection
        self._db = connection.database
        self._path = _normalize(path)
        self.query = query

    def __str__(self) -> str:
        return self._db.url + quote(self._path[1:], safe="/")

    def __repr__(self) -> str:
        return f"MockDataClient({str(self)!r})"

    @property
    def path(self) -> str:
        return self._path

    @property
    def key(self) -> Optional[str]:
        parts = _segments(self._path)
        return parts[-1] if parts else None

    # ----- navigation --------------------------------------------------------

    def ref(self) -> "MockDataClient":
        return MockDataClient(self._conn, self._path)

    def root(self) -> "MockDataClient":
        return MockDataClient(self._conn, "/")

    def parent(self) -> Optional["MockDataClient"]:
        if self._path == "/":
            return None
        return MockDataClient(self._conn, _normalize(self._path.rsplit("/", 1)[0]))

    def child(self, path: str) -> "MockDataClient":
        if not isinstance(path, str) or not _segments(path):
            raise BadRequest(f"invalid child path: {path!r}")
        return MockDataClient(self._conn, _join(self._path, path))

    def _refine(self, name: str, *args: Any) -> "MockDataClient":
        return MockDataClient(self._conn, self._path, self.query + ((name, args),))

    def order_by_child(self, path: str) -> "MockDataClient":
        return self._refine("order_by_child", path)

    def order_by_key(self) -> "MockDataClient":
        return self._refine("order_by_key")

    def order_by_value(self) -> "MockDataClient":
        return self._refine("order_by_value")

    def order_by_priority(self) -> "MockDataClient":
        return self._refine("order_by_priority")

    def limit_to_first(self, limit: int) -> "MockDataClient":
        return self._refine("limit_to_first", limit)

    def limit_to_last(self, limit: int) -> "MockDataClient":
        return self._refine("limit_to_last", limit)

    def start_at(self, value: Any = None, key: Optional[str] = None) -> "MockDataClient":
        return self._refine("start_at", value, key)

    def end_at(self, value: Any = None, key: Optional[str] = None) -> "MockDataClient":
        return self._refine("end_at", value, key)

    def equal_to(self, value: Any, key: Optional[str] = None) -> "MockDataClient":
        return self._refine("equal_to", value, key)

    # ----- connection --------------------------------------------------------

    def fork(self, *, log_sink: Optional[LogSink] = None) -> "MockDataClient":
        """New unauthenticated connection at this reference's location."""
        return MockDataClient(_Connection(self._db, log_sink), self._path)

    def close(self) -> None:
        """Disconnect: run queued on-disconnect operations and drop listeners."""
        conn = self._conn
        if conn.closed:
            return
        for path, mutate in conn.on_disconnect_ops:
            mutate()
            self._db.notify(path)
        conn.on_disconnect_ops.clear()
        conn.closed = True
        self._db.remove_listeners(lambda listener: listener.connection is conn)

    # ----- auth --------------------------------------------------------------

    def get_auth(self) -> Optional[Dict[str, Any]]:
        return dict(self._conn.auth) if self._conn.auth is not None else None

    def unauth(self) -> None:
        self._conn.auth = None

    def auth(self, token: str, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        return self._authenticate(lambda: self._db.claims_for(token), on_complete)

    def auth_with_custom_token(
        self, token: str, on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        return self.auth(token, on_complete)

    def auth_anonymously(self, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        return self._authenticate(self._db.anonymous_claims, on_complete)

    def _authenticate(
        self,
        resolve: Callable[[], Optional[Dict[str, Any]]],
        on_complete: Optional[Callable[..., Any]],
    ) -> asyncio.Future:
        future = self._loop().create_future()

        def complete() -> None:
            claims = resolve()
            error = None if claims is not None else AuthError("invalid token")
            if claims is not None:
                self._conn.auth = claims
            try:
                if on_complete is not None:
                    on_complete(error, claims)
            finally:
                _settle(future, error, claims)

        self._schedule(complete)
        return future

    # ----- writes ------------------------------------------------------------

    def set(self, value: Any, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        return self._write(lambda: self._db.put(self._path, value), on_complete)

    def set_with_priority(
        self, value: Any, priority: Any, on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        def mutate() -> None:
            self._db.put(self._path, value)
            self._db.set_priority(self._path, priority)
        return self._write(mutate, on_complete)

    def set_priority(
        self, priority: Any, on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        return self._write(lambda: self._db.set_priority(self._path, priority), on_complete)

    def update(
        self, values: Mapping[str, Any], on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        if not isinstance(values, Mapping):
            raise BadRequest("update() expects a mapping of child paths to values")

        def mutate() -> None:
            for child, value in values.items():
                self._db.put(_join(self._path, child), value)
        return self._write(mutate, on_complete)

    def remove(self, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        return self._write(lambda: self._db.put(self._path, None), on_complete)

    def push(
        self, value: Any = None, on_complete: Optional[Callable[..., Any]] = None
    ) -> "MockDataClient":
        ref = self.child(self._db.next_push_key())
        if value is not None:
            ref.set(value, on_complete).add_done_callback(consume_exception)
        return ref

    def transaction(
        self,
        update_fn: Callable[[Any], Any],
        on_complete: Optional[Callable[..., Any]] = None,
        apply_locally: bool = True,
    ) -> asyncio.Future:
        """``update_fn`` returning None aborts the transaction."""
        future = self._loop().create_future()

        def complete() -> None:
            error: Optional[DataClientError] = None
            committed = False
            new_value = update_fn(self._db.get(self._path))
            if new_value is not None:
                error = self._check("write")
                if error is None:
                    committed = True
                    if not self._conn.simulated:
                        self._db.put(self._path, new_value)
                        self._db.notify(self._path)
            snapshot = self._snapshot()
            try:
                if on_complete is not None:
                    on_complete(error, committed, snapshot)
            finally:
                _settle(future, error, {"committed": committed, "snapshot": snapshot})

        self._schedule(complete)
        return future

    def _write(
        self,
        mutate: Callable[[], None],
        on_complete: Optional[Callable[..., Any]],
        path: Optional[str] = None,
    ) -> asyncio.Future:
        future = self._loop().create_future()
        path = path or self._path

        def complete() -> None:
            error = self._check("write", path)
            if error is None and not self._conn.simulated:
                mutate()
                self._db.notify(path)
            LOG.debug("write %s -> %s", path, error or "ok")
            try:
                if on_complete is not None:
                    on_complete(error)
            finally:
                _settle(future, error)

        self._schedule(complete)
        return future

    # ----- reads -------------------------------------------------------------

    def once(
        self,
        event_type: str,
        callback: Optional[Callable[..., Any]] = None,
        failure_callback: Optional[Callable[..., Any]] = None,
        context: Any = None,
    ) -> asyncio.Future:
        future = self._loop().create_future()

        def complete() -> None:
            error = self._check("read")
            if error is not None:
                try:
                    if failure_callback is not None:
                        failure_callback(error)
                finally:
                    _settle(future, error)
                return
            snapshot = self._snapshot()
            try:
                if callback is not None:
                    callback(snapshot)
            finally:
                _settle(future, None, snapshot)

        self._schedule(complete)
        return future

    def on(
        self,
        event_type: str,
        callback: Callable[..., Any],
        cancel_callback: Optional[Callable[..., Any]] = None,
        context: Any = None,
    ) -> Callable[..., Any]:
        listener = _Listener(self._conn, self._path, event_type, callback, cancel_callback)

        def complete() -> None:
            error = self._check("read")
            if error is not None:
                if cancel_callback is not None:
                    cancel_callback(error)
                return
            self._db.add_listener(listener)
            callback(self._snapshot())

        self._schedule(complete)
        return callback

    def off(
        self,
        event_type: Optional[str] = None,
        callback: Optional[Callable[..., Any]] = None,
    ) -> None:
        def matches(listener: _Listener) -> bool:
            return (
                listener.connection is self._conn
                and listener.path == self._path
                and (event_type is None or listener.event_type == event_type)
                and (callback is None or listener.callback is callback)
            )
        self._db.remove_listeners(matches)

    # ----- on-disconnect -----------------------------------------------------

    def on_disconnect(self) -> "MockOnDisconnect":
        return MockOnDisconnect(self)

    def _queue_on_disconnect(
        self,
        mutate: Callable[[], None],
        on_complete: Optional[Callable[..., Any]],
    ) -> asyncio.Future:
        future = self._loop().create_future()

        def complete() -> None:
            error = self._check("write")
            if error is None and not self._conn.simulated:
                self._conn.on_disconnect_ops.append((self._path, mutate))
            try:
                if on_complete is not None:
                    on_complete(error)
            finally:
                _settle(future, error)

        self._schedule(complete)
        return future

    def _cancel_on_disconnect(self, on_complete: Optional[Callable[..., Any]]) -> asyncio.Future:
        future = self._loop().create_future()

        def complete() -> None:
            ops = self._conn.on_disconnect_ops
            ops[:] = [(path, mutate) for path, mutate in ops if not _related(self._path, path)]
            try:
                if on_complete is not None:
                    on_complete(None)
            finally:
                _settle(future, None)

        self._schedule(complete)
        return future

    # ----- internals ---------------------------------------------------------

    @staticmethod
    def _loop() -> asyncio.AbstractEventLoop:
        return asyncio.get_running_loop()

    def _schedule(self, fn: Callable[[], None]) -> None:
        delay = self._db.latency_ms / 1000.0
        if delay > 0:
            self._loop().call_later(delay, fn)
        else:
            self._loop().call_soon(fn)

    def _snapshot(self) -> DataSnapshot:
        return DataSnapshot(self.key, self._db.get(self._path), self._db.get_priority(self._path))

    def _check(self, kind: str, path: Optional[str] = None) -> Optional[DataClientError]:
        if self._conn.closed:
            return Disconnected("connection closed")
        path = path or self._path
        rule_path, expression = self._db.rule_for(path, kind)
        auth = self._conn.auth
        allowed = self._db.evaluate(expression, auth)
        self._trace(path, kind, rule_path, expression, allowed)
        return None if allowed else PermissionDenied()

    def _trace(self, path: str, kind: str, rule_path: str, expression: str, allowed: bool) -> None:
        sink = self._conn.log_sink
        if sink is None or not self._conn.debug:
            return
        sink(f"{TRACE_MARKER}\n {rule_path}:.{kind}: \"{expression}\"")
        if "auth" in expression:
            auth = self._conn.auth
            shown = {"uid": auth.get("uid")} if auth else None
            sink(f"{TRACE_MARKER}\n    auth = {json.dumps(shown)}")
        sink(f"{TRACE_MARKER}\n    => {'true' if allowed else 'false'}")
        sink(f"Attempt to {kind} {path} was {'allowed' if allowed else 'denied'}.")


class MockOnDisconnect:
    """Operations a ``MockDataClient`` connection runs when it closes."""

    def __init__(self, client: MockDataClient) -> None:
        self._client = client

    def ref(self) -> MockDataClient:
        return self._client.ref()

    def set(self, value: Any, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        db, path = self._client._db, self._client.path
        return self._client._queue_on_disconnect(lambda: db.put(path, value), on_complete)

    def set_with_priority(
        self, value: Any, priority: Any, on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        db, path = self._client._db, self._client.path

        def mutate() -> None:
            db.put(path, value)
            db.set_priority(path, priority)
        return self._client._queue_on_disconnect(mutate, on_complete)

    def update(
        self, values: Mapping[str, Any], on_complete: Optional[Callable[..., Any]] = None
    ) -> asyncio.Future:
        db, path = self._client._db, self._client.path

        def mutate() -> None:
            for child, value in values.items():
                db.put(_join(path, child), value)
        return self._client._queue_on_disconnect(mutate, on_complete)

    def remove(self, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        db, path = self._client._db, self._client.path
        return self._client._queue_on_disconnect(lambda: db.put(path, None), on_complete)

    def cancel(self, on_complete: Optional[Callable[..., Any]] = None) -> asyncio.Future:
        return self._client._cancel_on_disconnect(on_complete)


__all__ = [
    "DEFAULT_URL",
    "DEFAULT_RULES",
    "DataSnapshot",
    "MockDatabase",
    "MockDataClient",
    "MockOnDisconnect",
]
