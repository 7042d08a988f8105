# faultline_sdk/instrument/simulator.py
# SPDX-License-Identifier: Apache-2.0

"""
Permission-denied simulation.

A permission denial on its own says nothing about *which* rule refused the
call. When permission debugging is enabled, the failing call is replayed on a
secondary connection authenticated with a simulation credential (simulate +
debug flags): the replay mutates nothing, but the client writes its rule
evaluation to a ``DiagnosticLogCapture``. The reconstructed trace is attached
to the original error as ``error.extra["debug"]`` before the caller sees it.

Flow
----
1. A bounded timer starts; if it fires first the error is delivered with a
   "Simulated call timed out" note.
2. The failing principal is read from the target's auth state.
3. A simulation credential is requested from the registered generator.
4. The replay waits its turn on the ``SimulationQueue``: one simulation at a
   time, process-wide, in the order the failures happened.
5. The secondary connection is forked, de-authenticated, authenticated with
   the credential, and the original un-wrapped method is replayed.
6. The outcome becomes a note on the original error and delivery proceeds.

Nothing here may replace or mask the original error: generator failures,
authentication failures and unexpected replay outcomes all degrade into
notes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    List,
    Optional,
    Set,
)

from faultline_sdk.client.client_base import (
    is_permission_denied,
    normalize_error,
)
from faultline_sdk.core.futures import consume_exception
from faultline_sdk.instrument.debug_log import DiagnosticLogCapture

if TYPE_CHECKING:
    from faultline_sdk.instrument.completion import WrappedCall

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Environment override for the default simulation bound, in milliseconds.
SIMULATION_TIMEOUT_ENV = "FAULTLINE_SIMULATION_TIMEOUT_MS"

DEFAULT_SIMULATION_TIMEOUT_MS: float = float(os.environ.get(SIMULATION_TIMEOUT_ENV, "5000"))

NOTE_TIMED_OUT = "Simulated call timed out"
NOTE_NOT_REPRODUCED = "Unable to reproduce error in simulation"

TokenGenerator = Callable[[str], Any]
CallFilter = Callable[[Any, str, List[Any]], bool]


def accept_all_calls(target: Any, method_name: str, args: List[Any]) -> bool:
    return True


@dataclass(frozen=True)
class PermissionDebugConfig:
    """
    Permission debugging settings.

    Attributes:
        token_generator:
            ``generator(identity) -> credential`` (or an awaitable of one). The
            credential must authenticate the secondary connection in
            simulate + debug mode.
        max_simulation_duration_ms:
            Bound on how long delivery of a denied call may be held back.
            Zero disables simulation.
        call_filter:
            ``call_filter(target, method_name, args) -> bool``; only accepted
            calls are simulated.
    """
    token_generator: TokenGenerator
    max_simulation_duration_ms: float = DEFAULT_SIMULATION_TIMEOUT_MS
    call_filter: CallFilter = accept_all_calls


# ---------------------------------------------------------------------------
# Simulation queue
# ---------------------------------------------------------------------------


class SimulationQueue:
    """
    FIFO chain of simulation links.

    Each link starts only after its predecessor has finished, whatever the
    predecessor's outcome. Links are tasks; the queue keeps strong references
    until they finish.
    """

    def __init__(self) -> None:
        self._tail: Optional[asyncio.Future] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def idle(self) -> bool:
        return not self._tasks

    def enqueue(self, link: Callable[[], Awaitable[None]]) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        previous = self._tail
        done = loop.create_future()
        self._tail = done

        async def run() -> None:
            try:
                if previous is not None:
                    await asyncio.shield(previous)
                await link()
            except Exception:  # noqa: BLE001
                logger.warning("simulation link failed", exc_info=True)
            finally:
                if not done.done():
                    done.set_result(None)
                if self._tail is done:
                    self._tail = None

        task = loop.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        """Wait until every queued link has finished."""
        while self._tasks:
            await asyncio.gather(*tuple(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


def _ref_of(target: Any) -> Any:
    ref = getattr(target, "ref", None)
    return ref() if callable(ref) else target


def _identity_of(target: Any) -> str:
    get_auth = getattr(_ref_of(target), "get_auth", None)
    auth = get_auth() if callable(get_auth) else None
    if not auth:
        return ""
    return str(auth.get("uid") or "")


async def _request_credential(generator: TokenGenerator, identity: str) -> Any:
    credential = generator(identity)
    if inspect.isawaitable(credential):
        credential = await credential
    return credential


class PermissionDeniedSimulator:
    """Replays permission-denied calls on a debug connection, one at a time."""

    def __init__(self, queue: SimulationQueue) -> None:
        self.queue = queue
        self.capture = DiagnosticLogCapture()

    def accepts(
        self,
        config: Optional[PermissionDebugConfig],
        call: "WrappedCall",
        error: BaseException,
    ) -> bool:
        if config is None or config.max_simulation_duration_ms <= 0:
            return False
        if not is_permission_denied(error):
            return False
        if not callable(getattr(_ref_of(call.raw_target), "fork", None)):
            return False
        try:
            return bool(config.call_filter(call.target, call.method_name, list(call.args)))
        except Exception:  # noqa: BLE001
            logger.warning(
                "permission debug call filter failed; skipping simulation",
                exc_info=True,
                extra={"call": call.description},
            )
            return False

    def start(
        self,
        config: PermissionDebugConfig,
        call: "WrappedCall",
        finish: Callable[[str], None],
    ) -> None:
        """
        Begin simulating ``call``. ``finish(note)`` is invoked by the timeout
        and by the queue link; the caller guarantees only the first counts.
        """
        loop = asyncio.get_running_loop()
        bound_s = config.max_simulation_duration_ms / 1000.0
        timer = loop.call_later(bound_s, finish, NOTE_TIMED_OUT)

        identity = _identity_of(call.raw_target)
        credential = loop.create_task(_request_credential(config.token_generator, identity))
        credential.add_done_callback(consume_exception)

        async def link() -> None:
            try:
                note = await asyncio.wait_for(self._simulate(call, credential), bound_s)
            except asyncio.TimeoutError:
                note = NOTE_TIMED_OUT
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "permission denied simulation failed: %s",
                    exc,
                    extra={"call": call.description},
                )
                note = f"Unable to run simulation: {exc}"
            finally:
                timer.cancel()
            finish(note)

        self.queue.enqueue(link)

    async def _simulate(self, call: "WrappedCall", credential: "asyncio.Future[Any]") -> str:
        token = await credential

        self.capture.reset()
        shadow_ref = _ref_of(call.raw_target).fork(log_sink=self.capture)
        try:
            shadow_ref.unauth()
            auth_error = await self._authenticate(shadow_ref, token)
            if auth_error is not None:
                return f"Unable to run simulation: {auth_error}"
            shadow = call.shadow_of(shadow_ref) if call.shadow_of else shadow_ref
            error = await self._replay(shadow, call)
        finally:
            close = getattr(shadow_ref, "close", None)
            if callable(close):
                close()

        if error is None:
            return NOTE_NOT_REPRODUCED
        if is_permission_denied(error):
            return self.capture.drain()
        return f"Got a different error in simulation: {error}"

    @staticmethod
    async def _authenticate(shadow_ref: Any, token: Any) -> Optional[BaseException]:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def on_auth(error: Any = None, *_: Any) -> None:
            if not outcome.done():
                outcome.set_result(normalize_error(error) if error else None)

        result = shadow_ref.auth(token, on_auth)
        if asyncio.isfuture(result):
            result.add_done_callback(consume_exception)
        return await outcome

    @staticmethod
    async def _replay(shadow: Any, call: "WrappedCall") -> Optional[BaseException]:
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future = loop.create_future()

        def collect(error: Any = None, *_: Any) -> None:
            if not outcome.done():
                outcome.set_result(normalize_error(error) if error else None)

        def succeed(*_: Any, **__: Any) -> None:
            if not outcome.done():
                outcome.set_result(None)

        def settled(result: asyncio.Future) -> None:
            if result.cancelled() or outcome.done():
                return
            error = result.exception()
            outcome.set_result(normalize_error(error) if error else None)

        method_name, spec = call.spec.replay_target(call.method_name)
        args = list(call.args)
        kwargs = dict(call.kwargs)
        filler = succeed if spec.read else None
        while len(args) < spec.callback_index:
            args.append(filler)
        if spec.read:
            # Success callbacks, given or missing, must settle the replay.
            args = [
                succeed if callable(arg) or (arg is None and 0 < i < spec.callback_index) else arg
                for i, arg in enumerate(args)
            ]

        if call.callback_by_keyword:
            kwargs[spec.callback_keyword] = collect
        else:
            if spec.callback_index < len(args):
                args[spec.callback_index] = collect
            else:
                args.append(collect)

        result = getattr(shadow, method_name)(*args, **kwargs)
        if asyncio.isfuture(result):
            result.add_done_callback(consume_exception)
            result.add_done_callback(settled)
        return await outcome


__all__ = [
    "SIMULATION_TIMEOUT_ENV",
    "DEFAULT_SIMULATION_TIMEOUT_MS",
    "NOTE_TIMED_OUT",
    "NOTE_NOT_REPRODUCED",
    "TokenGenerator",
    "CallFilter",
    "accept_all_calls",
    "PermissionDebugConfig",
    "SimulationQueue",
    "PermissionDeniedSimulator",
]
