# faultline_sdk/instrument/completion.py
# SPDX-License-Identifier: Apache-2.0

"""
Completion adapter: instrumentation of a single client call.

The adapter rewrites the caller's arguments so that the client completes
into a synthesized callback, then fans the outcome out:

    caller ──► shim ──► CompletionAdapter.run()
                             │ finds the completion slot (position or keyword)
                             │ starts slow-write timers (write calls)
                             ▼
                     raw client method(…, on_complete=_on_complete)
                             │
           client calls _on_complete(error, *results)
                             │ cancels / balances slow-write timers
                             │ annotates the error (error.extra)
                             │ permission denied? ──► simulator ──┐
                             ▼                                   │
                      _deliver(error, results) ◄─────────────────┘
                             │ caller's callback, exactly once
                             ▼
                     GlobalErrorBus.publish (unless IGNORE_ERROR)

Guarantees
----------
* The caller's callback runs at most once and, when the client completes,
  exactly once, whichever of client completion, simulation result or
  simulation timeout gets there first (``Latch``).
* Futures returned by the client are mirrored; while a simulation is
  pending, the mirror's rejection waits for delivery so ``await`` observers
  see the annotated error.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import unquote

from faultline_sdk.client.client_base import error_code, normalize_error
from faultline_sdk.core.error_context import attach_extra
from faultline_sdk.core.futures import consume_exception
from faultline_sdk.core.latch import Latch
from faultline_sdk.instrument.error_bus import IGNORE_ERROR
from faultline_sdk.instrument.slow_ops import SlowOperationTracker

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETED = "completed"


@dataclass(frozen=True)
class MethodSpec:
    """
    How to find and classify the completion callback of one client method.

    Attributes:
        callback_index:
            Position of the completion callback among positional arguments.
        callback_keyword:
            Keyword under which the callback may be passed instead.
        write:
            Write-category call (subject to slow-write tracking).
        read:
            Read-category call; replays replace its other callables with
            success markers.
        read_variant:
            Single-shot method used instead when replaying (``on`` -> ``once``).
        read_variant_spec:
            Callback location of ``read_variant``; replays put the
            collector where the variant expects its failure callback.
    """
    callback_index: int
    callback_keyword: Optional[str] = "on_complete"
    write: bool = False
    read: bool = False
    read_variant: Optional[str] = None
    read_variant_spec: Optional["MethodSpec"] = None

    def replay_target(self, method_name: str) -> Tuple[str, "MethodSpec"]:
        """Method name and spec to use when replaying a call to ``method_name``."""
        if self.read_variant is None:
            return method_name, self
        return self.read_variant, self.read_variant_spec or self


@dataclass(eq=False)
class WrappedCall:
    """An in-flight instrumented invocation."""
    target: Any
    raw_target: Any
    method_name: str
    spec: MethodSpec
    args: Tuple[Any, ...]
    kwargs: Dict[str, Any]
    user_callback: Optional[Callable[..., Any]] = None
    callback_by_keyword: bool = False
    serial: Optional[int] = None
    description: str = ""
    state: str = PENDING
    shadow_of: Optional[Callable[[Any], Any]] = None
    simulation: Optional[asyncio.Future] = None


def describe_path(target: Any) -> str:
    """Decoded path of ``target`` relative to its root (``/users/ada lovelace``)."""
    try:
        ref = target.ref() if callable(getattr(target, "ref", None)) else target
        url = str(ref)
        root = getattr(ref, "root", None)
        offset = len(str(root())) - 1 if callable(root) else 0
        return unquote(url[max(offset, 0):]) or "/"
    except Exception:  # noqa: BLE001
        logger.debug("unable to describe path of %r", target, exc_info=True)
        return repr(target)


def snapshot_arguments(args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Dict[str, str]:
    """String snapshot of every non-callable argument, keyed ``arg_<position|name>``."""
    snapshot: Dict[str, str] = {}
    items = [(str(i), arg) for i, arg in enumerate(args)]
    items.extend(kwargs.items())
    for key, arg in items:
        if callable(arg):
            continue
        if isinstance(arg, str):
            value = arg
        else:
            try:
                value = json.dumps(arg, sort_keys=True)
            except (TypeError, ValueError):
                value = repr(arg)
        snapshot[f"arg_{key}"] = value
    return snapshot


class CompletionAdapter:
    """Runs one client call with a synthesized completion callback."""

    def __init__(
        self,
        context: Any,
        target: Any,
        raw_target: Any,
        method_name: str,
        spec: MethodSpec,
        args: Tuple[Any, ...],
        kwargs: Dict[str, Any],
        *,
        shadow_of: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self._context = context
        self._latch = Latch()
        self._tracker: Optional[SlowOperationTracker] = None
        self._snapshot: Dict[str, str] = {}
        self._raw_args = list(args)
        self._raw_kwargs = dict(kwargs)
        self.call = WrappedCall(
            target=target,
            raw_target=raw_target,
            method_name=method_name,
            spec=spec,
            args=tuple(args),
            kwargs={},
            shadow_of=shadow_of,
        )

    # ------------------------------------------------------------------ #
    # Invocation
    # ------------------------------------------------------------------ #

    def run(self) -> Any:
        call = self.call
        spec = call.spec
        args = self._raw_args
        kwargs = self._raw_kwargs

        if spec.callback_keyword and spec.callback_keyword in kwargs:
            candidate = kwargs.pop(spec.callback_keyword)
            call.callback_by_keyword = True
        elif spec.callback_index < len(args):
            candidate = args[spec.callback_index]
        else:
            candidate = None

        if callable(candidate):
            call.user_callback = candidate
        elif candidate is not None:
            logger.debug(
                "ignoring non-callable completion argument %r of %s()",
                candidate,
                call.method_name,
            )

        call.kwargs = dict(kwargs)
        call.description = f"{call.method_name}({describe_path(call.raw_target)})"
        self._snapshot = snapshot_arguments(call.args, call.kwargs)

        loop = asyncio.get_running_loop()
        if spec.write:
            call.serial = self._context.next_write_serial()
            self._tracker = SlowOperationTracker(
                self._context.slow_write_records, call.description, call.serial
            )
            self._tracker.start(loop)

        if call.callback_by_keyword:
            kwargs[spec.callback_keyword] = self._on_complete
        else:
            while len(args) < spec.callback_index:
                args.append(None)
            if spec.callback_index < len(args):
                args[spec.callback_index] = self._on_complete
            else:
                args.append(self._on_complete)

        try:
            result = getattr(call.raw_target, call.method_name)(*args, **kwargs)
        except BaseException:
            if self._tracker is not None:
                self._tracker.finish()
            raise

        if asyncio.isfuture(result):
            return self._mirror(result)
        return result

    # ------------------------------------------------------------------ #
    # Completion paths
    # ------------------------------------------------------------------ #

    def _on_complete(self, error: Any = None, *results: Any) -> None:
        call = self.call
        if call.state == COMPLETED:
            logger.debug("duplicate completion of %s ignored", call.description)
            return
        call.state = COMPLETED
        if self._tracker is not None:
            self._tracker.finish()

        if not error:
            self._deliver(None, results)
            return

        error = normalize_error(error)
        message = getattr(error, "message", None) or str(error)
        fields: Dict[str, Any] = {
            "description": f"{call.description}: {message}",
            "code": error_code(error),
        }
        if hasattr(error, "recoverable"):
            fields["recoverable"] = error.recoverable
        attach_extra(error, **fields, **self._snapshot)

        config = self._context.permission_debug
        simulator = self._context.simulator
        if simulator.accepts(config, call, error):
            call.simulation = asyncio.get_running_loop().create_future()
            simulator.start(
                config,
                call,
                lambda note: self._finish_simulation(error, results, note),
            )
            return

        self._deliver(error, results)

    def _finish_simulation(
        self,
        error: BaseException,
        results: Tuple[Any, ...],
        note: str,
    ) -> None:
        if self._latch.released:
            return
        attach_extra(error, debug=note)
        try:
            self._deliver(error, results)
        except Exception as exc:  # noqa: BLE001
            asyncio.get_running_loop().call_exception_handler({
                "message": f"completion callback of {self.call.description} failed",
                "exception": exc,
            })

    def _deliver(self, error: Optional[BaseException], results: Tuple[Any, ...]) -> None:
        if not self._latch.acquire():
            return
        call = self.call
        try:
            outcome = None
            if call.user_callback is not None:
                outcome = call.user_callback(error, *results)
            if error is not None and outcome is not IGNORE_ERROR:
                self._context.error_bus.publish(error, call.target, call.method_name, call.args)
        finally:
            gate = call.simulation
            if gate is not None and not gate.done():
                gate.set_result(None)

    # ------------------------------------------------------------------ #
    # Future mirroring
    # ------------------------------------------------------------------ #

    def _mirror(self, inner: asyncio.Future) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        outer = loop.create_future()
        outer.add_done_callback(consume_exception)

        def settle_error(exc: BaseException) -> None:
            if not outer.done():
                outer.set_exception(exc)

        def relay(_: asyncio.Future) -> None:
            if inner.cancelled():
                outer.cancel()
                return
            exc = inner.exception()
            if exc is None:
                if not outer.done():
                    outer.set_result(inner.result())
                return
            gate = self.call.simulation
            if gate is not None and not gate.done():
                gate.add_done_callback(lambda _: settle_error(exc))
            else:
                settle_error(exc)

        inner.add_done_callback(relay)
        return outer


__all__ = [
    "PENDING",
    "COMPLETED",
    "MethodSpec",
    "WrappedCall",
    "describe_path",
    "snapshot_arguments",
    "CompletionAdapter",
]
