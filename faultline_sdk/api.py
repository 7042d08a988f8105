# faultline_sdk/api.py
# SPDX-License-Identifier: Apache-2.0
"""
Faultline registration API.

Process-wide entry points over a default ``InstrumentationContext``. Every
function accepts ``context=`` to target another context instead.

    import faultline_sdk as fl

    ref = fl.instrument(database.connect())

    fl.on_error(lambda error, target, method, args: report(error.extra))
    fl.on_slow_write(2_000, lambda count, delta, description, serial: show_spinner(count))
    fl.debug_permission_denied_errors(mint_simulation_token)

    ref.child("users/ada").set({"name": "Ada"})   # failures reach report()
    ref.child("users/ada").set(None, fl.IGNORE_ERROR)  # this one does not
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from faultline_sdk.core.instrumentation_context import InstrumentationContext
from faultline_sdk.instrument.error_bus import IGNORE_ERROR, ErrorObserver
from faultline_sdk.instrument.method_table import REFERENCE
from faultline_sdk.instrument.simulator import (
    DEFAULT_SIMULATION_TIMEOUT_MS,
    CallFilter,
    PermissionDebugConfig,
    TokenGenerator,
    accept_all_calls,
)
from faultline_sdk.instrument.slow_ops import SlowWriteCallback

LOG = logging.getLogger(__name__)

_default_context = InstrumentationContext()


def get_default_context() -> InstrumentationContext:
    return _default_context


def reset_default_context() -> InstrumentationContext:
    """Replace the default context with an empty one and return it."""
    global _default_context
    _default_context = InstrumentationContext()
    return _default_context


def _resolve(context: Optional[InstrumentationContext]) -> InstrumentationContext:
    return context if context is not None else _default_context


# --------------------------------------------------------------------------- #
# Instrumentation
# --------------------------------------------------------------------------- #

def instrument(
    client: Any,
    *,
    kind: str = REFERENCE,
    context: Optional[InstrumentationContext] = None,
) -> Any:
    """Wrap ``client`` so its asynchronous methods report through Faultline."""
    return _resolve(context).instrument(client, kind)


# --------------------------------------------------------------------------- #
# Error observers
# --------------------------------------------------------------------------- #

def on_error(
    callback: ErrorObserver,
    *,
    context: Optional[InstrumentationContext] = None,
) -> ErrorObserver:
    """
    Register a global error observer.

    ``callback(error, target, method_name, args)`` is invoked for every
    error reported by an instrumented call unless that call's completion
    callback returned (or was) ``IGNORE_ERROR``. Returns ``callback``.
    """
    return _resolve(context).error_bus.register(callback)


def off_error(
    callback: ErrorObserver,
    *,
    context: Optional[InstrumentationContext] = None,
) -> None:
    _resolve(context).error_bus.unregister(callback)


# --------------------------------------------------------------------------- #
# Slow writes
# --------------------------------------------------------------------------- #

def on_slow_write(
    timeout_ms: float,
    callback: SlowWriteCallback,
    *,
    context: Optional[InstrumentationContext] = None,
) -> SlowWriteCallback:
    """
    Register a slow-write observer.

    Write calls (set, update, set_with_priority, set_priority, transaction,
    remove, push with a value) still running after ``timeout_ms`` count as
    slow. ``callback(count, delta, description, serial)`` is invoked every
    time the number of outstanding slow calls changes. Returns ``callback``.
    """
    _resolve(context).add_slow_write(timeout_ms, callback)
    return callback


def off_slow_write(
    callback: SlowWriteCallback,
    *,
    context: Optional[InstrumentationContext] = None,
) -> None:
    _resolve(context).remove_slow_write(callback)


# --------------------------------------------------------------------------- #
# Permission debugging
# --------------------------------------------------------------------------- #

def debug_permission_denied_errors(
    token_generator: Optional[TokenGenerator],
    max_simulation_duration_ms: Optional[float] = None,
    call_filter: Optional[CallFilter] = None,
    *,
    context: Optional[InstrumentationContext] = None,
) -> None:
    """
    Enable (or, with ``token_generator=None``, disable) permission debugging.

    ``token_generator(identity)`` returns a simulation credential, directly
    or as an awaitable. Delivery of a denied call is held back for at most
    ``max_simulation_duration_ms`` (default 5000, ``0`` disables simulation).
    ``call_filter(target, method_name, args)`` restricts which calls are
    simulated (default: all).
    """
    ctx = _resolve(context)
    if token_generator is None:
        ctx.permission_debug = None
        LOG.debug("permission debugging disabled")
        return
    if not callable(token_generator):
        raise TypeError("token_generator must be callable")
    if max_simulation_duration_ms is None:
        max_simulation_duration_ms = DEFAULT_SIMULATION_TIMEOUT_MS
    if max_simulation_duration_ms < 0:
        raise ValueError("max_simulation_duration_ms must be >= 0")
    ctx.permission_debug = PermissionDebugConfig(
        token_generator=token_generator,
        max_simulation_duration_ms=max_simulation_duration_ms,
        call_filter=call_filter or accept_all_calls,
    )
    LOG.debug(
        "permission debugging enabled (max_simulation_duration_ms=%s)",
        max_simulation_duration_ms,
    )


__all__ = [
    "IGNORE_ERROR",
    "get_default_context",
    "reset_default_context",
    "instrument",
    "on_error",
    "off_error",
    "on_slow_write",
    "off_slow_write",
    "debug_permission_denied_errors",
]
