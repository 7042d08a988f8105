# faultline_sdk/instrument/method_table.py
# SPDX-License-Identifier: Apache-2.0

"""
Method tables and the instrumented target wrapper.

``InstrumentedTarget`` composes around a client object (a reference, a query
or an on-disconnect handle). At construction it installs one shim per table
entry the client actually offers; everything else is delegated unchanged, so
an instrumented reference is a drop-in replacement for the raw one.

Tables
------
Each table maps a method name to the ``MethodSpec`` locating its completion
callback, and lists the methods whose return value is itself wrappable
(``child()``, query refinements, ``on_disconnect()``, ``push()``). Those
return values are instrumented with the matching table before being handed
back, so chained calls stay instrumented:

    ref.child("rooms").order_by_child("owner").limit_to_first(5).on(...)

``push()`` only needs instrumenting when it carries a payload; an empty
``push()`` just mints a reference synchronously.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from faultline_sdk.instrument.completion import CompletionAdapter, MethodSpec

logger = logging.getLogger(__name__)

REFERENCE = "reference"
QUERY = "query"
ON_DISCONNECT = "on_disconnect"


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

AUTH_METHODS: Dict[str, MethodSpec] = {
    "auth": MethodSpec(1),
    "auth_with_custom_token": MethodSpec(1),
    "auth_anonymously": MethodSpec(0),
    "auth_with_password": MethodSpec(1),
    "auth_with_oauth_token": MethodSpec(2),
    "create_user": MethodSpec(1),
    "change_email": MethodSpec(1),
    "change_password": MethodSpec(1),
    "remove_user": MethodSpec(1),
    "reset_password": MethodSpec(1),
}

WRITE_METHODS: Dict[str, MethodSpec] = {
    "set": MethodSpec(1, write=True),
    "update": MethodSpec(1, write=True),
    "set_with_priority": MethodSpec(2, write=True),
    "set_priority": MethodSpec(1, write=True),
    "transaction": MethodSpec(1, write=True),
    "remove": MethodSpec(0, write=True),
}

ONCE_SPEC = MethodSpec(2, "failure_callback", read=True)

READ_METHODS: Dict[str, MethodSpec] = {
    "on": MethodSpec(
        2, "cancel_callback", read=True, read_variant="once", read_variant_spec=ONCE_SPEC
    ),
    "once": ONCE_SPEC,
}

ON_DISCONNECT_METHODS: Dict[str, MethodSpec] = {
    "set": MethodSpec(1),
    "set_with_priority": MethodSpec(2),
    "update": MethodSpec(1),
    "remove": MethodSpec(0),
    "cancel": MethodSpec(0),
}

PUSH_SPEC = MethodSpec(1, write=True)

QUERY_REFINEMENTS: Tuple[str, ...] = (
    "order_by_child",
    "order_by_key",
    "order_by_value",
    "order_by_priority",
    "limit_to_first",
    "limit_to_last",
    "start_at",
    "end_at",
    "equal_to",
)

REFERENCE_NAVIGATION: Tuple[str, ...] = ("child", "parent", "root", "ref")


def _on_disconnect_of(shadow_ref: Any) -> Any:
    return shadow_ref.on_disconnect()


@dataclass(frozen=True)
class MethodTable:
    """
    Attributes:
        methods:
            Asynchronous methods to wrap.
        cascades:
            Methods whose return value gets instrumented, mapped to the
            table kind to instrument it with.
        shadow_of:
            Maps a secondary connection's reference to the equivalent
            target, for replays. None replays on the reference itself.
    """
    kind: str
    methods: Mapping[str, MethodSpec]
    cascades: Mapping[str, str] = field(default_factory=dict)
    shadow_of: Optional[Callable[[Any], Any]] = None


TABLES: Dict[str, MethodTable] = {
    QUERY: MethodTable(
        kind=QUERY,
        methods=dict(READ_METHODS),
        cascades={**{name: QUERY for name in QUERY_REFINEMENTS}, "ref": REFERENCE},
    ),
    REFERENCE: MethodTable(
        kind=REFERENCE,
        methods={**AUTH_METHODS, **WRITE_METHODS, **READ_METHODS},
        cascades={
            **{name: QUERY for name in QUERY_REFINEMENTS},
            **{name: REFERENCE for name in REFERENCE_NAVIGATION},
            "on_disconnect": ON_DISCONNECT,
        },
    ),
    ON_DISCONNECT: MethodTable(
        kind=ON_DISCONNECT,
        methods=dict(ON_DISCONNECT_METHODS),
        shadow_of=_on_disconnect_of,
    ),
}


# ---------------------------------------------------------------------------
# Instrumented wrapper
# ---------------------------------------------------------------------------


class InstrumentedTarget:
    """Drop-in wrapper around a client object; see module docstring."""

    def __init__(self, target: Any, table: MethodTable, context: Any) -> None:
        object.__setattr__(self, "_target", target)
        object.__setattr__(self, "_table", table)
        object.__setattr__(self, "_context", context)

        for name, spec in table.methods.items():
            if callable(getattr(target, name, None)):
                object.__setattr__(self, name, self._wrap_method(name, spec))
        for name, kind in table.cascades.items():
            if callable(getattr(target, name, None)):
                object.__setattr__(self, name, self._wrap_cascade(name, kind))
        if table.kind == REFERENCE and callable(getattr(target, "push", None)):
            object.__setattr__(self, "push", self._wrap_push())

    # -- delegation -----------------------------------------------------

    def __getattr__(self, name: str) -> Any:
        return getattr(object.__getattribute__(self, "_target"), name)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self._target, name, value)

    def __str__(self) -> str:
        return str(self._target)

    def __repr__(self) -> str:
        return f"InstrumentedTarget({self._target!r}, kind={self._table.kind!r})"

    def unwrap(self) -> Any:
        """The raw client object."""
        return self._target

    @property
    def instrumentation_kind(self) -> str:
        return self._table.kind

    # -- shims ------------------------------------------------------------

    def _wrap_method(self, name: str, spec: MethodSpec) -> Callable[..., Any]:
        original = getattr(self._target, name)

        @functools.wraps(original)
        def shim(*args: Any, **kwargs: Any) -> Any:
            return CompletionAdapter(
                self._context,
                self,
                self._target,
                name,
                spec,
                args,
                kwargs,
                shadow_of=self._table.shadow_of,
            ).run()

        return shim

    def _wrap_cascade(self, name: str, kind: str) -> Callable[..., Any]:
        original = getattr(self._target, name)

        @functools.wraps(original)
        def shim(*args: Any, **kwargs: Any) -> Any:
            return self._context.instrument(original(*args, **kwargs), kind)

        return shim

    def _wrap_push(self) -> Callable[..., Any]:
        original = self._target.push

        @functools.wraps(original)
        def shim(*args: Any, **kwargs: Any) -> Any:
            value = args[0] if args else kwargs.get("value")
            if value is None:
                result = original(*args, **kwargs)
            else:
                result = CompletionAdapter(
                    self._context, self, self._target, "push", PUSH_SPEC, args, kwargs
                ).run()
            return self._context.instrument(result, REFERENCE)

        return shim


def instrument_target(target: Any, kind: str, context: Any) -> InstrumentedTarget:
    return InstrumentedTarget(target, TABLES[kind], context)


__all__ = [
    "REFERENCE",
    "QUERY",
    "ON_DISCONNECT",
    "AUTH_METHODS",
    "WRITE_METHODS",
    "READ_METHODS",
    "ON_DISCONNECT_METHODS",
    "ONCE_SPEC",
    "PUSH_SPEC",
    "QUERY_REFINEMENTS",
    "REFERENCE_NAVIGATION",
    "MethodTable",
    "TABLES",
    "InstrumentedTarget",
    "instrument_target",
]
