# faultline_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Diagnostic context attached to client errors.

Every terminal error that passes through an instrumented call is enriched
with an ``extra`` block: a human-readable description of the failing call,
a snapshot of its arguments and, for permission denials, the reconstructed
rule trace from a simulated replay.

The block is stored as exception attributes rather than folded into the
message so the original exception type, message and code reach callers
unchanged.

Typical usage
-------------

    attach_extra(exc, description="set(/users/ada): permission_denied")
    ...
    attach_extra(exc, debug=" X write /users/ada \\"false\\"")

Later, in an error observer:

    def report(error, target, method, args):
        extra = get_extra(error)
        logger.error("client call failed", extra={"call": extra.get("description")})

Attributes set
--------------

* ``extra``: the canonical block, a plain dict. Observers and callbacks are
  expected to read it directly (``error.extra["debug"]``).

* ``__faultline_context__``: the same dict under a namespaced attribute, for
  discoverability in debuggers when ``extra`` is shadowed by an exception
  class that already uses that name for something else.

Multiple calls merge; later keys win.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, MutableMapping

logger = logging.getLogger(__name__)

_CONTEXT_ATTR = "__faultline_context__"


def attach_extra(exc: BaseException, **fields: Any) -> Dict[str, Any]:
    """
    Merge ``fields`` into the diagnostic block of ``exc`` and return the block.

    Attachment is best-effort: failures (for instance exceptions defining
    ``__slots__``) are logged at debug level and never propagate, so the
    original error always reaches its handlers.
    """
    merged: MutableMapping[str, Any] = {}
    try:
        existing = getattr(exc, _CONTEXT_ATTR, None)
        if isinstance(existing, Mapping):
            merged.update(existing)
        merged.update(fields)
        setattr(exc, _CONTEXT_ATTR, merged)
        setattr(exc, "extra", merged)
    except Exception as attachment_error:  # noqa: BLE001
        logger.debug(
            "Failed to attach diagnostic context to %s: %s",
            type(exc).__name__,
            attachment_error,
        )
    return dict(merged)


def get_extra(exc: BaseException) -> Mapping[str, Any]:
    """Return the diagnostic block of ``exc``, or an empty dict."""
    ctx = getattr(exc, _CONTEXT_ATTR, None)
    if isinstance(ctx, Mapping):
        return ctx
    return {}


def has_extra(exc: BaseException) -> bool:
    return len(get_extra(exc)) > 0


__all__ = [
    "attach_extra",
    "get_extra",
    "has_extra",
]
