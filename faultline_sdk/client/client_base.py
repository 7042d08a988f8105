# faultline_sdk/client/client_base.py
# SPDX-License-Identifier: Apache-2.0
"""
Data client contract consumed by the Faultline instrumentation layer.

Purpose
-------
Faultline never talks to a database itself. It wraps an existing,
callback-terminated realtime data client and observes it. This module pins
down the small surface that wrapping relies on, plus the normalized error
taxonomy that instrumentation uses to classify failures.

Callback convention
-------------------
Every asynchronous client method takes positional arguments with one
designated completion-callback slot. The client invokes that callback once
with ``(error_or_None, *results)``:

    ref.set({"name": "ada"}, on_complete)
    ref.transaction(update_fn, on_complete)     # on_complete(err, committed, snap)
    ref.once("value", on_value, on_failure)     # on_failure(err)

Methods may additionally return a handle (a child reference, a query, an
on-disconnect handle) or an ``asyncio.Future`` settled with the same outcome.

Collaborator surface
--------------------
- ``get_auth()``: current auth claims (a mapping with ``uid``) or None.
- ``fork(log_sink=...)``: unauthenticated secondary client at the same URL
  that writes its diagnostic text to ``log_sink``.
- ``unauth()`` / ``auth(token, on_complete)``: authentication controls.
- ``ref()`` / ``root()`` / ``str(client)``: addressing, used to describe calls.

Error taxonomy
--------------
All client errors SHOULD be ``DataClientError`` subclasses carrying an
upper-snake-case ``code``. Instrumentation only singles out
``PERMISSION_DENIED``; every other code is reported as-is.
"""

from __future__ import annotations

import logging
from typing import (
    Any,
    Callable,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

LOG = logging.getLogger(__name__)

PERMISSION_DENIED = "PERMISSION_DENIED"

CompletionCallback = Callable[..., Any]
LogSink = Callable[[str], None]


# =============================================================================
# Normalized Errors
# =============================================================================

class DataClientError(Exception):
    """
    Base exception for all data client errors.

    Attributes:
        message:
            Human-readable description (safe for logs).
        code:
            Upper-snake-case classification; None for unclassified errors
            (for instance errors a client reported as a bare string).
        details:
            Additional JSON-safe context (never include secrets/PII).
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.code:
            base += f" [code={self.code}]"
        return base


class PermissionDenied(DataClientError):
    """
    The remote rules refused the operation for the current principal.

    This is the only classification eligible for simulation.
    """
    def __init__(self, message: str = "permission_denied", **kwargs: Any):
        kwargs.setdefault("code", PERMISSION_DENIED)
        super().__init__(message, **kwargs)


class AuthError(DataClientError):
    """Invalid, expired or malformed credential."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "INVALID_TOKEN")
        super().__init__(message, **kwargs)


class BadRequest(DataClientError):
    """Malformed arguments (invalid path, unserializable value, ...)."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kwargs)


class Unavailable(DataClientError):
    """Backend unreachable or overloaded."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "UNAVAILABLE")
        super().__init__(message, **kwargs)


class Disconnected(DataClientError):
    """The operation was aborted because the connection went away."""
    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "DISCONNECTED")
        super().__init__(message, **kwargs)


def normalize_error(error: Any) -> BaseException:
    """
    Coerce whatever a client passed as its error argument into an exception.

    Strings (and other non-exception values) become an unclassified
    ``DataClientError`` so downstream handlers can rely on attributes.
    """
    if isinstance(error, BaseException):
        return error
    return DataClientError(str(error))


def error_code(error: Any) -> Optional[str]:
    """Return the classification code of an error, if any."""
    code = getattr(error, "code", None)
    return code if isinstance(code, str) and code else None


def is_permission_denied(error: Any) -> bool:
    return error_code(error) == PERMISSION_DENIED


# =============================================================================
# Client Protocol
# =============================================================================

@runtime_checkable
class DataClientProtocol(Protocol):
    """
    Minimal structural contract of a wrappable client reference.

    Only the members below are required by instrumentation itself; the
    method tables in ``faultline_sdk.instrument.method_table`` decide which
    additional asynchronous methods get wrapped when present.
    """

    def ref(self) -> "DataClientProtocol": ...

    def root(self) -> "DataClientProtocol": ...

    def get_auth(self) -> Optional[Mapping[str, Any]]: ...

    def unauth(self) -> None: ...

    def auth(self, token: str, on_complete: Optional[CompletionCallback] = None) -> Any: ...

    def fork(self, *, log_sink: Optional[LogSink] = None) -> "DataClientProtocol": ...


__all__ = [
    "PERMISSION_DENIED",
    "CompletionCallback",
    "LogSink",
    "DataClientError",
    "PermissionDenied",
    "AuthError",
    "BadRequest",
    "Unavailable",
    "Disconnected",
    "normalize_error",
    "error_code",
    "is_permission_denied",
    "DataClientProtocol",
]
