# faultline_sdk/client/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Data client contract - Public API

Re-exports the client protocol and the normalized error taxonomy.
"""

from faultline_sdk.client.client_base import (
    # Classification
    PERMISSION_DENIED,

    # Callable shapes
    CompletionCallback,
    LogSink,

    # Error types
    DataClientError,
    PermissionDenied,
    AuthError,
    BadRequest,
    Unavailable,
    Disconnected,

    # Error helpers
    normalize_error,
    error_code,
    is_permission_denied,

    # Protocol interface
    DataClientProtocol,
)

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
