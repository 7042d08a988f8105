# faultline_sdk/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Faultline SDK - Public API

Error reporting, slow-write detection and permission-denied diagnostics for
callback-based realtime data clients. Registration functions and the
suppression sentinel are re-exported here for clean imports.
"""

from faultline_sdk.api import (
    # Sentinel
    IGNORE_ERROR,

    # Context management
    get_default_context,
    reset_default_context,

    # Instrumentation
    instrument,

    # Error observers
    on_error,
    off_error,

    # Slow writes
    on_slow_write,
    off_slow_write,

    # Permission debugging
    debug_permission_denied_errors,
)
from faultline_sdk.core.error_context import get_extra
from faultline_sdk.core.instrumentation_context import InstrumentationContext

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
    "get_extra",
    "InstrumentationContext",
]
