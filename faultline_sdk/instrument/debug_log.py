# faultline_sdk/instrument/debug_log.py
# SPDX-License-Identifier: Apache-2.0

"""
Capture of rule-evaluation traces written by a debug-mode client.

A client authenticated with a debug credential writes its rule evaluation to
a text sink, one fragment per write, each prefixed by ``TRACE_MARKER``:

    RULES:\\n /users/ada:.write: "auth != null"
    RULES:\\n    auth = null
    RULES:\\n    => false

``DiagnosticLogCapture`` is that sink. It folds the fragments into one line
per rule, ordered the way a person reads it:

     X write /users/ada "auth != null"
       auth = null

Top-level rule lines are rewritten from ``<path>:.<kind>: ...`` to
``<kind> <path> ...``. A ``=> true`` / ``=> false`` continuation prefixes the
latest rule line with three spaces or `` X `` instead of being stored.
Consecutive indented detail lines collapse to the last one. Text without the
marker is not part of a trace and goes to the regular log.

The format is whatever the client emits; if a client offers structured
evaluation records, feed them here as text or replace this class.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

#: Prefix of every trace fragment; may repeat, each optionally followed by a newline.
TRACE_MARKER = "RULES:"

PASS_PREFIX = "   "
FAIL_PREFIX = " X "

_MARKER_RE = re.compile(r"^(?:\s*" + re.escape(TRACE_MARKER) + r" ?\n?)+")
_RULE_RE = re.compile(r"^(\s*)(.*?):\.(read|write|validate):(.*)$", re.DOTALL)
_RESULT_RE = re.compile(r"^\s+=>\s*(true|false)\b")


class DiagnosticLogCapture:
    """Text sink reassembling rule-evaluation fragments into a trace."""

    def __init__(self, passthrough: Optional[logging.Logger] = None) -> None:
        self._passthrough = passthrough or logger
        self._lines: List[str] = []
        self._last_rule: Optional[int] = None
        self._pending_detail = False

    def __call__(self, text: str) -> None:
        self.write(text)

    def reset(self) -> None:
        self._lines = []
        self._last_rule = None
        self._pending_detail = False

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def drain(self) -> str:
        """Return the trace joined into one string and start a new one."""
        text = "\n".join(self._lines)
        self.reset()
        return text

    def write(self, text: str) -> None:
        match = _MARKER_RE.match(text)
        if match is None:
            self._passthrough.info("%s", text.rstrip("\n"))
            return

        body = text[match.end():].rstrip("\n")
        if body.startswith(" "):
            body = body[1:]
        if not body.strip():
            return

        result = _RESULT_RE.match(body)
        if result is not None:
            if self._last_rule is not None:
                prefix = PASS_PREFIX if result.group(1) == "true" else FAIL_PREFIX
                self._lines[self._last_rule] = prefix + self._lines[self._last_rule]
                self._last_rule = None
            self._pending_detail = False
            return

        line = _RULE_RE.sub(r"\1\3 \2\4", body)
        if body[:1].isspace():
            if self._pending_detail:
                self._lines[-1] = line
            else:
                self._lines.append(line)
                self._pending_detail = True
            return

        self._lines.append(line)
        self._last_rule = len(self._lines) - 1
        self._pending_detail = False


__all__ = [
    "TRACE_MARKER",
    "PASS_PREFIX",
    "FAIL_PREFIX",
    "DiagnosticLogCapture",
]
