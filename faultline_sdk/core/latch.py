# faultline_sdk/core/latch.py
# SPDX-License-Identifier: Apache-2.0

"""
Single-assignment latch.

Several completion paths may race to deliver the outcome of one call (the
client's own callback, a finished simulation, a simulation timeout). Each
path calls ``acquire()`` first and only the first caller wins.

The event loop runs one callback at a time, so a plain flag is enough; no
lock is involved.
"""

from __future__ import annotations


class Latch:
    """Open until the first successful ``acquire()``; closed forever after."""

    __slots__ = ("_released",)

    def __init__(self) -> None:
        self._released = False

    def acquire(self) -> bool:
        """Return True exactly once, on the first call."""
        if self._released:
            return False
        self._released = True
        return True

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        return f"Latch(released={self._released})"


__all__ = ["Latch"]
