# faultline_sdk/instrument/slow_ops.py
# SPDX-License-Identifier: Apache-2.0

"""
Slow write tracking.

Each write-category call races one timer per slow-write record registered
when the call started. A timer that fires before the call completes counts
the call as slow (``+1``); when the call eventually completes, every fired
timer is balanced with exactly one ``-1``. Observers receive

    callback(count, delta, description, serial)

whenever the outstanding count of their record changes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

SlowWriteCallback = Callable[[int, int, str, int], object]


@dataclass(eq=False)
class SlowWriteRecord:
    """A registered slow-write monitor; ``count`` is the number of outstanding slow calls."""
    timeout_ms: float
    callback: SlowWriteCallback
    count: int = 0


@dataclass(eq=False)
class PerCallTimeout:
    record: SlowWriteRecord
    handle: Optional[asyncio.TimerHandle] = None
    fired: bool = False
    canceled: bool = False


class SlowOperationTracker:
    """Timer race for a single write call."""

    def __init__(
        self,
        records: Sequence[SlowWriteRecord],
        description: str,
        serial: int,
    ) -> None:
        self.description = description
        self.serial = serial
        self._timeouts: List[PerCallTimeout] = [PerCallTimeout(record) for record in records]
        self._finished = False

    @property
    def timeouts(self) -> Sequence[PerCallTimeout]:
        return tuple(self._timeouts)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        for timeout in self._timeouts:
            timeout.handle = loop.call_later(
                timeout.record.timeout_ms / 1000.0, self._fire, timeout
            )

    def _fire(self, timeout: PerCallTimeout) -> None:
        if timeout.canceled or timeout.fired:
            return
        timeout.fired = True
        record = timeout.record
        record.count += 1
        self._notify(record, +1)

    def finish(self) -> None:
        """Cancel pending timers and balance fired ones. Idempotent."""
        if self._finished:
            return
        self._finished = True
        for timeout in self._timeouts:
            timeout.canceled = True
            if timeout.handle is not None:
                timeout.handle.cancel()
            if timeout.fired:
                record = timeout.record
                record.count -= 1
                self._notify(record, -1)

    def _notify(self, record: SlowWriteRecord, delta: int) -> None:
        try:
            record.callback(record.count, delta, self.description, self.serial)
        except Exception:  # noqa: BLE001
            logger.exception(
                "slow write observer %r failed",
                record.callback,
                extra={"call": self.description, "serial": self.serial},
            )


__all__ = [
    "SlowWriteCallback",
    "SlowWriteRecord",
    "PerCallTimeout",
    "SlowOperationTracker",
]
