# faultline_sdk/core/instrumentation_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Process-wide instrumentation state.

``InstrumentationContext`` carries every registry the instrumentation layer
shares across calls:

- the global error bus (error observers, in registration order),
- slow-write records (in registration order),
- the simulation queue and the permission-denied simulator,
- the permission-debugging configuration,
- the write serial counter,
- the registry of already-instrumented targets.

Typical usage
-------------

    from faultline_sdk.core.instrumentation_context import InstrumentationContext

    ctx = InstrumentationContext()
    ref = ctx.instrument(database.connect())
    ctx.error_bus.register(report_error)

The module-level API in ``faultline_sdk.api`` works on a default context; tests
and multi-tenant hosts create their own. A context starts empty and needs no
teardown: it is garbage once nothing references it.

Notes
-----
- All mutation happens on the event loop thread; there is no locking.
- Instrumented targets are tracked weakly, keyed by the identity of the raw
  client object, so instrumenting the same object twice returns the same
  wrapper without keeping either alive.
"""

from __future__ import annotations

import logging
import weakref
from dataclasses import dataclass, field
from typing import Any, List, Optional

from faultline_sdk.instrument.error_bus import GlobalErrorBus
from faultline_sdk.instrument.method_table import (
    REFERENCE,
    InstrumentedTarget,
    instrument_target,
)
from faultline_sdk.instrument.simulator import (
    PermissionDebugConfig,
    PermissionDeniedSimulator,
    SimulationQueue,
)
from faultline_sdk.instrument.slow_ops import SlowWriteCallback, SlowWriteRecord

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class InstrumentationContext:
    """
    Shared registries for instrumented clients.

    Fields
    ------
    error_bus:
        Global error observers.

    slow_write_records:
        Registered slow-write monitors. Each write call races the records
        present when it starts.

    simulation_queue:
        Serializes permission-denied simulations.

    permission_debug:
        Active permission debugging configuration, or None when disabled.
    """

    error_bus: GlobalErrorBus = field(default_factory=GlobalErrorBus)
    slow_write_records: List[SlowWriteRecord] = field(default_factory=list)
    simulation_queue: SimulationQueue = field(default_factory=SimulationQueue)
    permission_debug: Optional[PermissionDebugConfig] = None

    def __post_init__(self) -> None:
        self.simulator = PermissionDeniedSimulator(self.simulation_queue)
        self._write_serial = 0
        self._instrumented: "weakref.WeakValueDictionary[int, InstrumentedTarget]" = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------ #
    # Instrumentation
    # ------------------------------------------------------------------ #

    def instrument(self, target: Any, kind: str = REFERENCE) -> Any:
        """
        Return the instrumented wrapper of ``target``.

        Wrappers and None pass through unchanged; a raw object already
        instrumented by this context gets its existing wrapper back.
        """
        if target is None or isinstance(target, InstrumentedTarget):
            return target
        existing = self._instrumented.get(id(target))
        if existing is not None and existing.unwrap() is target:
            return existing
        wrapper = instrument_target(target, kind, self)
        self._instrumented[id(target)] = wrapper
        logger.debug("instrumented %s as %s", target, kind)
        return wrapper

    def next_write_serial(self) -> int:
        self._write_serial += 1
        return self._write_serial

    # ------------------------------------------------------------------ #
    # Slow writes
    # ------------------------------------------------------------------ #

    def add_slow_write(self, timeout_ms: float, callback: SlowWriteCallback) -> SlowWriteRecord:
        if timeout_ms <= 0:
            raise ValueError("slow write timeout must be a positive number of milliseconds")
        if not callable(callback):
            raise TypeError("slow write callback must be callable")
        record = SlowWriteRecord(timeout_ms=timeout_ms, callback=callback)
        self.slow_write_records.append(record)
        return record

    def remove_slow_write(self, callback: SlowWriteCallback) -> None:
        """Unregister the first record whose callback is ``callback``."""
        for i, record in enumerate(self.slow_write_records):
            if record.callback is callback:
                del self.slow_write_records[i]
                return


__all__ = [
    "InstrumentationContext",
]
