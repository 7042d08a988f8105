# faultline_sdk/instrument/error_bus.py
# SPDX-License-Identifier: Apache-2.0

"""
Global error bus.

Every terminal error of every instrumented call is published here, unless
the caller's own completion callback returned (or was) ``IGNORE_ERROR``.
Observers are notified in registration order with
``(error, target, method_name, args)``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Sequence, Tuple

logger = logging.getLogger(__name__)

ErrorObserver = Callable[[BaseException, Any, str, Sequence[Any]], Any]


class _IgnoreError:
    """
    Suppression sentinel.

    A completion callback returns this value to keep its error away from
    global observers. The sentinel is itself callable and returns itself, so
    it can also be passed directly as the completion callback:

        ref.set(value, IGNORE_ERROR)
    """

    _instance = None

    def __new__(cls) -> "_IgnoreError":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __call__(self, *args: Any, **kwargs: Any) -> "_IgnoreError":
        return self

    def __repr__(self) -> str:
        return "IGNORE_ERROR"


IGNORE_ERROR = _IgnoreError()


class GlobalErrorBus:
    """Identity-keyed, insertion-ordered registry of error observers."""

    def __init__(self) -> None:
        self._observers: List[ErrorObserver] = []

    def register(self, callback: ErrorObserver) -> ErrorObserver:
        if not callable(callback):
            raise TypeError(f"error observer must be callable, got {type(callback).__name__}")
        self._observers.append(callback)
        return callback

    def unregister(self, callback: ErrorObserver) -> None:
        """Remove the first registration of ``callback``; unknown callbacks are ignored."""
        for i, observer in enumerate(self._observers):
            if observer is callback:
                del self._observers[i]
                return

    @property
    def observers(self) -> Tuple[ErrorObserver, ...]:
        return tuple(self._observers)

    def __len__(self) -> int:
        return len(self._observers)

    def publish(
        self,
        error: BaseException,
        target: Any,
        method_name: str,
        args: Sequence[Any],
    ) -> None:
        # Snapshot: observers may unregister themselves while being notified.
        for observer in tuple(self._observers):
            try:
                observer(error, target, method_name, args)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "error observer %r failed while handling %s",
                    observer,
                    type(error).__name__,
                    extra={"method": method_name},
                )


__all__ = [
    "ErrorObserver",
    "IGNORE_ERROR",
    "GlobalErrorBus",
]
