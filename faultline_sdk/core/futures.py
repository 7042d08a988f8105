# faultline_sdk/core/futures.py
# SPDX-License-Identifier: Apache-2.0

"""
Future helpers shared by the instrumentation layer and the mock client.
"""

from __future__ import annotations

import asyncio


def consume_exception(future: asyncio.Future) -> None:
    """
    Done-callback marking a future's exception as retrieved.

    Attach it to futures nobody may ever await so the event loop does not
    log "exception was never retrieved" for them.
    """
    if not future.cancelled():
        future.exception()


__all__ = ["consume_exception"]
