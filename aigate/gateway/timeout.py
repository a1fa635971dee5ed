"""Deadline wrapper for awaited operations.

`with_timeout` races an awaitable against a deadline. It does NOT cancel
the operation when the deadline fires: the awaitable is shielded and keeps
running in the background, so side effects such as a vendor charge still
happen. Callers that need real cancellation must pass their own signal
into the operation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from aigate.core.config import MIN_TIMEOUT_MS
from aigate.gateway.errors import GatewayTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _drain(task: asyncio.Future) -> None:
    """Retrieve the late result so the loop never reports it as unhandled."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Operation finished after its deadline with %s: %s", type(exc).__name__, exc)


async def with_timeout(operation: Awaitable[T], ms: float) -> T:
    """Await `operation`, raising GatewayTimeout after `ms` milliseconds (min 250)."""
    timeout_ms = max(MIN_TIMEOUT_MS, int(ms))
    task = asyncio.ensure_future(operation)
    try:
        # wait_for owns the timer and cancels it on either settlement path;
        # shield keeps the operation itself alive past the deadline.
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        task.add_done_callback(_drain)
        raise GatewayTimeout(timeout_ms) from None
