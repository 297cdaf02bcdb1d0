"""
Periodic task runner shared by every engine loop.

A loop sleeps on the shared stop event rather than ``asyncio.sleep`` so a
shutdown wakes it immediately. Once the event is set no new cycle starts;
a cycle already running is left to finish.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from lpguard.core.json_utils import dumps

log = logging.getLogger("lpguard")


async def wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout``; True if the stop event fired meanwhile."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


async def run_periodic(
    name: str,
    fn: Callable[[], Awaitable[Any]],
    interval: float,
    stop_event: asyncio.Event,
    metrics: Optional[Any] = None,
    run_immediately: bool = True,
) -> None:
    """
    Call ``fn`` every ``interval`` seconds until ``stop_event`` is set.

    An exception from one cycle is logged and counted; the next tick runs
    as usual.
    """
    if not run_immediately and await wait_or_stop(stop_event, interval):
        return
    while not stop_event.is_set():
        try:
            await fn()
            if metrics is not None:
                metrics.loop_cycles.labels(loop=name).inc()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if metrics is not None:
                metrics.loop_errors.labels(loop=name, kind=type(exc).__name__).inc()
            log.error(dumps({"event": "loop_error", "loop": name, "err": str(exc)}), exc_info=True)
        if await wait_or_stop(stop_event, interval):
            break
    log.info(dumps({"event": "loop_stopped", "loop": name}))
