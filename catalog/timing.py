"""Timing boundary for core operations.

``timed`` is called explicitly at the top of each public operation; it logs
the elapsed time and feeds the ``operation_latency_seconds`` histogram.
"""

import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from . import metrics

log = logging.getLogger(__name__)

T = TypeVar("T")


async def timed(
    op: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
) -> T:
    """Await ``fn(*args, **kwargs)`` and log how long it took, even on failure."""
    t0 = time.perf_counter()
    ok = False
    try:
        result = await fn(*args, **kwargs)
        ok = True
        return result
    finally:
        elapsed = time.perf_counter() - t0
        metrics.observe_operation(op, elapsed)
        log.info("timing op=%s ok=%s elapsed_ms=%.1f", op, ok, elapsed * 1000)
