"""
Timeout wrapper bounding the wall-clock duration of awaited work.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Union

from flowguard.event_log import EventType, log_event

logger = logging.getLogger("timeouts")


class OperationTimeoutError(TimeoutError):
    """The bound elapsed before the operation finished."""
    def __init__(self, timeout: float, elapsed: float, message: str = "Operation timed out"):
        self.timeout = timeout
        self.elapsed = elapsed
        super().__init__(f"{message} after {timeout:.3f}s")


def _discard_late_outcome(task: asyncio.Future):
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("Discarding late failure of timed-out operation: %s", error)
    else:
        logger.debug("Discarding late result of timed-out operation")


async def with_timeout(
    operation: Union[Awaitable[Any], Callable[[], Awaitable[Any]]],
    timeout: float,
    message: str = "Operation timed out",
    cancel_on_timeout: bool = False
) -> Any:
    """
    Race operation against a timer of `timeout` seconds.

    The abandoned operation keeps running unless cancel_on_timeout is set;
    its eventual result or error is discarded.

    Raises:
        OperationTimeoutError: when the bound elapses first
    """
    awaitable = operation() if callable(operation) and not inspect.isawaitable(operation) else operation
    task = asyncio.ensure_future(awaitable)
    started = time.monotonic()

    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.add_done_callback(_discard_late_outcome)
        raise

    if task in done:
        return task.result()

    elapsed = time.monotonic() - started
    task.add_done_callback(_discard_late_outcome)
    if cancel_on_timeout:
        task.cancel()

    logger.warning("%s after %.3fs", message, timeout)
    log_event(EventType.OPERATION_TIMED_OUT, {"timeout_seconds": timeout, "elapsed_seconds": elapsed, "message": message})
    raise OperationTimeoutError(timeout, elapsed, message)


async def detach_on_cancel(operation: Callable[[], Awaitable[Any]]) -> Any:
    """
    Await operation in its own task. If the caller is cancelled, the
    operation keeps running and its eventual outcome is discarded.
    """
    task = asyncio.ensure_future(operation())
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            task.add_done_callback(_discard_late_outcome)
        raise
