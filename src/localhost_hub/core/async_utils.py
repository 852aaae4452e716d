"""Async utility functions shared across modules."""

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from typing import Any, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def run_async_with_timeout(coro: Coroutine[Any, Any, T], executor_timeout: float = 10.0) -> T:
    """Run async code like asyncio.run() but with timeout on executor shutdown.

    PortWatcher enumerates sockets in executor threads; a psutil call stuck
    on a slow /proc read must not hang CLI exit.

    Args:
        coro: Coroutine to execute.
        executor_timeout: Timeout in seconds for executor shutdown. Default 10s.

    Returns:
        Result of the coroutine.

    Raises:
        Same exceptions as the coroutine.

    """
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        with contextlib.suppress(Exception):
            loop.run_until_complete(loop.shutdown_asyncgens())

        try:
            loop.run_until_complete(
                asyncio.wait_for(
                    loop.shutdown_default_executor(),
                    timeout=executor_timeout,
                )
            )
        except TimeoutError:
            logger.warning(
                "Executor shutdown timed out after %.1fs - some threads may still be running",
                executor_timeout,
            )
        except Exception as e:
            logger.debug("Executor shutdown error (ignored): %s", e)

        asyncio.set_event_loop(None)
        loop.close()


async def delayed_invoke(delay: float, coro: Coroutine[Any, Any, T]) -> T:
    """Execute coroutine after a delay.

    Used to stagger parallel workspace launches.

    Args:
        delay: Seconds to wait before execution.
        coro: Coroutine to execute.

    Returns:
        Result of the coroutine.

    """
    if delay > 0:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            coro.close()
            raise
    return await coro


async def cancel_and_wait(task: "asyncio.Task[Any] | None") -> None:
    """Cancel a task and wait until it has finished unwinding."""
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
