"""Running blocking driver calls from async code.

pyodbc calls cannot be interrupted once started, so a cancelled coroutine
must not return before its worker thread has finished with the connection.
"""

import asyncio
import threading
from typing import Any, Callable, Optional

from sqlbulk.utils.logging import logger


async def checkpoint() -> None:
    """Yield to the event loop so a pending cancellation is raised before the next I/O."""
    await asyncio.sleep(0)


async def _wait_for_worker(task: "asyncio.Future") -> None:
    while not task.done():
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            continue
    if not task.cancelled() and task.exception() is not None:
        error = task.exception()
        logger.warning(
            "Blocking call failed after cancellation",
            error_type=type(error).__name__,
            error_message=str(error),
        )


async def run_blocking(
    func: Callable[..., Any], *args: Any, stop: Optional[threading.Event] = None
) -> Any:
    """
    Run func(*args) in a worker thread.

    On cancellation, ``stop`` is set so the worker can end early, and the
    CancelledError is re-raised only once the worker has returned.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if stop is not None:
            stop.set()
        await _wait_for_worker(task)
        raise
