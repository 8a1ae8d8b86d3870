import asyncio
import logging
from typing import Iterable, List


logger = logging.getLogger(__name__)


async def cancel_and_wait(tasks: Iterable[asyncio.Task]) -> None:
    task_list: List[asyncio.Task] = [t for t in tasks if t is not None]
    for t in task_list:
        if not t.done():
            t.cancel()
    if task_list:
        await asyncio.gather(*task_list, return_exceptions=True)


def log_task_failure(task: asyncio.Task) -> None:
    """Done-callback that surfaces exceptions of fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed: %r", task.get_name(), exc)
