"""
Task supervisor.

Runs a fixed set of long-lived tasks for one process and applies the fatal
error policy: the first task to fail (or finish unexpectedly) cancels all the
others, and its exception is re-raised to the caller. main.py maps FatalError
to exit code 1.
"""

import asyncio
import logging
from typing import Awaitable, Dict, List, Optional

from .errors import FatalError

logger = logging.getLogger(__name__)


class Supervisor:
    """
    Usage:
        supervisor = Supervisor()
        supervisor.add("controller", controller.run())
        supervisor.add("transport-reader", transport.reader_loop())
        await supervisor.run()
    """

    def __init__(self):
        self._coros: Dict[str, Awaitable] = {}
        self._tasks: List[asyncio.Task] = []
        self._stopping = False

    def add(self, name: str, coro: Awaitable):
        if name in self._coros:
            raise ValueError(f"Task {name!r} already registered")
        self._coros[name] = coro

    @property
    def task_names(self) -> List[str]:
        return list(self._coros)

    async def run(self) -> Optional[str]:
        """
        Run every registered task until one ends.

        Returns:
            The name of the task that finished normally (a clean shutdown),
            after cancelling the rest, or None when stop() was called.

        Raises:
            The first exception raised by any task.
        """
        self._tasks = [
            asyncio.create_task(coro, name=name) for name, coro in self._coros.items()
        ]
        logger.info(f"Supervisor started {len(self._tasks)} tasks: {', '.join(self._coros)}")

        try:
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self._cancel_all()

        # Prefer reporting a failure over a clean exit when both happened
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                error = task.exception()
                if isinstance(error, FatalError):
                    logger.critical(f"Fatal error in {task.get_name()}: {type(error).__name__}: {error}")
                else:
                    logger.critical(f"Unexpected error in {task.get_name()}: {type(error).__name__}: {error}")
                raise error

        if self._stopping:
            logger.info("Supervisor stopped on request")
            return None

        finished = next(iter(done)).get_name()
        logger.info(f"Task {finished} finished; supervisor stopped")
        return finished

    def stop(self):
        """Cancel every task (e.g. on SIGINT/SIGTERM)."""
        self._stopping = True
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def _cancel_all(self):
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
