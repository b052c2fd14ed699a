"""
Response serialization.

The inference service only supports one response generation at a time per
session. Every response.create goes through a ResponseScheduler: a single
active flag plus a FIFO queue of deferred requests.

    request(kind, payload)
        active == False -> execute now, active = True
        active == True  -> append to the queue
    complete()
        queue non-empty -> pop the oldest request and execute it (active stays True)
        queue empty     -> active = False

The scheduler is owned exclusively by the controller task; it is not
thread-safe and needs no lock.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, List, Optional

from ..performance.metrics import get_metrics

logger = logging.getLogger(__name__)


class ResponseKind(Enum):
    """Why a response is being requested."""
    PROMPT_EXTRACTION = "prompt_extraction"
    ACKNOWLEDGMENT = "acknowledgment"
    PROMPT_OUTCOME = "prompt_outcome"


@dataclass
class PendingResponseRequest:
    """A deferred response.create waiting for the active response to finish."""
    kind: ResponseKind
    payload: dict
    sequence: int
    enqueued_at: float = field(default_factory=time.monotonic)


ResponseExecutor = Callable[[PendingResponseRequest], Awaitable[None]]


class ResponseScheduler:
    """
    At most one active response; everything else waits in submission order.

    Args:
        execute: Coroutine that actually sends the response request.
    """

    def __init__(self, execute: ResponseExecutor):
        self._execute = execute
        self._active = False
        self._current: Optional[PendingResponseRequest] = None
        self._queue: Deque[PendingResponseRequest] = deque()
        self._sequence = 0
        self._executed: List[ResponseKind] = []
        self._metrics = get_metrics()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def current(self) -> Optional[PendingResponseRequest]:
        return self._current

    @property
    def depth(self) -> int:
        return len(self._queue)

    @property
    def executed_kinds(self) -> List[ResponseKind]:
        """Kinds of every request executed so far, in execution order."""
        return list(self._executed)

    async def request(self, kind: ResponseKind, payload: dict) -> PendingResponseRequest:
        """Execute immediately when idle, otherwise enqueue behind the active response."""
        self._sequence += 1
        pending = PendingResponseRequest(kind=kind, payload=payload, sequence=self._sequence)

        if not self._active:
            self._active = True
            await self._run(pending)
        else:
            self._queue.append(pending)
            self._metrics.set_response_queue_depth(len(self._queue))
            logger.info(
                f"Response in progress, queued {kind.value} request "
                f"#{pending.sequence} (depth={len(self._queue)})"
            )
        return pending

    async def complete(self):
        """The active response finished: run the next queued request, or go idle."""
        if not self._active:
            logger.warning("Response completion with no active response; ignoring")
            return

        if self._queue:
            pending = self._queue.popleft()
            self._metrics.set_response_queue_depth(len(self._queue))
            wait_ms = (time.monotonic() - pending.enqueued_at) * 1000
            logger.info(
                f"Processing queued {pending.kind.value} request "
                f"#{pending.sequence} after {wait_ms:.0f}ms"
            )
            await self._run(pending)
        else:
            self._active = False
            self._current = None

    async def _run(self, pending: PendingResponseRequest):
        self._current = pending
        self._executed.append(pending.kind)
        await self._execute(pending)
