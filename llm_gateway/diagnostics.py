from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Deque, List, Set
import asyncio
import logging
import time

import statsd

logger = logging.getLogger(__name__)


@dataclass
class DiagnosticEvent:
    source: str
    error: str
    timestamp: float


class Diagnostics:
    """
    Sink for failures that are swallowed on purpose: best-effort
    bookkeeping and upstream errors whose detail must not reach the caller.
    """

    def __init__(self, metrics: statsd.StatsClient, capacity: int = 100):
        self.metrics = metrics
        self._events: Deque[DiagnosticEvent] = deque(maxlen=capacity)

    def report(self, source: str, exc: BaseException):
        logger.warning("%s failed: %r", source, exc)
        self.metrics.incr(f"errors.{source}")
        self._events.append(DiagnosticEvent(source=source, error=repr(exc), timestamp=time.time()))

    @property
    def events(self) -> List[DiagnosticEvent]:
        return list(self._events)

    def sources(self) -> List[str]:
        return [event.source for event in self._events]


class BestEffortRunner:
    """Runs side effects whose failures are reported but never propagated."""

    def __init__(self, diagnostics: Diagnostics):
        self.diagnostics = diagnostics
        self._tasks: Set[asyncio.Task] = set()

    async def run(self, name: str, operation: Awaitable) -> bool:
        try:
            await operation
            return True
        except Exception as exc:
            self.diagnostics.report(name, exc)
            return False

    def submit(self, name: str, operation: Awaitable) -> asyncio.Task:
        # keep a strong reference until the task is done, the loop only holds weak ones
        task = asyncio.get_running_loop().create_task(self.run(name, operation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
