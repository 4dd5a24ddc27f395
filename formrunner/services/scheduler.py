import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from formrunner.services.job_machine import STAGES

logger = logging.getLogger(__name__)

StageHandler = Callable[[str], Awaitable[object]]


class AbstractScheduler(ABC):
    @abstractmethod
    def schedule(self, job_id: str, stage: str, delay_ms: int) -> None:
        """Invoke ``stage`` for ``job_id`` after ``delay_ms``. Delivery is at-least-once."""


class AsyncioScheduler(AbstractScheduler):
    """
    In-process delayed callbacks on the running event loop.
    Each invocation is an independent task; a crash is logged and never
    propagates to the caller that scheduled it.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, StageHandler] = {}
        self._tasks: set[asyncio.Task] = set()

    def register(self, stage: str, handler: StageHandler) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        self._handlers[stage] = handler

    def schedule(self, job_id: str, stage: str, delay_ms: int) -> None:
        if stage not in self._handlers:
            raise ValueError(f"No handler registered for stage: {stage}")
        task = asyncio.get_running_loop().create_task(self._run(job_id, stage, delay_ms))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("[scheduler] scheduled | job_id=%s | stage=%s | delay_ms=%d", job_id, stage, delay_ms)

    async def _run(self, job_id: str, stage: str, delay_ms: int) -> None:
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
        try:
            await self._handlers[stage](job_id)
        except Exception:
            logger.exception("[scheduler] stage crashed | job_id=%s | stage=%s", job_id, stage)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("[scheduler] cancelled pending callbacks | count=%d", len(tasks))
