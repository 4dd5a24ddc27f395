import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator

from formrunner.models.job import Job

logger = logging.getLogger(__name__)

QUEUE_SIZE = 100


def status_event(job: Job) -> dict:
    return {
        "job_id": job.id,
        "status": job.status,
        "submitted": job.submitted,
        "failed": job.failed,
        "prepared": job.prepared,
    }


class StatusNotifier:
    """
    Best-effort fan-out of job status events to live subscribers.
    Events may be dropped; the stored job record stays authoritative.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def publish(self, event: dict) -> None:
        try:
            for queue in list(self._subscribers.get(event["job_id"], ())):
                try:
                    queue.put_nowait(event)
                except asyncio.QueueFull:
                    logger.debug("[notify] subscriber queue full | job_id=%s", event["job_id"])
        except Exception:
            logger.exception("[notify] publish failed | event=%s", event)

    def publish_job(self, job: Job) -> None:
        self.publish(status_event(job))

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=QUEUE_SIZE)
        self._subscribers[job_id].add(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(job_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[job_id]

    async def stream(self, job_id: str) -> AsyncIterator[dict]:
        """Yield events for one job until a terminal status is seen."""
        queue = self.subscribe(job_id)
        try:
            while True:
                event = await queue.get()
                yield event
                if event["status"] in ("completed", "failed"):
                    return
        finally:
            self.unsubscribe(job_id, queue)
