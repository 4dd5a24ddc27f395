import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace

from formrunner.errors import NotFoundError
from formrunner.forms.urls import build_response_url, build_view_url
from formrunner.models.job import ItemResult, Job, JobItem, clamp_count, clamp_rate_limit
from formrunner.models.target import FieldConfig, FieldSpec, FormMeta, Target
from formrunner.repositories.base import AbstractFormRepository
from formrunner.services import job_machine
from formrunner.services.form_service import FormService
from formrunner.services.generation_service import ContentGenerator
from formrunner.services.job_machine import PREPARE, PROCESS, JobState, Step
from formrunner.services.notifier import StatusNotifier
from formrunner.services.scheduler import AbstractScheduler
from formrunner.services.submission_service import SubmissionService

logger = logging.getLogger(__name__)


class JobService:
    """
    Runs the two pipeline stages for a job. Each invocation reloads state,
    asks ``job_machine.step`` what to do, performs that I/O and schedules
    the follow-up callbacks. Invocations are safe to repeat.
    """

    def __init__(
        self,
        repository: AbstractFormRepository,
        form_service: FormService,
        generator: ContentGenerator,
        submitter: SubmissionService,
        scheduler: AbstractScheduler,
        notifier: StatusNotifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._forms = form_service
        self._generator = generator
        self._submitter = submitter
        self._scheduler = scheduler
        self._notifier = notifier or StatusNotifier()
        self._sleep = sleep
        self._clock = clock
        # job id -> earliest clock reading for the next batch to start
        self._next_slot: dict[str, float] = {}

    @property
    def notifier(self) -> StatusNotifier:
        return self._notifier

    # lookups

    def require_job(self, job_id: str) -> Job:
        job = self._repository.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def get_status(self, job_id: str) -> Job:
        """Current job record. Counters of a finished job are recomputed if they drifted."""
        job = self.require_job(job_id)
        if job.is_terminal and job.submitted + job.failed < job.count:
            counts = self._repository.count_items_by_status(job_id)
            job = replace(
                job,
                submitted=counts.get("completed", 0),
                failed=counts.get("failed", 0),
            )
        return job

    def list_items(self, job_id: str) -> list[JobItem]:
        self.require_job(job_id)
        return self._repository.list_items(job_id)

    # lifecycle

    async def start_job(
        self,
        target_id: str,
        configs: list[FieldConfig],
        count: int,
        rate_limit: float,
    ) -> tuple[Job, bool]:
        """
        Create a job for a target, or return the target's active job unchanged.
        Returns (job, created).
        """
        job, created = self._repository.create_job(
            target_id, configs, clamp_count(count), clamp_rate_limit(rate_limit)
        )
        if not created:
            logger.info(
                "[job] start returned active job | target_id=%s | job_id=%s | status=%s",
                target_id, job.id, job.status,
            )
            return job, False

        logger.info(
            "[job] created | target_id=%s | job_id=%s | count=%d | rate_limit=%s",
            target_id, job.id, job.count, job.rate_limit,
        )
        self._notifier.publish_job(job)
        self._scheduler.schedule(job.id, PREPARE, 0)
        return job, True

    async def resume(self, job_id: str) -> Job:
        """Re-enter the pipeline for an unfinished job. Terminal jobs are returned as-is."""
        job = self.require_job(job_id)
        if job.is_terminal:
            return job
        requeued = self._repository.requeue_running_items(job_id)
        job, _, state = self._load(job_id)
        logger.info("[job] resumed | job_id=%s | status=%s | requeued=%d", job_id, job.status, requeued)
        self._scheduler.schedule(job_id, PREPARE, 0)
        # before the first claim, prepare starts the process chain itself
        if state.process_started:
            self._scheduler.schedule(job_id, PROCESS, 0)
        return job

    def _load(self, job_id: str) -> tuple[Job, Target, JobState]:
        job = self.require_job(job_id)
        target = self._repository.get_target(job.target_id)
        if target is None:
            raise NotFoundError(f"Target not found: {job.target_id}")
        counts = self._repository.count_items_by_status(job_id)
        return job, target, JobState.from_records(job, target.active_job_id, counts)

    def _fail(self, job: Job, message: str) -> Job:
        self._next_slot.pop(job.id, None)
        if self._repository.fail_job(job.id, message):
            logger.error("[job] failed | job_id=%s | error=%s", job.id, message)
        job = self.require_job(job.id)
        self._notifier.publish_job(job)
        return job

    def _follow_up(self, job_id: str, decision: Step) -> None:
        for stage, delay_ms in decision.schedule:
            self._scheduler.schedule(job_id, stage, delay_ms)

    def _decide(self, job: Job, state: JobState, stage: str) -> Step | None:
        """Run the state machine; a crash fails the job so the target is released."""
        try:
            return job_machine.step(state, stage)
        except Exception as exc:
            logger.exception("[job] stage decision failed | job_id=%s | stage=%s", job.id, stage)
            self._fail(job, str(exc) or type(exc).__name__)
            return None

    # prepare stage

    async def prepare(self, job_id: str) -> Job:
        job, target, state = self._load(job_id)
        decision = self._decide(job, state, PREPARE)
        if decision is None:
            return self.require_job(job_id)

        if decision.action == job_machine.NOOP:
            return job
        if decision.action == job_machine.FAIL_SUPERSEDED:
            return self._fail(job, decision.error)
        if decision.action == job_machine.FINISH_PREPARING:
            job = self._repository.mark_prepared_complete(job_id)
            self._notifier.publish_job(job)
            self._follow_up(job_id, decision)
            return job

        try:
            if decision.refresh:
                fields, _ = await self._forms.refresh_target(target)
            else:
                fields = self._repository.list_fields(target.id)
            items = self._repository.list_items_by_status(job_id, "preparing", decision.batch_size)
            records = await self._generator.generate_batch(fields, len(items)) if items else []
        except Exception as exc:
            return self._fail(job, str(exc) or type(exc).__name__)

        job = self._repository.apply_prepared_batch(
            job_id, [(item.id, record) for item, record in zip(items, records)]
        )
        logger.info(
            "[prepare] batch ready | job_id=%s | batch=%d | prepared=%d/%d",
            job_id, len(records), job.prepared, job.count,
        )
        self._notifier.publish_job(job)
        self._follow_up(job_id, decision)
        return job

    # process stage

    async def process(self, job_id: str) -> Job:
        job, target, state = self._load(job_id)
        decision = self._decide(job, state, PROCESS)
        if decision is None:
            return self.require_job(job_id)

        if decision.action == job_machine.NOOP:
            return job
        if decision.action == job_machine.FAIL_SUPERSEDED:
            return self._fail(job, decision.error)
        if decision.action in (job_machine.WAIT_FOR_PREPARE, job_machine.WAIT_FOR_ITEMS):
            self._follow_up(job_id, decision)
            return job
        if decision.action == job_machine.FINALIZE:
            return self._finalize(job_id, decision.delay_ms)

        if decision.status and self._repository.set_job_status(job_id, decision.status):
            job = self.require_job(job_id)
            self._notifier.publish_job(job)

        fields, meta = await self._submission_context(target)
        items = self._repository.claim_queued_items(job_id, decision.batch_size)
        if not items:
            self._scheduler.schedule(job_id, PROCESS, job_machine.WAIT_FOR_ITEMS_MS)
            return job

        results = await self._submit_batch(job, target, items, fields, meta, decision.interval_ms)
        job = self._repository.record_item_results(job_id, results)
        logger.info(
            "[process] batch done | job_id=%s | batch=%d | submitted=%d | failed=%d | count=%d",
            job_id, len(results), job.submitted, job.failed, job.count,
        )
        self._notifier.publish_job(job)

        if job.submitted + job.failed >= job.count:
            return self._finalize(job_id, decision.delay_ms)
        self._scheduler.schedule(job_id, PROCESS, decision.delay_ms)
        return job

    def _finalize(self, job_id: str, retry_delay_ms: int) -> Job:
        job = self._repository.finalize_job(job_id)
        self._notifier.publish_job(job)
        if job.is_terminal:
            self._next_slot.pop(job_id, None)
            logger.info(
                "[job] finished | job_id=%s | status=%s | submitted=%d | failed=%d",
                job_id, job.status, job.submitted, job.failed,
            )
        else:
            self._scheduler.schedule(job_id, PROCESS, retry_delay_ms)
        return job

    async def _submission_context(self, target: Target) -> tuple[list[FieldSpec], FormMeta]:
        fields = self._repository.list_fields(target.id)
        meta = target.meta
        if meta.has_submission_tokens:
            return fields, meta
        try:
            return await self._forms.refresh_target(target)
        except Exception as exc:
            logger.warning(
                "[process] token refresh failed, submitting with stored tokens | target_id=%s | error=%s",
                target.id, exc,
            )
            return fields, meta

    def _batch_start(self, job_id: str) -> float:
        """Batch start time; never earlier than one interval after the previous batch's last slot."""
        now = self._clock()
        return max(now, self._next_slot.get(job_id, now))

    async def _submit_batch(
        self,
        job: Job,
        target: Target,
        items: list[JobItem],
        fields: list[FieldSpec],
        meta: FormMeta,
        interval_ms: float,
    ) -> list[ItemResult]:
        view_url = meta.view_url or build_view_url(target.external_id, target.kind)
        response_url = meta.action_url or build_response_url(target.external_id, target.kind)
        submitted = job.submitted
        failed = job.failed
        results = []

        interval = interval_ms / 1000
        batch_start = self._batch_start(job.id)

        for index, item in enumerate(items):
            # due times count from batch start, not from the previous submission
            due = batch_start + index * interval
            self._next_slot[job.id] = due + interval
            wait = due - self._clock()
            if wait > 0:
                await self._sleep(wait)
            result = await self._submit_item(item, fields, meta, view_url, response_url)
            results.append(result)

            if result.status == "completed":
                submitted += 1
            else:
                failed += 1
            self._notifier.publish_job(replace(job, status="running", submitted=submitted, failed=failed))
        return results

    async def _submit_item(
        self,
        item: JobItem,
        fields: list[FieldSpec],
        meta: FormMeta,
        view_url: str,
        response_url: str,
    ) -> ItemResult:
        try:
            outcome, payload = await self._submitter.submit(
                item.payload or {}, meta, fields, view_url, response_url
            )
        except Exception as exc:
            logger.exception("[process] submission crashed | item_id=%s", item.id)
            return ItemResult(item_id=item.id, status="failed", error=str(exc) or type(exc).__name__)

        return ItemResult(
            item_id=item.id,
            status="completed" if outcome.accepted else "failed",
            response=outcome.diagnostics,
            error=outcome.error,
            payload=payload,
        )
