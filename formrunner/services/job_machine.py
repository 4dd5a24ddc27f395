"""
Pure decision logic for the two pipeline stages.

``step`` looks only at persisted counters, the target's active-job reference
and per-status item counts, and returns what one stage invocation must do.
It never performs I/O, so it can be exercised without a scheduler, a
database or the network. ``JobService`` executes the returned ``Step``.
"""
import math
from dataclasses import dataclass

from formrunner.models.job import MAX_RATE_LIMIT, TERMINAL_STATUSES, Job

PREPARE = "prepare"
PROCESS = "process"
STAGES = (PREPARE, PROCESS)

MIN_BATCH = 3
MAX_BATCH = 25
MIN_INTERVAL_MS = 150
MIN_PROCESS_DELAY_MS = 500
PREPARE_CONTINUE_MS = 1000
WAIT_FOR_PREPARE_MS = 500
WAIT_FOR_ITEMS_MS = 1000

SUPERSEDED_MESSAGE = "Job superseded by another active job."

# actions
NOOP = "noop"
FAIL_SUPERSEDED = "fail_superseded"
GENERATE = "generate"
FINISH_PREPARING = "finish_preparing"
WAIT_FOR_PREPARE = "wait_for_prepare"
SUBMIT = "submit"
FINALIZE = "finalize"
WAIT_FOR_ITEMS = "wait_for_items"


def batch_size(rate_limit: float) -> int:
    return min(MAX_BATCH, max(MIN_BATCH, math.ceil(min(rate_limit, MAX_RATE_LIMIT) * 3)))


def submit_interval_ms(rate_limit: float) -> float:
    return max(1000.0 / rate_limit, MIN_INTERVAL_MS)


def next_process_delay_ms(rate_limit: float, batch_len: int) -> int:
    return int(max(MIN_PROCESS_DELAY_MS, submit_interval_ms(rate_limit) * batch_len))


def aggregate_status(count: int, completed: int, failed: int) -> str | None:
    """Final job status once every item is terminal, else None."""
    if completed + failed < count:
        return None
    return "failed" if failed else "completed"


@dataclass(frozen=True)
class JobState:
    job_id: str
    status: str
    count: int
    rate_limit: float
    prepared: int
    active_job_id: str | None
    preparing: int = 0
    queued: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_records(
        cls, job: Job, active_job_id: str | None, counts: dict[str, int]
    ) -> "JobState":
        return cls(
            job_id=job.id,
            status=job.status,
            count=job.count,
            rate_limit=job.rate_limit,
            prepared=job.prepared,
            active_job_id=active_job_id,
            preparing=counts.get("preparing", 0),
            queued=counts.get("queued", 0),
            running=counts.get("running", 0),
            completed=counts.get("completed", 0),
            failed=counts.get("failed", 0),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_superseded(self) -> bool:
        return self.active_job_id is not None and self.active_job_id != self.job_id

    @property
    def process_started(self) -> bool:
        """A process invocation has already claimed work, so its callback chain is alive."""
        return self.status == "running" or self.running > 0 or self.completed + self.failed > 0


@dataclass(frozen=True)
class Step:
    action: str
    # status to persist before the work starts
    status: str | None = None
    # re-extract and reconcile the target before generating
    refresh: bool = False
    batch_size: int = 0
    interval_ms: float = 0.0
    # delay for the follow-up process callback when work remains
    delay_ms: int = 0
    schedule: tuple[tuple[str, int], ...] = ()
    error: str | None = None


def step(state: JobState, stage: str) -> Step:
    if stage not in STAGES:
        raise ValueError(f"Unknown stage: {stage}")
    if state.is_terminal:
        return Step(NOOP)
    if state.is_superseded:
        return Step(FAIL_SUPERSEDED, status="failed", error=SUPERSEDED_MESSAGE)
    if stage == PREPARE:
        return _step_prepare(state)
    return _step_process(state)


def _start_process(state: JobState) -> tuple[tuple[str, int], ...]:
    # process keeps itself scheduled once it runs; prepare only starts it
    if state.process_started:
        return ()
    return ((PROCESS, 0),)


def _step_prepare(state: JobState) -> Step:
    if state.preparing == 0:
        return Step(FINISH_PREPARING, schedule=_start_process(state))

    size = min(batch_size(state.rate_limit), state.preparing)
    follow_up = _start_process(state)
    if state.preparing > size:
        follow_up += ((PREPARE, PREPARE_CONTINUE_MS),)
    return Step(
        GENERATE,
        refresh=state.prepared == 0,
        batch_size=size,
        schedule=follow_up,
    )


def _step_process(state: JobState) -> Step:
    if state.status == "preparing" and state.queued == 0:
        return Step(WAIT_FOR_PREPARE, schedule=((PREPARE, WAIT_FOR_PREPARE_MS),))

    if state.queued == 0:
        if state.prepared >= state.count:
            return Step(FINALIZE, delay_ms=WAIT_FOR_ITEMS_MS)
        return Step(WAIT_FOR_ITEMS, schedule=((PROCESS, WAIT_FOR_ITEMS_MS),))

    size = batch_size(state.rate_limit)
    return Step(
        SUBMIT,
        status="running" if state.status != "running" else None,
        batch_size=size,
        interval_ms=submit_interval_ms(state.rate_limit),
        delay_ms=next_process_delay_ms(state.rate_limit, min(size, state.queued)),
    )
