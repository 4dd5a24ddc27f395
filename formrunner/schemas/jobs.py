from datetime import datetime

from pydantic import BaseModel

from formrunner.models.job import Job, JobItem


class JobResponse(BaseModel):
    id: str | None
    target_id: str
    status: str
    count: int
    rate_limit: float
    prepared: int
    submitted: int
    failed: int
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            target_id=job.target_id,
            status=job.status,
            count=job.count,
            rate_limit=job.rate_limit,
            prepared=job.prepared,
            submitted=job.submitted,
            failed=job.failed,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class StartJobResponse(BaseModel):
    created: bool
    job: JobResponse


class JobItemResponse(BaseModel):
    id: str | None
    index: int
    status: str
    payload: dict | None = None
    response: dict | None = None
    error: str | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_item(cls, item: JobItem) -> "JobItemResponse":
        return cls(
            id=item.id,
            index=item.index,
            status=item.status,
            payload=item.payload,
            response=item.response,
            error=item.error,
            completed_at=item.completed_at,
        )


class PreviewResponse(BaseModel):
    samples: list[dict]
