import json
import logging

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from formrunner.schemas.jobs import JobItemResponse, JobResponse, PreviewResponse, StartJobResponse
from formrunner.schemas.targets import (
    LoadTargetRequest,
    PreviewRequest,
    StartJobRequest,
    TargetResponse,
    UpdateFieldsRequest,
)
from formrunner.services.notifier import status_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@router.post("/targets", response_model=TargetResponse)
async def load_target(payload: LoadTargetRequest, request: Request) -> TargetResponse:
    snapshot = await request.app.state.form_service.load_target(payload.url)
    return TargetResponse.from_snapshot(snapshot)


@router.get("/targets/{target_id}", response_model=TargetResponse)
async def get_target(target_id: str, request: Request) -> TargetResponse:
    return TargetResponse.from_snapshot(request.app.state.form_service.get_target(target_id))


@router.put("/targets/{target_id}/fields", response_model=TargetResponse)
async def update_fields(
    target_id: str, payload: UpdateFieldsRequest, request: Request
) -> TargetResponse:
    form_service = request.app.state.form_service
    form_service.update_field_configs(target_id, [field.to_config() for field in payload.fields])
    return TargetResponse.from_snapshot(form_service.get_target(target_id))


@router.post("/targets/{target_id}/jobs", response_model=StartJobResponse)
async def start_job(target_id: str, payload: StartJobRequest, request: Request) -> StartJobResponse:
    request.app.state.form_service.require_target(target_id)
    job, created = await request.app.state.job_service.start_job(
        target_id,
        [field.to_config() for field in payload.fields],
        payload.count,
        payload.rate_limit,
    )
    return StartJobResponse(created=created, job=JobResponse.from_job(job))


@router.post("/targets/{target_id}/previews", response_model=PreviewResponse)
async def preview(target_id: str, payload: PreviewRequest, request: Request) -> PreviewResponse:
    fields = request.app.state.form_service.configured_fields(
        target_id, [field.to_config() for field in payload.fields]
    )
    samples = await request.app.state.generator.generate_preview(fields, payload.count)
    return PreviewResponse(samples=samples)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, request: Request) -> JobResponse:
    return JobResponse.from_job(request.app.state.job_service.get_status(job_id))


@router.get("/jobs/{job_id}/items", response_model=list[JobItemResponse])
async def list_job_items(job_id: str, request: Request) -> list[JobItemResponse]:
    items = request.app.state.job_service.list_items(job_id)
    return [JobItemResponse.from_item(item) for item in items]


@router.post("/jobs/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: str, request: Request) -> JobResponse:
    return JobResponse.from_job(await request.app.state.job_service.resume(job_id))


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, request: Request) -> EventSourceResponse:
    job_service = request.app.state.job_service
    job = job_service.get_status(job_id)

    async def event_stream():
        yield {"event": "status", "data": json.dumps(status_event(job))}
        if job.is_terminal:
            return
        async for event in job_service.notifier.stream(job_id):
            if await request.is_disconnected():
                logger.debug("[events] client disconnected | job_id=%s", job_id)
                return
            yield {"event": "status", "data": json.dumps(event)}

    return EventSourceResponse(event_stream())
