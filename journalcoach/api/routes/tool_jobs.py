"""FastAPI routes for tool-generation jobs run through the external queue."""

import json

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse

from journalcoach.api.deps import (
    get_current_user_id,
    get_services,
    get_tool_job_service,
)
from journalcoach.api.schemas import JobResponse, StartedJobResponse, ToolJobRequest
from journalcoach.db.models import Job
from journalcoach.errors import QueueCallbackError, ValidationError
from journalcoach.services.job_runner import ToolJobService
from journalcoach.services.pipeline import PipelineServices
from journalcoach.services.queue_client import SIGNATURE_HEADER

router = APIRouter(prefix="/tools/jobs", tags=["tool-jobs"])


@router.post("", response_model=StartedJobResponse, status_code=202)
async def enqueue_tool_job(
    body: ToolJobRequest,
    user_id: str = Depends(get_current_user_id),
    service: ToolJobService = Depends(get_tool_job_service),
) -> StartedJobResponse:
    """Queue a tool generation; answers 503 when the queue is not configured."""
    job, existing = await service.enqueue(
        user_id,
        body.tool_id,
        body.feedback,
        current_title=body.current_title,
        current_html=body.current_html,
    )
    return StartedJobResponse(
        job_id=job.id,
        status=job.status,
        status_url=f"/api/v1/tools/jobs/{job.id}",
        existing=existing,
    )


@router.post("/callback")
async def tool_job_callback(
    request: Request,
    upstash_signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    services: PipelineServices = Depends(get_services),
    service: ToolJobService = Depends(get_tool_job_service),
) -> JSONResponse:
    """Queue delivery endpoint.

    Duplicate deliveries of a finished job answer 200 with
    already_completed/already_failed. A failed generation answers 500
    after recording FAILED so the queue's retry short-circuits.
    """
    raw = await request.body()
    services.verifier.verify(upstash_signature, raw)
    try:
        payload = json.loads(raw or b"{}")
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON body: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Callback body must be a JSON object")

    try:
        outcome = await service.handle_callback(payload)
    except QueueCallbackError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Tool generation failed", "details": str(e)},
        )
    return JSONResponse(content=outcome.to_dict())


@router.get("/{job_id}", response_model=JobResponse)
def get_tool_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    service: ToolJobService = Depends(get_tool_job_service),
) -> Job:
    """Poll a tool job; on completion the buffer holds the tool JSON."""
    return service.poll(user_id, job_id)
