"""FastAPI routes for chat jobs.

A chat job returns immediately with a job id; the reply is generated by
a background task into the job's buffer. Clients poll the job, and tell
the server when they detach so the finished reply is pushed right away.
"""

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from journalcoach.api.deps import get_chat_runner, get_current_user_id
from journalcoach.api.schemas import (
    ChatJobRequest,
    JobClientUpdate,
    JobResponse,
    StartedJobResponse,
)
from journalcoach.db.connection import get_db
from journalcoach.db.models import Job
from journalcoach.services.job_runner import ChatJobRunner
from journalcoach.services.job_service import JobService

router = APIRouter(prefix="/coach/jobs", tags=["coach-jobs"])


@router.post("", response_model=StartedJobResponse, status_code=202)
def start_chat_job(
    body: ChatJobRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    runner: ChatJobRunner = Depends(get_chat_runner),
) -> StartedJobResponse:
    """Start generating a reply in the background.

    Returns the existing job (existing=true) when the reply already has
    an active one.
    """
    started = runner.start(
        db,
        user_id,
        text=body.message,
        conversation_id=body.conversation_id,
        initial_assistant_message=body.initial_assistant_message,
        message_id=body.message_id,
    )
    job = started.job
    if not started.existing:
        background_tasks.add_task(runner.process, job.id)
    return StartedJobResponse(
        job_id=job.id,
        status=job.status,
        status_url=f"/api/v1/coach/jobs/{job.id}",
        existing=started.existing,
        conversation_id=job.conversation_id,
        message_id=job.related_entity_id,
    )


@router.get("/{job_id}", response_model=JobResponse)
def get_chat_job(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    runner: ChatJobRunner = Depends(get_chat_runner),
) -> Job:
    """Poll a chat job; the buffer holds partial output while it runs."""
    return runner.poll(db, user_id, job_id)


@router.patch("/{job_id}", response_model=JobResponse)
def update_chat_job(
    job_id: str,
    body: JobClientUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> Job:
    """Record that the client attached or detached."""
    return JobService(db).set_client_connected(user_id, job_id, body.client_connected)
