"""FastAPI dependencies for the pipeline services and the calling user."""

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from journalcoach.db.connection import get_db
from journalcoach.services.job_runner import ChatJobRunner, ToolJobService
from journalcoach.services.pipeline import PipelineServices
from journalcoach.services.push_dispatcher import SubscriptionService


def get_services(request: Request) -> PipelineServices:
    """Pipeline services built at startup."""
    return request.app.state.services


def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    """Identify the caller from the X-User-Id header set by the auth layer.

    Deployments with their own auth override this dependency.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return x_user_id


def get_chat_runner(services: PipelineServices = Depends(get_services)) -> ChatJobRunner:
    return services.chat_runner


def get_tool_job_service(
    db: Session = Depends(get_db),
    services: PipelineServices = Depends(get_services),
) -> ToolJobService:
    """Dependency to get ToolJobService instance."""
    return ToolJobService(db, services.generator, services.queue)


def get_subscription_service(
    db: Session = Depends(get_db),
    services: PipelineServices = Depends(get_services),
) -> SubscriptionService:
    """Dependency to get SubscriptionService instance."""
    return SubscriptionService(
        db, max_per_user=services.config.pipeline.max_subscriptions_per_user
    )
