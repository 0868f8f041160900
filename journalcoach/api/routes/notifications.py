"""FastAPI routes for registering web-push endpoints."""

from fastapi import APIRouter, Depends

from journalcoach.api.deps import get_current_user_id, get_subscription_service
from journalcoach.api.schemas import (
    SubscriptionRequest,
    SubscriptionResponse,
    UnsubscribeRequest,
)
from journalcoach.db.models import PushSubscription
from journalcoach.services.push_dispatcher import SubscriptionService

router = APIRouter(prefix="/notifications/subscriptions", tags=["notifications"])


@router.post("", response_model=SubscriptionResponse, status_code=201)
def subscribe(
    body: SubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> PushSubscription:
    """Register a device; re-registering an endpoint refreshes its keys."""
    return service.register(user_id, body.endpoint, body.keys.p256dh, body.keys.auth)


@router.delete("")
def unsubscribe(
    body: UnsubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> dict:
    return {"removed": service.unregister(user_id, body.endpoint)}


@router.get("", response_model=list[SubscriptionResponse])
def list_subscriptions(
    user_id: str = Depends(get_current_user_id),
    service: SubscriptionService = Depends(get_subscription_service),
) -> list[PushSubscription]:
    return service.list_for_user(user_id)
