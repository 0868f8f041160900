"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the journalcoach REST API:
chat submission and status, chat and tool jobs, push subscriptions and
agenda notification settings.
"""

from pydantic import BaseModel, ConfigDict, Field


# Message schemas


class MessageResponse(BaseModel):
    """Response schema for a chat message."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    role: str
    content: str
    status: str
    notification_sent: bool
    created_at: str
    updated_at: str


class ChatSubmitRequest(BaseModel):
    """Request schema for submitting a chat message."""

    message: str = Field(..., min_length=1)
    conversation_id: str | None = None
    initial_assistant_message: str | None = None


class ChatSubmitResponse(BaseModel):
    """Response schema after a message was recorded."""

    conversation_id: str
    user_message: MessageResponse
    pending_message: MessageResponse
    processing: bool = True


class ChatStatusResponse(BaseModel):
    """Response schema for chat status polling."""

    message: MessageResponse | None = None
    messages: list[MessageResponse] | None = None


class MarkSeenRequest(BaseModel):
    """Request schema for marking a reply as seen."""

    message_id: str


# Job schemas


class JobResponse(BaseModel):
    """Response schema for a chat or tool job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    status: str
    buffer: str
    error: str | None = None
    related_entity_id: str | None = None
    conversation_id: str | None = None
    client_connected: bool
    created_at: str
    updated_at: str
    completed_at: str | None = None


class ChatJobRequest(BaseModel):
    """Request schema for starting a chat job.

    Either `message` (submit a new turn) or `message_id` (an existing
    pending reply) must be given.
    """

    message: str | None = None
    conversation_id: str | None = None
    initial_assistant_message: str | None = None
    message_id: str | None = None


class StartedJobResponse(BaseModel):
    """Response schema for a started (or reused) job."""

    job_id: str
    status: str
    status_url: str
    existing: bool = False
    conversation_id: str | None = None
    message_id: str | None = None


class JobClientUpdate(BaseModel):
    """Request schema for the client's attach/detach signal."""

    client_connected: bool


class ToolJobRequest(BaseModel):
    """Request schema for queuing a tool generation."""

    tool_id: str = Field(..., min_length=1)
    feedback: str = Field(..., min_length=1)
    current_title: str | None = None
    current_html: str | None = None


# Push subscription schemas


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionRequest(BaseModel):
    """Request schema for registering a push endpoint (browser PushSubscription shape)."""

    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    endpoint: str
    created_at: str


# Agenda notification schemas


class EventNotificationRequest(BaseModel):
    """Request schema for configuring before/after notifications of an agenda item."""

    notify_before: bool = False
    minutes_before: int | None = Field(None, ge=0)
    notify_after: bool = False
    minutes_after: int | None = Field(None, ge=0)


class EventNotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agenda_item_id: str
    notify_before: bool
    minutes_before: int | None
    before_notification_sent: bool
    notify_after: bool
    minutes_after: int | None
    after_notification_sent: bool
