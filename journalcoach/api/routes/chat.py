"""FastAPI routes for coach chat.

Submitting a message records it with a pending reply that the periodic
claimer (or a chat job) fills; clients poll status and mark replies seen
to suppress the push. The stream endpoint generates in-request over SSE.
"""

from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from journalcoach.api.deps import get_chat_runner, get_current_user_id
from journalcoach.api.schemas import (
    ChatStatusResponse,
    ChatSubmitRequest,
    ChatSubmitResponse,
    MarkSeenRequest,
    MessageResponse,
)
from journalcoach.db.connection import get_db
from journalcoach.errors import ValidationError
from journalcoach.services.job_runner import ChatJobRunner
from journalcoach.services.message_store import MessageStore

router = APIRouter(prefix="/chat", tags=["chat"])

STATUS_RECENT_LIMIT = 5


def get_message_store(db: Session = Depends(get_db)) -> MessageStore:
    """Dependency to get MessageStore instance."""
    return MessageStore(db)


@router.post("", response_model=ChatSubmitResponse, status_code=201)
def submit_message(
    body: ChatSubmitRequest,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> ChatSubmitResponse:
    """Record a user message and a pending assistant reply.

    Returns:
        The conversation id, the stored user message and the pending reply.
    """
    turn = store.submit_turn(
        user_id,
        body.message,
        conversation_id=body.conversation_id,
        initial_assistant_message=body.initial_assistant_message,
    )
    return ChatSubmitResponse(
        conversation_id=turn.conversation.id,
        user_message=MessageResponse.model_validate(turn.user_message),
        pending_message=MessageResponse.model_validate(turn.assistant_message),
    )


@router.get("/status", response_model=ChatStatusResponse)
def chat_status(
    message_id: str | None = Query(None),
    conversation_id: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> ChatStatusResponse:
    """Poll a single reply, or the most recent messages of a conversation."""
    if message_id:
        message = store.get_message_for_user(user_id, message_id)
        return ChatStatusResponse(message=MessageResponse.model_validate(message))
    if conversation_id:
        store.get_conversation(user_id, conversation_id)
        messages = store.recent_messages(conversation_id, STATUS_RECENT_LIMIT)
        return ChatStatusResponse(
            messages=[MessageResponse.model_validate(m) for m in messages]
        )
    raise HTTPException(status_code=400, detail="message_id or conversation_id is required")


@router.post("/mark-seen", response_model=MessageResponse)
def mark_seen(
    body: MarkSeenRequest,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
) -> MessageResponse:
    """Record that the client displayed a reply; no push will be sent for it."""
    return MessageResponse.model_validate(store.mark_seen(user_id, body.message_id))


@router.post("/stream")
async def stream_reply(
    body: ChatSubmitRequest,
    user_id: str = Depends(get_current_user_id),
    store: MessageStore = Depends(get_message_store),
    runner: ChatJobRunner = Depends(get_chat_runner),
) -> EventSourceResponse:
    """Generate a reply in-request, streamed as SSE.

    Events: init (ids), delta (text chunk), done (final content), error
    (fallback content; the reply is still completed).
    """
    if not body.message.strip():
        raise ValidationError("Message is required")
    if body.conversation_id:
        store.get_conversation(user_id, body.conversation_id)

    async def _events() -> AsyncGenerator[dict, None]:
        async for event in runner.stream(
            user_id,
            body.message,
            conversation_id=body.conversation_id,
            initial_assistant_message=body.initial_assistant_message,
        ):
            yield event.to_sse()

    return EventSourceResponse(_events())
