from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from chat_core import settings
from chat_core.dependencies import current_user_id, get_messaging_service
from chat_core.errors import Forbidden
from chat_core.models.api.conversations import (
    ConversationResponse,
    ConversationSummary,
    CreateConversationRequest,
    OpenConversationResponse,
    UnreadResponse,
)
from chat_core.models.api.messages import (
    MessagePage,
    MessageResponse,
    MessageWithSender,
    SendMessageRequest,
)
from chat_core.models.api.participants import ParticipantResponse
from chat_core.services.messaging_service import MessagingService

router = APIRouter()


@router.post("", response_model=ConversationResponse)
async def find_or_create_conversation(
    request: CreateConversationRequest,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ConversationResponse:
    """
    Return the conversation for this participant set, creating it if needed.

    The caller must be one of the participants.
    """
    if user_id not in {p.user_id for p in request.participants}:
        raise Forbidden("The caller must be a participant of the conversation")
    return await service.find_or_create_conversation(
        request.type, request.order_context_id, request.participants
    )


@router.get("", response_model=List[ConversationSummary])
async def list_conversations(
    limit: int = Query(
        50, description="Maximum number of conversations to return", ge=1, le=1000
    ),
    offset: int = Query(0, description="Number of conversations to skip", ge=0),
    include_archived: bool = Query(False, description="Include archived conversations"),
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> List[ConversationSummary]:
    """
    List the caller's conversations, most recent activity first.

    Query parameters:
    - limit: Maximum number of conversations to return (default: 50, max: 1000)
    - offset: Number of conversations to skip (default: 0)
    - include_archived: Also return archived conversations
    """
    return await service.list_conversations(
        user_id, limit=limit, offset=offset, include_archived=include_archived
    )


@router.get("/unread", response_model=UnreadResponse)
async def unread(
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> UnreadResponse:
    """Total unread messages and number of conversations with unread messages."""
    return await service.unread_summary(user_id)


@router.get("/{conversation_id}", response_model=OpenConversationResponse)
async def open_conversation(
    conversation_id: UUID,
    limit: int = Query(settings.MESSAGES_PAGE_SIZE, ge=1, le=1000),
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> OpenConversationResponse:
    """Conversation details with participants and the newest page of messages."""
    return await service.open_conversation(conversation_id, user_id, limit=limit)


@router.post("/{conversation_id}/archive", response_model=ConversationResponse)
async def archive_conversation(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ConversationResponse:
    return await service.archive_conversation(conversation_id, user_id)


@router.post("/{conversation_id}/join", response_model=List[ParticipantResponse])
async def join_conversation(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> List[ParticipantResponse]:
    """Join a support or order-linked conversation as a support agent."""
    return await service.join_conversation(conversation_id, user_id, role="support")


@router.get("/{conversation_id}/messages", response_model=MessagePage)
async def get_conversation_messages(
    conversation_id: UUID,
    before: Optional[str] = Query(
        None, description="Cursor from a previous page; returns older messages"
    ),
    limit: int = Query(
        settings.MESSAGES_PAGE_SIZE,
        description="Maximum number of messages to return",
        ge=1,
        le=1000,
    ),
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> MessagePage:
    """
    Page backwards through a conversation.

    Messages are returned oldest first; pass next_cursor as `before` to
    continue. A missing next_cursor means the history is exhausted.
    """
    return await service.load_more(conversation_id, user_id, cursor=before, limit=limit)


@router.get("/{conversation_id}/messages/search", response_model=List[MessageWithSender])
async def search_messages(
    conversation_id: UUID,
    q: str = Query(..., min_length=1, description="Case-insensitive substring"),
    limit: int = Query(settings.SEARCH_RESULT_LIMIT, ge=1, le=1000),
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> List[MessageWithSender]:
    return await service.search(conversation_id, user_id, q, limit=limit)


@router.post(
    "/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: UUID,
    request: SendMessageRequest,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> MessageResponse:
    """Send a message; repeating a client_message_id returns the stored copy."""
    return await service.send(
        conversation_id,
        user_id,
        request.content,
        client_message_id=request.client_message_id,
    )


@router.post("/{conversation_id}/read", response_model=ParticipantResponse)
async def mark_read(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    service: MessagingService = Depends(get_messaging_service),
) -> ParticipantResponse:
    """Reset the caller's unread counter for the conversation."""
    return await service.mark_read(conversation_id, user_id)
