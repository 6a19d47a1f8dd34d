from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chat_core.models.api.common import UtcDatetime
from chat_core.models.api.messages import MessageWithSender
from chat_core.models.api.participants import (
    ParticipantSpec,
    ParticipantWithProfile,
    Profile,
)

ConversationType = Literal["direct", "order-linked", "support"]


class CreateConversationRequest(BaseModel):
    """Request model for finding or creating a conversation."""

    type: ConversationType
    order_context_id: Optional[str] = Field(default=None, max_length=64)
    participants: List[ParticipantSpec] = Field(..., min_length=2)


class ConversationResponse(BaseModel):
    """Response model for conversation data."""

    id: UUID
    type: ConversationType
    order_context_id: Optional[str]
    created_at: UtcDatetime
    last_activity_at: UtcDatetime
    last_message_preview: Optional[str] = None
    archived_at: Optional[UtcDatetime] = None

    model_config = ConfigDict(from_attributes=True)


class ConversationSummary(BaseModel):
    """One row of a user's conversation list."""

    conversation_id: UUID
    type: ConversationType
    order_context_id: Optional[str]
    other_participant: Optional[Profile]
    last_message_preview: Optional[str]
    unread_count: int
    last_activity_at: UtcDatetime


class OpenConversationResponse(BaseModel):
    """A conversation with its participants and the newest page of messages."""

    conversation: ConversationResponse
    participants: List[ParticipantWithProfile]
    messages: List[MessageWithSender]
    next_cursor: Optional[str] = None


class UnreadResponse(BaseModel):
    total_unread: int
    unread_conversations: int
