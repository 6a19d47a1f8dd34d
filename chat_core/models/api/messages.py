from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chat_core.models.api.common import UtcDatetime
from chat_core.models.api.participants import Profile


class TextContent(BaseModel):
    """Plain text message."""

    type: Literal["text"] = "text"
    text: str


class SystemContent(BaseModel):
    """Structured payload produced by the platform (order updates, assignments)."""

    type: Literal["system"] = "system"
    payload: Dict[str, Any]


class LocationContent(BaseModel):
    """A shared location pin."""

    type: Literal["location"] = "location"
    latitude: float
    longitude: float
    label: Optional[str] = None


MessageContent = Annotated[
    Union[TextContent, SystemContent, LocationContent], Field(discriminator="type")
]


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""

    content: MessageContent
    client_message_id: Optional[str] = Field(
        default=None,
        max_length=64,
        description="Client generated correlation id, makes retries idempotent",
    )


class EditMessageRequest(BaseModel):
    """Request model for editing a message."""

    content: MessageContent


class MessageResponse(BaseModel):
    """Response model for message data."""

    id: UUID
    conversation_id: UUID
    sender_id: str
    content: MessageContent
    client_message_id: Optional[str] = None
    created_at: UtcDatetime
    is_edited: bool = False
    edited_at: Optional[UtcDatetime] = None
    is_deleted: bool = False

    model_config = ConfigDict(from_attributes=True)

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, self.id)


class MessageWithSender(MessageResponse):
    sender: Profile


class MessagePage(BaseModel):
    """A page of messages in ascending display order."""

    messages: List[MessageWithSender]
    next_cursor: Optional[str] = Field(
        default=None, description="Pass as 'before' to load older messages"
    )
