from typing import Any, Dict, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field

EventType = Literal[
    "message.created",
    "message.updated",
    "message.deleted",
    "participant.updated",
    "conversation.created",
    "subscription.reconnecting",
    "subscription.restored",
    "subscription.lost",
]


class RealtimeEvent(BaseModel):
    """An event pushed to live subscribers."""

    event_type: EventType
    conversation_id: UUID
    payload: Dict[str, Any] = Field(default_factory=dict)
    # Users the event concerns; matched against user scoped subscriptions
    recipients: List[str] = Field(default_factory=list, exclude=True)
