from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from chat_core.models.api.common import UtcDatetime

ParticipantRole = Literal["customer", "driver", "merchant", "support", "admin"]


class ParticipantSpec(BaseModel):
    """A user joining a conversation in a given role."""

    user_id: str = Field(..., min_length=1, max_length=64)
    role: ParticipantRole


class ParticipantResponse(BaseModel):
    """Response model for participant data."""

    id: UUID
    conversation_id: UUID
    user_id: str
    role: ParticipantRole
    unread_count: int
    last_read_at: Optional[UtcDatetime]
    joined_at: UtcDatetime

    model_config = ConfigDict(from_attributes=True)


class Profile(BaseModel):
    """Display identity resolved from the profile directory."""

    user_id: str
    display_name: str
    avatar_ref: Optional[str] = None
    role: Optional[ParticipantRole] = None


class ParticipantWithProfile(BaseModel):
    user_id: str
    role: ParticipantRole
    unread_count: int
    last_read_at: Optional[UtcDatetime]
    profile: Profile
