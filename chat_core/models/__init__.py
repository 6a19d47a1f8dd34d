# Export all models
from .api import (
    ConversationResponse,
    ConversationSummary,
    MessageResponse,
    ParticipantResponse,
    RealtimeEvent,
    SendMessageRequest,
)
from .db import (
    ConversationModel,
    MessageModel,
    ParticipantModel,
)

__all__ = [
    # API models
    "SendMessageRequest",
    "MessageResponse",
    "ConversationResponse",
    "ConversationSummary",
    "ParticipantResponse",
    "RealtimeEvent",
    # DB models
    "ConversationModel",
    "MessageModel",
    "ParticipantModel",
]
