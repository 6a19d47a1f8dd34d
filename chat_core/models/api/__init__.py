# API models for request/response contracts
from .conversations import (
    ConversationResponse,
    ConversationSummary,
    CreateConversationRequest,
    OpenConversationResponse,
    UnreadResponse,
)
from .events import RealtimeEvent
from .messages import (
    EditMessageRequest,
    LocationContent,
    MessageContent,
    MessagePage,
    MessageResponse,
    MessageWithSender,
    SendMessageRequest,
    SystemContent,
    TextContent,
)
from .participants import ParticipantResponse, ParticipantSpec, Profile

__all__ = [
    "CreateConversationRequest",
    "ConversationResponse",
    "ConversationSummary",
    "OpenConversationResponse",
    "UnreadResponse",
    "RealtimeEvent",
    "SendMessageRequest",
    "EditMessageRequest",
    "MessageContent",
    "TextContent",
    "SystemContent",
    "LocationContent",
    "MessageResponse",
    "MessageWithSender",
    "MessagePage",
    "ParticipantSpec",
    "ParticipantResponse",
    "Profile",
]
