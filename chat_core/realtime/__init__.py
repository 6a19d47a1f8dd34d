# In-process realtime fan-out
from .hub import ConversationScope, RealtimeHub, Scope, Subscription, UserScope

__all__ = [
    "ConversationScope",
    "RealtimeHub",
    "Scope",
    "Subscription",
    "UserScope",
]
