from abc import ABC, abstractmethod

from chat_core.models.api.notifications import PushSummary


class BasePushClient(ABC):
    """Abstract base class for push notification delivery."""

    @abstractmethod
    async def notify(self, user_id: str, summary: PushSummary) -> None:
        """Tell the user's devices that something happened.

        Fire-and-forget from the caller's perspective: errors are raised
        here and absorbed by whoever schedules the call.
        """
