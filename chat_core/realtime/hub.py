"""Live fan-out of committed messaging events to connected subscribers.

Delivery is forward-only and at-least-once while connected. Nothing is
replayed: a subscriber that was dropped reconciles through the message
store's cursor based listing.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Union
from uuid import UUID, uuid4

from chat_core import settings
from chat_core.errors import SubscriptionDropped
from chat_core.logging_config import get_logger
from chat_core.models.api.events import RealtimeEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConversationScope:
    """Every event of one conversation."""

    conversation_id: UUID


@dataclass(frozen=True)
class UserScope:
    """Every event of every conversation the user participates in."""

    user_id: str


Scope = Union[ConversationScope, UserScope]


class Subscription:
    """Handle returned by RealtimeHub.subscribe.

    Iterate it with ``async for`` to receive events; ``close()`` stops
    delivery immediately, including events already queued.
    """

    def __init__(self, hub: "RealtimeHub", scope: Scope, max_queue: int):
        self.id = uuid4()
        self.scope = scope
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._wakeup = asyncio.Event()
        self._closed = False
        self._drop_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dropped(self) -> bool:
        return self._drop_reason is not None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._hub._unregister(self)
        self._discard_pending()
        self._wakeup.set()

    def _offer(self, event: RealtimeEvent) -> bool:
        if self._closed:
            return True
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        self._wakeup.set()
        return True

    def _drop(self, reason: str) -> None:
        if self._closed:
            return
        self._drop_reason = reason
        self._closed = True
        self._discard_pending()
        self._wakeup.set()

    def _discard_pending(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> RealtimeEvent:
        while True:
            # Checked before every delivery so a closed handle never yields again
            if self._drop_reason is not None:
                raise SubscriptionDropped(self._drop_reason)
            if self._closed:
                raise StopAsyncIteration
            if not self._queue.empty():
                return self._queue.get_nowait()
            self._wakeup.clear()
            await self._wakeup.wait()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class RealtimeHub:
    """Routes published events to matching subscriptions.

    Must be used from a single event loop; publish order per conversation
    is the delivery order seen by every subscriber.
    """

    def __init__(self, max_queue: int = settings.SUBSCRIPTION_QUEUE_SIZE):
        self.max_queue = max_queue
        self._by_conversation: Dict[UUID, Set[Subscription]] = {}
        self._by_user: Dict[str, Set[Subscription]] = {}

    def subscribe(self, scope: Scope) -> Subscription:
        subscription = Subscription(self, scope, self.max_queue)
        if isinstance(scope, ConversationScope):
            self._by_conversation.setdefault(scope.conversation_id, set()).add(
                subscription
            )
        elif isinstance(scope, UserScope):
            self._by_user.setdefault(scope.user_id, set()).add(subscription)
        else:
            raise TypeError(f"Unsupported subscription scope: {scope!r}")
        logger.debug("subscription_opened", subscription_id=str(subscription.id))
        return subscription

    def publish(self, event: RealtimeEvent) -> int:
        """Queue the event for every matching subscriber; returns how many."""
        targets: List[Subscription] = list(
            self._by_conversation.get(event.conversation_id, ())
        )
        for user_id in event.recipients:
            targets.extend(self._by_user.get(user_id, ()))

        delivered = 0
        for subscription in dict.fromkeys(targets):
            if subscription._offer(event):
                delivered += 1
            else:
                logger.warning(
                    "subscription_dropped",
                    subscription_id=str(subscription.id),
                    reason="queue overflow",
                )
                self._unregister(subscription)
                subscription._drop("subscriber queue overflow")
        return delivered

    def is_online(self, user_id: str) -> bool:
        """Whether the user currently holds a live user scoped subscription."""
        return bool(self._by_user.get(user_id))

    @property
    def subscriber_count(self) -> int:
        return sum(len(s) for s in self._by_conversation.values()) + sum(
            len(s) for s in self._by_user.values()
        )

    def close(self) -> None:
        """Drop every subscription, e.g. on shutdown."""
        subscriptions = [s for group in self._by_conversation.values() for s in group]
        subscriptions += [s for group in self._by_user.values() for s in group]
        self._by_conversation.clear()
        self._by_user.clear()
        for subscription in subscriptions:
            subscription._drop("realtime hub closed")

    def _unregister(self, subscription: Subscription) -> None:
        scope = subscription.scope
        if isinstance(scope, ConversationScope):
            group = self._by_conversation.get(scope.conversation_id)
            key: Union[UUID, str] = scope.conversation_id
            index = self._by_conversation
        else:
            group = self._by_user.get(scope.user_id)
            key = scope.user_id
            index = self._by_user  # type: ignore[assignment]
        if group is None:
            return
        group.discard(subscription)
        if not group:
            index.pop(key, None)  # type: ignore[arg-type]
