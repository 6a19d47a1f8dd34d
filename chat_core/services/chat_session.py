"""Client side view of the messaging core.

A ChatSession belongs to one signed-in user. It keeps a local, ordered view
of each opened conversation, shows sends optimistically, and merges live
events into the view without duplicating anything it already displays.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union
from uuid import UUID, uuid4

from chat_core import settings
from chat_core.clients.cache import LRUCache
from chat_core.errors import MessagingError, SubscriptionDropped, TransientStoreError
from chat_core.logging_config import get_logger
from chat_core.models.api.conversations import (
    ConversationResponse,
    ConversationSummary,
    OpenConversationResponse,
)
from chat_core.models.api.events import RealtimeEvent
from chat_core.models.api.messages import MessageContent, MessageResponse, TextContent
from chat_core.models.api.participants import ParticipantResponse, ParticipantSpec
from chat_core.realtime.hub import ConversationScope, Scope, UserScope
from chat_core.repositories.base_repository import as_uuid
from chat_core.repositories.message_repository import cursor_for, decode_cursor, parse_content
from chat_core.services.messaging_service import MessagingService

logger = get_logger(__name__)

EventHandler = Callable[[RealtimeEvent], Union[None, Awaitable[None]]]


class SendState(str, Enum):
    COMPOSING = "composing"
    SENDING = "sending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(eq=False)
class PendingSend:
    """A message the user sent that the store has not necessarily confirmed yet.

    The correlation id travels to the store as the client message id, so a
    retry can never create a second copy and the live echo of the same
    message can be matched back to this entry.
    """

    conversation_id: UUID
    content: MessageContent
    correlation_id: str = field(default_factory=lambda: uuid4().hex)
    state: SendState = SendState.COMPOSING
    message: Optional[MessageResponse] = None
    error: Optional[MessagingError] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def text(self) -> Optional[str]:
        return self.content.text if isinstance(self.content, TextContent) else None

    @property
    def done(self) -> bool:
        return self.state in (SendState.CONFIRMED, SendState.FAILED)

    async def wait(self) -> "PendingSend":
        """Block until the send is confirmed or failed."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self


ViewEntry = Union[MessageResponse, PendingSend]


class ConversationView:
    """Ordered local copy of one conversation.

    Confirmed messages are kept in (created_at, id) order; provisional sends
    sit after the newest confirmed message at the time they were sent and
    are swapped for the stored message once confirmed.
    """

    def __init__(self, conversation_id: UUID):
        self.conversation_id = conversation_id
        self.entries: List[ViewEntry] = []
        self.next_cursor: Optional[str] = None

    @property
    def messages(self) -> List[MessageResponse]:
        return [e for e in self.entries if isinstance(e, MessageResponse)]

    @property
    def pending(self) -> List[PendingSend]:
        return [e for e in self.entries if isinstance(e, PendingSend)]

    @property
    def last_cursor(self) -> Optional[str]:
        confirmed = self.messages
        if not confirmed:
            return None
        return cursor_for(max(confirmed, key=lambda m: m.sort_key))

    def contains(self, message_id: UUID) -> bool:
        return any(
            isinstance(e, MessageResponse) and e.id == message_id for e in self.entries
        )

    def find_pending(self, correlation_id: Optional[str]) -> Optional[PendingSend]:
        if correlation_id is None:
            return None
        for entry in self.entries:
            if isinstance(entry, PendingSend) and entry.correlation_id == correlation_id:
                return entry
        return None

    def add_provisional(self, pending: PendingSend) -> None:
        if pending not in self.entries:
            self.entries.append(pending)

    def confirm(self, pending: PendingSend, message: MessageResponse) -> None:
        """Swap the provisional entry for the stored message in place."""
        if self.contains(message.id):
            self.remove(pending)
            return
        for index, entry in enumerate(self.entries):
            if entry is pending:
                self.entries[index] = message
                self._settle(index)
                return
        self.insert(message)

    def insert(self, message: MessageResponse) -> bool:
        """Place a confirmed message by sort key; False if already shown."""
        if self.contains(message.id):
            return False
        position = 0
        for index, entry in enumerate(self.entries):
            if isinstance(entry, MessageResponse) and entry.sort_key < message.sort_key:
                position = index + 1
        self.entries.insert(position, message)
        return True

    def prepend_page(self, messages: List[MessageResponse]) -> List[MessageResponse]:
        """Add an older page (ascending) ahead of what is shown."""
        added = [m for m in messages if not self.contains(m.id)]
        self.entries[:0] = added
        return added

    def replace(self, message: MessageResponse) -> bool:
        for index, entry in enumerate(self.entries):
            if isinstance(entry, MessageResponse) and entry.id == message.id:
                self.entries[index] = message
                return True
        return False

    def remove(self, entry: Union[ViewEntry, UUID]) -> bool:
        for index, current in enumerate(self.entries):
            if current is entry or (
                isinstance(entry, UUID)
                and isinstance(current, MessageResponse)
                and current.id == entry
            ):
                del self.entries[index]
                return True
        return False

    def _settle(self, index: int) -> None:
        message = self.entries[index]
        assert isinstance(message, MessageResponse)
        before = [e for e in self.entries[:index] if isinstance(e, MessageResponse)]
        after = [e for e in self.entries[index + 1 :] if isinstance(e, MessageResponse)]
        if (not before or before[-1].sort_key < message.sort_key) and (
            not after or message.sort_key < after[0].sort_key
        ):
            return
        del self.entries[index]
        self.insert(message)


class ChatSession:
    """One user's client of the messaging core."""

    def __init__(
        self,
        service: MessagingService,
        user_id: str,
        send_timeout: float = settings.SEND_TIMEOUT_SECONDS,
        page_size: int = settings.MESSAGES_PAGE_SIZE,
    ):
        self.service = service
        self.user_id = user_id
        self.send_timeout = send_timeout
        self.page_size = page_size
        self.views: Dict[UUID, ConversationView] = {}
        self._feeds: Set["LiveFeed"] = set()

    def view(self, conversation_id: Any) -> ConversationView:
        conversation_id = as_uuid(conversation_id)
        if conversation_id not in self.views:
            self.views[conversation_id] = ConversationView(conversation_id)
        return self.views[conversation_id]

    async def find_or_create(
        self,
        type: str,
        order_context_id: Optional[str],
        participants: List[ParticipantSpec],
    ) -> ConversationResponse:
        return await self._bounded(
            self.service.find_or_create_conversation(type, order_context_id, participants)
        )

    async def list_conversations(self, **kwargs: Any) -> List[ConversationSummary]:
        return await self.service.list_conversations(self.user_id, **kwargs)

    async def open_conversation(self, conversation_id: Any) -> OpenConversationResponse:
        """Load the newest page and reset the local view to it."""
        opened = await self.service.open_conversation(
            conversation_id, self.user_id, limit=self.page_size
        )
        view = self.view(opened.conversation.id)
        pending = view.pending
        view.entries = [MessageResponse(**m.model_dump(exclude={"sender"})) for m in opened.messages]
        for entry in pending:
            if entry.message is None:
                view.add_provisional(entry)
        view.next_cursor = opened.next_cursor
        return opened

    async def load_more(self, conversation_id: Any) -> List[MessageResponse]:
        """Fetch the page older than what the view shows; empty when exhausted."""
        view = self.view(conversation_id)
        if view.next_cursor is None:
            return []
        page = await self.service.load_more(
            view.conversation_id, self.user_id, cursor=view.next_cursor, limit=self.page_size
        )
        view.next_cursor = page.next_cursor
        return view.prepend_page(
            [MessageResponse(**m.model_dump(exclude={"sender"})) for m in page.messages]
        )

    async def mark_read(self, conversation_id: Any) -> ParticipantResponse:
        return await self.service.mark_read(conversation_id, self.user_id)

    # Optimistic sends

    def compose(self, conversation_id: Any, content: Any) -> PendingSend:
        return PendingSend(
            conversation_id=as_uuid(conversation_id), content=parse_content(content)
        )

    def send(self, conversation_id: Any, content: Any) -> PendingSend:
        """Show the message immediately and deliver it in the background.

        Returns the handle in the sending state; ``await handle.wait()`` for
        the outcome. Content that parses but breaks a limit (empty or too
        long) ends in the failed state; malformed content raises
        `InvalidContent` before anything is shown.
        """
        return self.submit(self.compose(conversation_id, content))

    def submit(self, pending: PendingSend) -> PendingSend:
        if pending.state not in (SendState.COMPOSING, SendState.FAILED):
            raise ValueError(f"Cannot submit a send in state {pending.state.value}")
        pending.state = SendState.SENDING
        pending.error = None
        self.view(pending.conversation_id).add_provisional(pending)
        pending._task = asyncio.ensure_future(self._deliver(pending))
        return pending

    def retry(self, pending: PendingSend) -> PendingSend:
        """Resend a failed message with the same correlation id."""
        if pending.state is not SendState.FAILED:
            raise ValueError("Only failed sends can be retried")
        logger.info("send_retry", correlation_id=pending.correlation_id)
        return self.submit(pending)

    def discard(self, pending: PendingSend) -> None:
        """Drop a failed or unsent entry from the view."""
        if pending.state in (SendState.SENDING, SendState.CONFIRMED):
            raise ValueError(f"Cannot discard a send in state {pending.state.value}")
        self.view(pending.conversation_id).remove(pending)

    async def _deliver(self, pending: PendingSend) -> None:
        try:
            message = await self._bounded(
                self.service.send(
                    pending.conversation_id,
                    self.user_id,
                    pending.content,
                    client_message_id=pending.correlation_id,
                )
            )
        except MessagingError as e:
            self._fail(pending, e)
            return
        except Exception as e:
            logger.exception("send_crashed", correlation_id=pending.correlation_id)
            self._fail(pending, MessagingError(str(e)))
            return
        self._confirm(pending, message)

    def _confirm(self, pending: PendingSend, message: MessageResponse) -> None:
        if pending.state is SendState.CONFIRMED:
            return
        pending.state = SendState.CONFIRMED
        pending.message = message
        self.view(pending.conversation_id).confirm(pending, message)

    def _fail(self, pending: PendingSend, error: MessagingError) -> None:
        if pending.state is SendState.CONFIRMED:
            return
        pending.state = SendState.FAILED
        pending.error = error
        logger.warning(
            "send_failed",
            correlation_id=pending.correlation_id,
            conversation_id=str(pending.conversation_id),
            error=type(error).__name__,
        )

    async def _bounded(self, operation: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(operation, timeout=self.send_timeout)
        except asyncio.TimeoutError as e:
            raise TransientStoreError(
                f"No answer within {self.send_timeout:g} seconds", cause=e
            ) from e

    # Live updates

    async def subscribe_live(
        self, scope: Scope, on_event: EventHandler
    ) -> Callable[[], Awaitable[None]]:
        """Forward live events to `on_event` until the returned callable is awaited.

        Drops are reported as `subscription.reconnecting` followed by either
        `subscription.restored` or, once the feed gives up, `subscription.lost`.
        """
        feed = LiveFeed(self, scope, on_event)
        await feed.start()
        self._feeds.add(feed)

        async def unsubscribe() -> None:
            self._feeds.discard(feed)
            await feed.stop()

        return unsubscribe

    async def close(self) -> None:
        for feed in list(self._feeds):
            await feed.stop()
        self._feeds.clear()
        tasks = [p._task for v in self.views.values() for p in v.pending if p._task]
        await asyncio.gather(*tasks, return_exceptions=True)

    def apply(self, event: RealtimeEvent) -> bool:
        """Merge a live event into the local views; False if it changes nothing new."""
        view = self.views.get(event.conversation_id)
        if event.event_type == "message.created":
            message = MessageResponse.model_validate(event.payload)
            if view is None:
                return True
            pending = view.find_pending(message.client_message_id)
            if pending is not None and message.sender_id == self.user_id:
                # Echo of our own send: settle the provisional entry silently
                self._confirm(pending, message)
                return False
            return view.insert(message)
        if event.event_type == "message.updated" and view is not None:
            view.replace(MessageResponse.model_validate(event.payload))
        elif event.event_type == "message.deleted" and view is not None:
            view.remove(UUID(event.payload["id"]))
        return True


class LiveFeed:
    """A subscription that survives drops by resubscribing and reconciling."""

    def __init__(
        self,
        session: ChatSession,
        scope: Scope,
        on_event: EventHandler,
        max_reconnects: int = 5,
        seen_size: int = 1000,
    ):
        self.session = session
        self.scope = scope
        self.on_event = on_event
        self.max_reconnects = max_reconnects
        self._seen = LRUCache(max_size=seen_size)
        self._cursors: Dict[UUID, str] = {}
        self._subscription: Any = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._stopped = False

    async def start(self) -> None:
        self._subscription = await self.session.service.subscribe(
            self.scope, self.session.user_id
        )
        self._task = asyncio.ensure_future(self._run())

    async def stop(self) -> None:
        self._stopped = True
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        failures = 0
        while not self._stopped:
            try:
                async for event in self._subscription:
                    await self._handle(event)
                    failures = 0
                return
            except SubscriptionDropped as e:
                if self._stopped:
                    return
                logger.warning(
                    "live_feed_dropped", user_id=self.session.user_id, reason=str(e)
                )
                await self._emit_status("subscription.reconnecting")
                while not self._stopped:
                    try:
                        await self._reconnect()
                        break
                    except TransientStoreError:
                        failures += 1
                        if failures > self.max_reconnects:
                            logger.error(
                                "live_feed_gave_up", user_id=self.session.user_id
                            )
                            await self._emit_status("subscription.lost")
                            return
                        await asyncio.sleep(
                            self.session.service.retry_base_delay * (2 ** failures)
                        )
                    except MessagingError as error:
                        logger.error(
                            "live_feed_reconnect_failed",
                            user_id=self.session.user_id,
                            error=str(error),
                        )
                        await self._emit_status("subscription.lost")
                        return
                await self._emit_status("subscription.restored")

    async def _reconnect(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = await self.session.service.subscribe(
            self.scope, self.session.user_id
        )
        for conversation_id in self._tracked_conversations():
            view = self.session.views.get(conversation_id)
            after = (view.last_cursor if view else None) or self._cursors.get(
                conversation_id
            )
            if after is None:
                continue
            missed = await self.session.service.catch_up(
                conversation_id, self.session.user_id, after=after
            )
            for message in missed:
                await self._handle(
                    RealtimeEvent(
                        event_type="message.created",
                        conversation_id=conversation_id,
                        payload=message.model_dump(mode="json"),
                    )
                )
        logger.info("live_feed_reconciled", user_id=self.session.user_id)

    def _tracked_conversations(self) -> List[UUID]:
        if isinstance(self.scope, ConversationScope):
            return [self.scope.conversation_id]
        assert isinstance(self.scope, UserScope)
        return list(dict.fromkeys(list(self._cursors) + list(self.session.views)))

    async def _handle(self, event: RealtimeEvent) -> None:
        if event.event_type == "message.created":
            message_id = str(event.payload.get("id"))
            if message_id in self._seen:
                return
            self._seen[message_id] = True
            message = MessageResponse.model_validate(event.payload)
            current = self._cursors.get(event.conversation_id)
            cursor = cursor_for(message)
            if current is None or decode_cursor(cursor) > decode_cursor(current):
                self._cursors[event.conversation_id] = cursor
        if self.session.apply(event):
            await self._call(event)

    async def _emit_status(self, event_type: str) -> None:
        conversation_id = (
            self.scope.conversation_id
            if isinstance(self.scope, ConversationScope)
            else UUID(int=0)
        )
        await self._call(
            RealtimeEvent(event_type=event_type, conversation_id=conversation_id)
        )

    async def _call(self, event: RealtimeEvent) -> None:
        try:
            result = self.on_event(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("live_event_handler_failed", event_type=event.event_type)
