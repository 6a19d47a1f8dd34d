import asyncio
from typing import Any, Callable, List
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chat_core.errors import Forbidden, InvalidContent, TransientStoreError
from chat_core.models.api.conversations import ConversationResponse
from chat_core.models.api.events import RealtimeEvent
from chat_core.models.api.messages import MessageResponse
from chat_core.realtime.hub import ConversationScope, RealtimeHub, UserScope
from chat_core.repositories.message_repository import MessageRepository
from chat_core.repositories.participant_repository import ParticipantRepository
from chat_core.services.chat_session import ChatSession, SendState
from chat_core.services.messaging_service import MessagingService


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def created_ids(events: List[RealtimeEvent]) -> List[str]:
    return [e.payload["id"] for e in events if e.event_type == "message.created"]


class TestOptimisticSend:
    @pytest.mark.asyncio
    async def test_send_is_shown_then_confirmed_in_place(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1")
        await session.open_conversation(conversation.id)

        pending = session.send(conversation.id, "On my way down")

        assert pending.state is SendState.SENDING
        view = session.view(conversation.id)
        assert view.entries == [pending]

        await pending.wait()

        assert pending.state is SendState.CONFIRMED
        assert pending.message is not None
        assert pending.message.client_message_id == pending.correlation_id
        assert view.entries == [pending.message]

    @pytest.mark.asyncio
    async def test_failed_send_keeps_text_and_can_be_retried(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1")

        async def broken(self: MessageRepository, *args: Any, **kwargs: Any) -> Any:
            raise TransientStoreError("store unavailable")

        with patch.object(MessageRepository, "append", broken):
            pending = await session.send(conversation.id, "Gate code is 4411").wait()

        assert pending.state is SendState.FAILED
        assert isinstance(pending.error, TransientStoreError)
        assert pending.text == "Gate code is 4411"
        assert session.view(conversation.id).pending == [pending]

        await session.retry(pending).wait()

        assert pending.state is SendState.CONFIRMED
        assert pending.error is None
        opened = await service.open_conversation(conversation.id, "drv-1")
        assert [m.content.text for m in opened.messages] == ["Gate code is 4411"]

    @pytest.mark.asyncio
    async def test_lost_acknowledgement_does_not_duplicate(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1", send_timeout=0.2)
        real_send = service.send

        async def slow_ack(*args: Any, **kwargs: Any) -> MessageResponse:
            message = await real_send(*args, **kwargs)
            await asyncio.sleep(1)
            return message

        with patch.object(service, "send", slow_ack):
            pending = await session.send(conversation.id, "Leave it at the door").wait()
        assert pending.state is SendState.FAILED

        await session.retry(pending).wait()

        assert pending.state is SendState.CONFIRMED
        assert await service.total_unread("drv-1") == 1
        page = await service.load_more(conversation.id, "drv-1")
        assert [m.id for m in page.messages] == [pending.message.id]  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_forbidden_send_fails(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "stranger")

        pending = await session.send(conversation.id, "hi").wait()

        assert pending.state is SendState.FAILED
        assert isinstance(pending.error, Forbidden)

    @pytest.mark.asyncio
    async def test_discard_and_state_guards(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1")
        pending = await session.send(conversation.id, "   ").wait()
        assert pending.state is SendState.FAILED

        session.discard(pending)
        assert session.view(conversation.id).entries == []

        confirmed = await session.send(conversation.id, "real message").wait()
        with pytest.raises(ValueError):
            session.retry(confirmed)
        with pytest.raises(ValueError):
            session.discard(confirmed)

    @pytest.mark.asyncio
    async def test_malformed_content_is_rejected_before_showing(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1")

        with pytest.raises(InvalidContent):
            session.send(conversation.id, {"type": "sticker", "id": "wave"})

        assert session.view(conversation.id).entries == []


class TestPaging:
    @pytest.mark.asyncio
    async def test_load_more_prepends_older_pages(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        sent = [
            await service.send(conversation.id, "drv-1", f"update {i}") for i in range(5)
        ]
        session = ChatSession(service, "cust-1", page_size=2)

        await session.open_conversation(conversation.id)
        view = session.view(conversation.id)
        assert [m.id for m in view.messages] == [sent[3].id, sent[4].id]

        await session.load_more(conversation.id)
        await session.load_more(conversation.id)

        assert [m.id for m in view.messages] == [m.id for m in sent]
        assert view.next_cursor is None
        assert await session.load_more(conversation.id) == []


class TestLiveUpdates:
    @pytest.mark.asyncio
    async def test_own_echo_is_not_duplicated(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        session = ChatSession(service, "cust-1")
        await session.open_conversation(conversation.id)
        events: List[RealtimeEvent] = []
        unsubscribe = await session.subscribe_live(
            ConversationScope(conversation.id), events.append
        )

        pending = await session.send(conversation.id, "hello").wait()
        await service.send(conversation.id, "drv-1", "hi back")
        await wait_until(lambda: len(session.view(conversation.id).messages) == 2)
        await asyncio.sleep(0.05)

        view = session.view(conversation.id)
        assert pending.message is not None
        assert [m.id for m in view.messages][0] == pending.message.id
        assert len(view.entries) == 2
        assert len(created_ids(events)) == 1
        await unsubscribe()

    @pytest.mark.asyncio
    async def test_other_listener_sees_one_event(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        sender = ChatSession(service, "cust-1")
        listener = ChatSession(service, "drv-1")
        events: List[RealtimeEvent] = []
        unsubscribe = await listener.subscribe_live(UserScope("drv-1"), events.append)

        pending = await sender.send(conversation.id, "knock knock").wait()
        await wait_until(lambda: len(created_ids(events)) == 1)
        await asyncio.sleep(0.05)

        assert pending.message is not None
        assert created_ids(events) == [str(pending.message.id)]
        await unsubscribe()
        await sender.close()

    @pytest.mark.asyncio
    async def test_reconnect_reconciles_missed_messages(
        self,
        service: MessagingService,
        hub: RealtimeHub,
        session_factory: async_sessionmaker[AsyncSession],
        conversation: ConversationResponse,
    ) -> None:
        listener = ChatSession(service, "drv-1")
        events: List[RealtimeEvent] = []
        unsubscribe = await listener.subscribe_live(
            ConversationScope(conversation.id), events.append
        )
        first = await service.send(conversation.id, "cust-1", "before the drop")
        await wait_until(lambda: len(created_ids(events)) == 1)
        await listener.open_conversation(conversation.id)

        # Stored while the listener was not receiving anything
        async with session_factory() as db:
            missed = [
                await MessageRepository(db).append(conversation.id, "cust-1", text)
                for text in ("missed one", "missed two")
            ]
            await ParticipantRepository(db).on_message_appended(conversation.id, "cust-1")
            await db.commit()
        hub.close()

        await wait_until(
            lambda: any(e.event_type == "subscription.restored" for e in events)
        )

        assert created_ids(events) == [str(first.id)] + [str(m.id) for m in missed]
        statuses = [e.event_type for e in events if e.event_type.startswith("subscription.")]
        assert statuses == ["subscription.reconnecting", "subscription.restored"]
        assert [m.id for m in listener.view(conversation.id).messages] == [
            first.id
        ] + [m.id for m in missed]

        await service.send(conversation.id, "cust-1", "after the reconnect")
        await wait_until(lambda: len(created_ids(events)) == 4)
        await unsubscribe()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [Forbidden("removed from conversation"), TransientStoreError("store down")]
    )
    async def test_giving_up_reports_lost_subscription(
        self,
        service: MessagingService,
        hub: RealtimeHub,
        conversation: ConversationResponse,
        error: Exception,
    ) -> None:
        listener = ChatSession(service, "drv-1")
        events: List[RealtimeEvent] = []
        unsubscribe = await listener.subscribe_live(
            ConversationScope(conversation.id), events.append
        )

        async def refuse(*args: Any, **kwargs: Any) -> Any:
            raise error

        with patch.object(service, "subscribe", refuse):
            hub.close()
            await wait_until(
                lambda: any(e.event_type == "subscription.lost" for e in events)
            )

        statuses = [e.event_type for e in events if e.event_type.startswith("subscription.")]
        assert statuses == ["subscription.reconnecting", "subscription.lost"]
        await unsubscribe()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(
        self, service: MessagingService, conversation: ConversationResponse
    ) -> None:
        listener = ChatSession(service, "drv-1")
        events: List[RealtimeEvent] = []
        unsubscribe = await listener.subscribe_live(
            ConversationScope(conversation.id), events.append
        )

        await unsubscribe()
        await service.send(conversation.id, "cust-1", "nobody listening")
        await asyncio.sleep(0.05)

        assert events == []
        assert service.hub.subscriber_count == 0
