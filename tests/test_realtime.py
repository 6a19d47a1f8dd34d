import asyncio
from typing import List, Optional
from uuid import UUID, uuid4

import pytest

from chat_core.errors import SubscriptionDropped
from chat_core.models.api.events import RealtimeEvent
from chat_core.realtime.hub import ConversationScope, RealtimeHub, UserScope


def message_event(
    conversation_id: UUID, n: int, recipients: Optional[List[str]] = None
) -> RealtimeEvent:
    return RealtimeEvent(
        event_type="message.created",
        conversation_id=conversation_id,
        payload={"n": n},
        recipients=recipients or [],
    )


class TestRealtimeHub:
    @pytest.mark.asyncio
    async def test_conversation_scope_receives_in_publish_order(self) -> None:
        hub = RealtimeHub(max_queue=10)
        conversation_id = uuid4()
        subscription = hub.subscribe(ConversationScope(conversation_id))

        for n in range(3):
            hub.publish(message_event(conversation_id, n))
        hub.publish(message_event(uuid4(), 99))

        received = [await subscription.__anext__() for _ in range(3)]
        assert [event.payload["n"] for event in received] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_user_scope_matches_recipients(self) -> None:
        hub = RealtimeHub()
        subscription = hub.subscribe(UserScope("drv-1"))

        assert hub.publish(message_event(uuid4(), 1, recipients=["cust-1"])) == 0
        assert hub.publish(message_event(uuid4(), 2, recipients=["cust-1", "drv-1"])) == 1

        event = await subscription.__anext__()
        assert event.payload["n"] == 2

    @pytest.mark.asyncio
    async def test_each_subscriber_gets_one_copy(self) -> None:
        hub = RealtimeHub()
        conversation_id = uuid4()
        first = hub.subscribe(ConversationScope(conversation_id))
        second = hub.subscribe(UserScope("drv-1"))

        delivered = hub.publish(message_event(conversation_id, 1, recipients=["drv-1"]))

        assert delivered == 2
        assert (await first.__anext__()).payload["n"] == 1
        assert (await second.__anext__()).payload["n"] == 1

    @pytest.mark.asyncio
    async def test_waiting_subscriber_wakes_on_publish(self) -> None:
        hub = RealtimeHub()
        conversation_id = uuid4()
        subscription = hub.subscribe(ConversationScope(conversation_id))

        waiter = asyncio.create_task(subscription.__anext__())
        await asyncio.sleep(0)
        hub.publish(message_event(conversation_id, 7))

        event = await asyncio.wait_for(waiter, timeout=1)
        assert event.payload["n"] == 7

    @pytest.mark.asyncio
    async def test_closed_subscription_delivers_nothing_more(self) -> None:
        hub = RealtimeHub()
        conversation_id = uuid4()
        subscription = hub.subscribe(ConversationScope(conversation_id))
        hub.publish(message_event(conversation_id, 1))

        subscription.close()
        hub.publish(message_event(conversation_id, 2))

        received = [event async for event in subscription]
        assert received == []
        assert hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_close_wakes_a_waiting_iterator(self) -> None:
        hub = RealtimeHub()
        subscription = hub.subscribe(UserScope("cust-1"))

        async def consume() -> List[RealtimeEvent]:
            return [event async for event in subscription]

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        subscription.close()

        assert await asyncio.wait_for(consumer, timeout=1) == []

    @pytest.mark.asyncio
    async def test_overflow_drops_the_slow_subscriber(self) -> None:
        hub = RealtimeHub(max_queue=2)
        conversation_id = uuid4()
        slow = hub.subscribe(ConversationScope(conversation_id))

        for n in range(3):
            hub.publish(message_event(conversation_id, n))

        assert slow.dropped is True
        with pytest.raises(SubscriptionDropped):
            await slow.__anext__()
        assert hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_hub_close_drops_everyone(self) -> None:
        hub = RealtimeHub()
        subscription = hub.subscribe(UserScope("cust-1"))

        hub.close()

        with pytest.raises(SubscriptionDropped):
            await subscription.__anext__()

    def test_is_online_tracks_user_subscriptions(self) -> None:
        hub = RealtimeHub()
        assert hub.is_online("cust-1") is False

        subscription = hub.subscribe(UserScope("cust-1"))
        hub.subscribe(ConversationScope(uuid4()))
        assert hub.is_online("cust-1") is True

        subscription.close()
        assert hub.is_online("cust-1") is False

    @pytest.mark.asyncio
    async def test_context_manager_closes(self) -> None:
        hub = RealtimeHub()
        async with hub.subscribe(UserScope("cust-1")) as subscription:
            assert hub.subscriber_count == 1
        assert subscription.closed is True
        assert hub.subscriber_count == 0

    def test_recipients_are_not_serialized(self) -> None:
        event = message_event(uuid4(), 1, recipients=["cust-1"])
        assert "recipients" not in event.model_dump()
