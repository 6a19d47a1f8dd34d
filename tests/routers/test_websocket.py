from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from chat_core.errors import Forbidden
from chat_core.models.api.events import RealtimeEvent
from chat_core.realtime.hub import ConversationScope, RealtimeHub, Subscription, UserScope


class TestRealtimeRouter:
    """WebSocket fan-out endpoint."""

    def test_requires_user_header(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/api/realtime/ws"):
                pass
        assert exc_info.value.code == 4401

    def test_forbidden_scope_is_rejected(
        self, client: TestClient, mock_service: MagicMock
    ) -> None:
        mock_service.subscribe.side_effect = Forbidden("not a participant")

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(
                f"/api/realtime/ws?conversation_id={uuid4()}",
                headers={"X-User-Id": "stranger"},
            ):
                pass
        assert exc_info.value.code == 4403

    def test_streams_events_for_the_user(
        self, client: TestClient, mock_service: MagicMock
    ) -> None:
        hub = RealtimeHub()
        conversation_id = uuid4()
        scopes = []

        async def subscribe(scope: Any, user_id: str) -> Subscription:
            scopes.append(scope)
            subscription = hub.subscribe(scope)
            hub.publish(
                RealtimeEvent(
                    event_type="message.created",
                    conversation_id=conversation_id,
                    payload={"id": "m1"},
                    recipients=[user_id],
                )
            )
            return subscription

        mock_service.subscribe.side_effect = subscribe

        with client.websocket_connect(
            "/api/realtime/ws", headers={"X-User-Id": "drv-1"}
        ) as websocket:
            data = websocket.receive_json()

        assert scopes == [UserScope("drv-1")]
        assert data == {
            "event_type": "message.created",
            "conversation_id": str(conversation_id),
            "payload": {"id": "m1"},
        }

    def test_dropped_subscription_closes_with_try_again(
        self, client: TestClient, mock_service: MagicMock
    ) -> None:
        hub = RealtimeHub()
        conversation_id = uuid4()

        async def subscribe(scope: Any, user_id: str) -> Subscription:
            subscription = hub.subscribe(scope)
            hub.close()
            return subscription

        mock_service.subscribe.side_effect = subscribe

        with client.websocket_connect(
            f"/api/realtime/ws?conversation_id={conversation_id}",
            headers={"X-User-Id": "drv-1"},
        ) as websocket:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_json()
        assert exc_info.value.code == 1013
        scope = mock_service.subscribe.call_args.args[0]
        assert scope == ConversationScope(conversation_id)
