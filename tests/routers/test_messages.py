from datetime import datetime, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from chat_core.errors import Forbidden, NotFound
from chat_core.models.api.messages import MessageResponse, TextContent

HEADERS = {"X-User-Id": "cust-1"}


class TestMessagesRouter:
    """Unit tests for the messages router endpoints."""

    @pytest.fixture
    def sample_message(self) -> MessageResponse:
        now = datetime.now(timezone.utc)
        return MessageResponse(
            id=uuid4(),
            conversation_id=uuid4(),
            sender_id="cust-1",
            content=TextContent(text="Corrected text"),
            created_at=now,
            is_edited=True,
            edited_at=now,
        )

    def test_edit_message(
        self, client: TestClient, mock_service: MagicMock, sample_message: MessageResponse
    ) -> None:
        mock_service.edit_message.return_value = sample_message

        response = client.patch(
            f"/api/messages/{sample_message.id}",
            json={"content": {"type": "text", "text": "Corrected text"}},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["is_edited"] is True
        args, _ = mock_service.edit_message.call_args
        assert args[0] == sample_message.id
        assert args[1] == "cust-1"

    def test_edit_someone_elses_message(
        self, client: TestClient, mock_service: MagicMock
    ) -> None:
        mock_service.edit_message.side_effect = Forbidden("Only the sender can edit")

        response = client.patch(
            f"/api/messages/{uuid4()}",
            json={"content": {"type": "text", "text": "mine now"}},
            headers=HEADERS,
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "Only the sender can edit"

    def test_edit_requires_content(self, client: TestClient) -> None:
        response = client.patch(f"/api/messages/{uuid4()}", json={}, headers=HEADERS)
        assert response.status_code == 422

    def test_delete_message(
        self, client: TestClient, mock_service: MagicMock, sample_message: MessageResponse
    ) -> None:
        mock_service.delete_message.return_value = sample_message.model_copy(
            update={"is_deleted": True}
        )

        response = client.delete(f"/api/messages/{sample_message.id}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["is_deleted"] is True
        mock_service.delete_message.assert_called_once_with(sample_message.id, "cust-1")

    def test_delete_missing_message(
        self, client: TestClient, mock_service: MagicMock
    ) -> None:
        mock_service.delete_message.side_effect = NotFound("Message not found")

        response = client.delete(f"/api/messages/{uuid4()}", headers=HEADERS)

        assert response.status_code == 404
