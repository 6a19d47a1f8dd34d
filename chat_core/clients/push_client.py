from typing import Optional

import httpx

from chat_core.clients.base_push_client import BasePushClient
from chat_core.models.api.notifications import PushSummary


class HttpPushClient(BasePushClient):
    """Push notifier client using httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def notify(self, user_id: str, summary: PushSummary) -> None:
        """Post the summary to the notifier's /notify endpoint."""
        payload = {
            "user_id": user_id,
            "title": summary.title,
            "body": summary.body,
            "data": summary.data,
        }

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.post(
                f"{self.base_url}/notify", json=payload, headers=headers
            )
            response.raise_for_status()
