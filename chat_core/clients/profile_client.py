from typing import Any, Dict, Optional, Union

import httpx

from chat_core.clients.base_profile_client import BaseProfileClient


class HttpProfileClient(BaseProfileClient):
    """Profile directory client using httpx."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 5.0,
        cache_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(cache_size=cache_size)
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def fetch_profile(self, user_id: str) -> Union[Dict[str, Any], list, None]:
        """GET the profile; a 404 means the user is unknown to the directory."""
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.get(
                f"{self.base_url}/profiles/{user_id}", headers=headers
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data: Union[Dict[str, Any], list] = response.json()

            return data
