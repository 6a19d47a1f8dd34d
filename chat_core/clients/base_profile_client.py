import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Union

from chat_core import settings
from chat_core.clients.cache import LRUCache
from chat_core.logging_config import get_logger
from chat_core.models.api.participants import Profile

logger = get_logger(__name__)

PLACEHOLDER_NAME = "User"
_ROLES = {"customer", "driver", "merchant", "support", "admin"}


def placeholder_profile(user_id: str) -> Profile:
    return Profile(user_id=user_id, display_name=PLACEHOLDER_NAME)


def normalize_profile(user_id: str, raw: Union[Dict[str, Any], list, None]) -> Profile:
    """Reduce whatever the directory returned to a single Profile.

    Joined rows may arrive as a list or a single object; the first row wins.
    """
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    if not raw:
        return placeholder_profile(user_id)
    role = raw.get("role")
    return Profile(
        user_id=user_id,
        display_name=raw.get("display_name") or raw.get("full_name") or PLACEHOLDER_NAME,
        avatar_ref=raw.get("avatar_ref") or raw.get("avatar_url"),
        role=role if role in _ROLES else None,
    )


class BaseProfileClient(ABC):
    """Resolves user ids to display identities.

    Lookups never fail: any error degrades to the placeholder profile.
    """

    def __init__(self, cache_size: Optional[int] = None):
        self.cache = LRUCache(max_size=cache_size or settings.PROFILE_CACHE_SIZE)

    @abstractmethod
    async def fetch_profile(self, user_id: str) -> Union[Dict[str, Any], list, None]:
        """Fetch the raw profile record for a user.

        Returns:
            The directory's record (object, list of rows or None when unknown).
        """

    async def resolve(self, user_id: str) -> Profile:
        if user_id in self.cache:
            return self.cache[user_id]
        try:
            raw = await self.fetch_profile(user_id)
        except Exception as e:
            logger.warning("profile_resolve_failed", user_id=user_id, error=str(e))
            return placeholder_profile(user_id)
        profile = normalize_profile(user_id, raw)
        if raw:
            self.cache[user_id] = profile
        return profile

    async def resolve_many(self, user_ids: Iterable[str]) -> Dict[str, Profile]:
        unique = list(dict.fromkeys(user_ids))
        profiles = await asyncio.gather(*(self.resolve(uid) for uid in unique))
        return dict(zip(unique, profiles))
