from typing import Any, Dict

from pydantic import BaseModel, Field


class PushSummary(BaseModel):
    """What the push notifier is told about a new message."""

    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
