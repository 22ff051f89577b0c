"""Dispatch queue models."""

from datetime import datetime
from uuid import uuid4

from pydantic import BaseModel, Field

from publisher.core.clock import utcnow


class DispatchEntry(BaseModel):
    """Non-authoritative hint that an asset is ready to publish."""

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    asset_id: str
    priority: int = 50
    enqueued_at: datetime = Field(default_factory=utcnow)
    attempt: int = 0


class QueueStats(BaseModel):
    """Dispatch queue counters."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
