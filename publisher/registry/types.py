"""Submission and asset status models."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AssetState(str, Enum):
    """Asset lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"


TERMINAL_STATES = frozenset({AssetState.PUBLISHED, AssetState.FAILED})


class AttemptStatus(str, Enum):
    """Publishing attempt outcomes."""

    STARTED = "started"
    SUCCESS = "success"
    FAILED = "failed"


class Privacy(str, Enum):
    """Knowledge asset visibility on the ledger."""

    PRIVATE = "private"
    PUBLIC = "public"


class AssetMetadata(BaseModel):
    """Where a submission came from."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    source: Optional[str] = Field(default=None, max_length=100)
    source_id: Optional[str] = Field(default=None, max_length=255, alias="sourceId")
    tags: list[str] = Field(default_factory=list)


class PublishOptions(BaseModel):
    """Per-asset publishing configuration."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    priority: Optional[int] = Field(default=None, ge=0, le=100)
    max_attempts: Optional[int] = Field(default=None, ge=1, alias="maxAttempts")
    privacy: Privacy = Privacy.PRIVATE
    epochs: Optional[int] = Field(default=None, ge=1)


class AssetInput(BaseModel):
    """A knowledge asset submission."""

    content: dict[str, Any]
    metadata: AssetMetadata = Field(default_factory=AssetMetadata)
    publish_options: PublishOptions = Field(default_factory=PublishOptions)

    @field_validator("content")
    @classmethod
    def content_not_empty(cls, value: dict[str, Any]) -> dict[str, Any]:
        """Reject empty payloads."""
        if not value:
            raise ValueError("content must not be empty")
        return value


class AssetStatusView(BaseModel):
    """Caller-facing view of an asset's committed state."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: AssetState
    attempt_count: int = 0
    max_attempts: int
    asset_locator: Optional[str] = None
    transaction_hash: Optional[str] = None
    last_error: Optional[str] = None
    priority: int
    source: Optional[str] = None
    source_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None


class Asset(AssetStatusView):
    """Full asset record including its payload."""

    content: dict[str, Any]
    tags: list[str] = Field(default_factory=list)
    privacy: Privacy = Privacy.PRIVATE
    epochs: int
    wallet_id: Optional[int] = None


class PublishingAttempt(BaseModel):
    """One publish try against the ledger."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    asset_id: str
    attempt_number: int
    worker_id: Optional[str] = None
    wallet_id: Optional[int] = None
    status: AttemptStatus
    locator: Optional[str] = None
    transaction_hash: Optional[str] = None
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
