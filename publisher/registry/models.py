"""SQLAlchemy models for knowledge assets."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from publisher.core.clock import utcnow
from publisher.core.db import Base

ASSET_STATUSES = ("pending", "queued", "publishing", "published", "failed")
ATTEMPT_STATUSES = ("started", "success", "failed")


class AssetModel(Base):
    """Knowledge asset submission and its lifecycle state."""

    __tablename__ = "assets"

    id = Column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
        nullable=False,
    )

    # Content and metadata
    content = Column(JSON, nullable=False)
    source = Column(String(100), nullable=True)
    source_id = Column(String(255), nullable=True)
    tags = Column(JSON, nullable=False, default=list)

    # Publishing configuration
    priority = Column(Integer, nullable=False, default=50)
    privacy = Column(
        Enum("private", "public", name="asset_privacy_enum"),
        nullable=False,
        default="private",
    )
    epochs = Column(Integer, nullable=False, default=2)
    max_attempts = Column(Integer, nullable=False, default=3)

    # Status and attempts
    status = Column(
        Enum(*ASSET_STATUSES, name="asset_status_enum"),
        nullable=False,
        default="pending",
    )
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    wallet_id = Column(Integer, nullable=True)
    claim_token = Column(String(32), nullable=True)  # held while publishing

    # Publishing results
    asset_locator = Column(String(255), nullable=True, unique=True)
    transaction_hash = Column(String(66), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)
    queued_at = Column(DateTime, nullable=True)
    publishing_started_at = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_assets_status_updated", "status", "updated_at"),
        Index("idx_assets_source", "source", "source_id"),
    )


class PublishingAttemptModel(Base):
    """Audit trail for every publish attempt."""

    __tablename__ = "publishing_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(
        String(36), ForeignKey("assets.id", ondelete="CASCADE"), nullable=False
    )
    attempt_number = Column(Integer, nullable=False)
    worker_id = Column(String(100), nullable=True)
    wallet_id = Column(Integer, nullable=True)
    status = Column(
        Enum(*ATTEMPT_STATUSES, name="publishing_attempt_status_enum"),
        nullable=False,
    )
    locator = Column(String(255), nullable=True)
    transaction_hash = Column(String(66), nullable=True)
    error_type = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    __table_args__ = (
        Index("idx_attempts_asset", "asset_id", "attempt_number"),
    )
