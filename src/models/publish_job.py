"""
PublishJob model - durable record of one publish for one (variant, connector) pair.
Lifecycle: pending -> processing -> published, or -> failed / cancelled.

idempotency_key is unique: redelivery of the same logical publish resolves to
the same row. Exactly one of website_connector_id / social_connector_id is set.
"""
import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Text, Integer, DateTime, ForeignKey, Index, CheckConstraint,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base
from src.models.connector import PublishTarget, WebsiteTarget


class PublishJobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"

    # Occupies a schedule slot
    SCHEDULED = (PENDING, PROCESSING)


MAX_PUBLISH_ATTEMPTS = 3


def make_idempotency_key(variant_id, connector_id, platform: str) -> str:
    """Deterministic key for one logical publish: md5(variant + connector + platform)."""
    raw = f"{variant_id}{connector_id}{platform}"
    return hashlib.md5(raw.encode()).hexdigest()


class PublishJob(Base):
    __tablename__ = "publish_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    content_draft_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("content_drafts.id"), nullable=False
    )
    content_variant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("content_variants.id"), nullable=False
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    website_connector_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("website_connectors.id")
    )
    social_connector_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("social_connectors.id")
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)

    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    status: Mapped[str] = mapped_column(
        String(20), default=PublishJobStatus.PENDING, nullable=False
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    external_id: Mapped[Optional[str]] = mapped_column(String(255))  # Post id / inserted row id
    result: Mapped[Optional[dict]] = mapped_column(JSONB)  # {post_id, url, ...}
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint(
            "(website_connector_id IS NULL) <> (social_connector_id IS NULL)",
            name="ck_publish_jobs_single_connector",
        ),
        Index("ix_publish_jobs_brand_schedule", "brand_id", "status", "scheduled_at"),
        Index("ix_publish_jobs_draft", "content_draft_id"),
    )

    @staticmethod
    def connector_columns(target: PublishTarget) -> dict:
        """Column values pointing at the target's connector (the other side stays NULL)."""
        if isinstance(target, WebsiteTarget):
            return {"website_connector_id": target.connector.id, "social_connector_id": None}
        return {"website_connector_id": None, "social_connector_id": target.connector.id}

    def can_retry(self) -> bool:
        return self.attempt_count < MAX_PUBLISH_ATTEMPTS

    def __repr__(self) -> str:
        return f"<PublishJob {self.platform} ({self.status}) key={self.idempotency_key[:8]}>"
