"""
ContentVariant model - platform-specific rendering of a draft.
Exactly one variant per (draft, platform).
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base


class Platform(str, enum.Enum):
    WEBSITE = "website"
    FACEBOOK = "facebook"
    TWITTER = "twitter"
    LINKEDIN = "linkedin"
    INSTAGRAM = "instagram"

    @classmethod
    def social(cls) -> list["Platform"]:
        return [p for p in cls if p is not cls.WEBSITE]


class VariantStatus:
    PENDING = "pending"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"


class ContentVariant(Base):
    __tablename__ = "content_variants"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    content_draft_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("content_drafts.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)  # Platform value
    title: Mapped[Optional[str]] = mapped_column(String(500))
    content: Mapped[str] = mapped_column(Text, nullable=False)
    formatting: Mapped[dict] = mapped_column(JSONB, default=dict)  # hashtags, mentions
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)  # link, excerpt, character_count

    status: Mapped[str] = mapped_column(
        String(20), default=VariantStatus.PENDING, nullable=False
    )
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("content_draft_id", "platform", name="uq_content_variants_draft_platform"),
    )

    def __repr__(self) -> str:
        return f"<ContentVariant {self.platform} ({self.status})>"
