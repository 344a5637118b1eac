"""
Topic model - a discovered candidate subject for content.
Lifecycle: discovered -> queued -> used, or discovered -> expired.
queued is the selection lock; claim it with a conditional UPDATE, never read-then-write.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base


class TopicStatus:
    DISCOVERED = "discovered"
    QUEUED = "queued"
    USED = "used"
    EXPIRED = "expired"


class Topic(Base):
    __tablename__ = "topics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL")
    )

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    keywords: Mapped[list] = mapped_column(JSONB, default=list)
    source_urls: Mapped[list] = mapped_column(JSONB, default=list)
    source_metadata: Mapped[dict] = mapped_column(JSONB, default=dict)  # source name, raw signal

    confidence_score: Mapped[float] = mapped_column(
        Numeric(5, 4, asdecimal=False), default=0.0, nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), default=TopicStatus.DISCOVERED, nullable=False
    )  # discovered, queued, used, expired

    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # At the source
    trending_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))  # When we found it
    used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_topics_brand_status", "brand_id", "status"),
        Index("ix_topics_brand_created", "brand_id", "created_at"),
        Index("ix_topics_trending", "trending_at"),
    )

    def __repr__(self) -> str:
        return f"<Topic {self.title[:40]} ({self.status})>"
