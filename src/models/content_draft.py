"""
ContentDraft and Approval models.

Status (reviewer-facing): draft -> pending_review -> approved -> published,
with rejected reachable from any pre-published status.
Stage (pipeline-facing): which step the driver runs next. The pair
(stage, stage_task_id) makes a draft resumable from persisted state alone.
Drafts are soft-deleted via deleted_at.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base


class DraftStatus:
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"

    # Forward order; rejected is the only branch
    ORDER = (DRAFT, PENDING_REVIEW, APPROVED, PUBLISHED)


class DraftStage:
    OUTLINE = "outline"
    DRAFT = "draft"
    MODERATION = "moderation"
    VARIANTS = "variants"
    REVIEW = "review"
    APPROVED = "approved"
    PUBLISHED = "published"
    REJECTED = "rejected"

    # Stages the driver advances on its own
    WORKING = (OUTLINE, DRAFT, MODERATION, VARIANTS)
    TERMINAL = (PUBLISHED, REJECTED)


class ApprovalStatus:
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class ContentDraft(Base):
    __tablename__ = "content_drafts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    topic_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("topics.id", ondelete="SET NULL")
    )
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("categories.id", ondelete="SET NULL")
    )

    title: Mapped[Optional[str]] = mapped_column(String(500))
    strategy_brief: Mapped[Optional[str]] = mapped_column(Text)
    outline: Mapped[list] = mapped_column(JSONB, default=list)  # Ordered section stubs
    body: Mapped[Optional[str]] = mapped_column(Text)
    seo_metadata: Mapped[dict] = mapped_column(JSONB, default=dict)  # meta_description, keywords, slug, og_*, moderation, rejection
    keywords: Mapped[list] = mapped_column(JSONB, default=list)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)

    status: Mapped[str] = mapped_column(
        String(20), default=DraftStatus.DRAFT, nullable=False
    )
    stage: Mapped[str] = mapped_column(
        String(20), default=DraftStage.OUTLINE, nullable=False
    )
    stage_task_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    approved_by: Mapped[Optional[str]] = mapped_column(String(100))  # None = system approval
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_content_drafts_brand_status", "brand_id", "status"),
        Index("ix_content_drafts_stage", "stage", "updated_at"),
        Index("ix_content_drafts_created", "created_at"),
    )

    def can_transition_to(self, new_status: str) -> bool:
        """Forward-only status moves, plus rejection from anything not yet published."""
        if new_status == DraftStatus.REJECTED:
            return self.status not in (DraftStatus.PUBLISHED, DraftStatus.REJECTED)
        if self.status == DraftStatus.REJECTED or new_status not in DraftStatus.ORDER:
            return False
        return DraftStatus.ORDER.index(new_status) > DraftStatus.ORDER.index(self.status)

    def __repr__(self) -> str:
        return f"<ContentDraft {(self.title or '')[:40]} ({self.status}/{self.stage})>"


class Approval(Base):
    __tablename__ = "approvals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    content_draft_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("content_drafts.id"), nullable=False
    )
    reviewer: Mapped[str] = mapped_column(String(100), nullable=False)  # user id or "system"
    status: Mapped[str] = mapped_column(String(30), nullable=False)  # approved, rejected, changes_requested
    comment: Mapped[Optional[str]] = mapped_column(Text)
    changes: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_approvals_draft", "content_draft_id"),
    )

    def __repr__(self) -> str:
        return f"<Approval {self.reviewer} {self.status}>"
