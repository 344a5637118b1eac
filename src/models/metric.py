"""
Metric model - immutable engagement measurement for one PublishJob.
Rows are only ever inserted; a new fetch writes new rows.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, BigInteger, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base


class MetricType:
    IMPRESSIONS = "impressions"
    CLICKS = "clicks"
    LIKES = "likes"
    SHARES = "shares"
    COMMENTS = "comments"
    REACH = "reach"
    ENGAGEMENT = "engagement"
    VIEWS = "views"

    ALL = (IMPRESSIONS, CLICKS, LIKES, SHARES, COMMENTS, REACH, ENGAGEMENT, VIEWS)


class Metric(Base):
    __tablename__ = "metrics"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    publish_job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("publish_jobs.id"), nullable=False
    )
    metric_type: Mapped[str] = mapped_column(String(30), nullable=False)
    value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    meta: Mapped[dict] = mapped_column("metadata", JSONB, default=dict)  # original_metric_name, platform

    __table_args__ = (
        Index("ix_metrics_job_type", "publish_job_id", "metric_type"),
    )

    def __repr__(self) -> str:
        return f"<Metric {self.metric_type}={self.value}>"
