"""
Brand and Category models - the tenant configuration units.
A brand owns its voice, schedule settings, connectors, topics and drafts.
Brands are never hard-deleted; deactivate or set deleted_at instead.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base


class Brand(Base):
    __tablename__ = "brands"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    domain: Mapped[Optional[str]] = mapped_column(String(255))

    # Free-form generation context
    brand_voice: Mapped[dict] = mapped_column(JSONB, default=dict)
    style_guide: Mapped[dict] = mapped_column(JSONB, default=dict)  # tone, blocklist, ...

    # posts_per_day, quiet_hours [{start,end}], timezone, auto_approve,
    # auto_approve_threshold, auto_publish, optimal_posting_times, required_keywords
    settings: Mapped[dict] = mapped_column(JSONB, default=dict)

    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
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
        Index("ix_brands_active", "active"),
    )

    def setting(self, key: str, default: Any = None) -> Any:
        return (self.settings or {}).get(key, default)

    @property
    def posts_per_day(self) -> int:
        try:
            return max(int(self.setting("posts_per_day", 1)), 1)
        except (TypeError, ValueError):
            return 1

    @property
    def quiet_hours(self) -> list[dict]:
        return list(self.setting("quiet_hours") or [])

    @property
    def timezone_name(self) -> str:
        return self.setting("timezone") or "UTC"

    @property
    def auto_approve(self) -> bool:
        return bool(self.setting("auto_approve", False))

    @property
    def auto_publish(self) -> bool:
        return bool(self.setting("auto_publish", False))

    @property
    def auto_approve_threshold(self) -> float:
        """Brand override wins; otherwise the configured default (0.8)."""
        value = self.setting("auto_approve_threshold")
        if value is None:
            from src.config import get_settings
            return get_settings().default_auto_approve_threshold
        return float(value)

    def __repr__(self) -> str:
        return f"<Brand {self.slug}>"


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(100))
    keywords: Mapped[list] = mapped_column(JSONB, default=list)  # Seed keywords
    trend_sources: Mapped[dict] = mapped_column(JSONB, default=dict)  # {"rss_feeds": [...], ...}
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_categories_brand", "brand_id", "active"),
    )

    def __repr__(self) -> str:
        return f"<Category {self.name}>"
