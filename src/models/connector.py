"""
Connector models - configured external publish targets.
A connector is the unit of external identity and the unit of rate limiting.

Credentials and tokens are stored as Fernet ciphertext only; see
src/utils/encryption.py for the read/write boundary.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import String, Text, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from src.database import Base
from src.utils.timezone import ensure_utc


class WebsiteConnector(Base):
    __tablename__ = "website_connectors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    driver: Mapped[str] = mapped_column(String(20), default="pgsql", nullable=False)  # pgsql, mysql
    encrypted_credentials: Mapped[str] = mapped_column(Text, nullable=False)  # {host, port, database, username, password}
    table_name: Mapped[str] = mapped_column(String(255), nullable=False)
    field_mapping: Mapped[dict] = mapped_column(JSONB, default=dict)  # app field -> db column
    status_workflow: Mapped[Optional[dict]] = mapped_column(JSONB)  # {"published": "publish"}
    slug_policy: Mapped[str] = mapped_column(String(20), default="auto")  # auto, manual
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    rate_limits: Mapped[dict] = mapped_column(JSONB, default=dict)  # posts_per_hour, posts_per_day
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_tested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_website_connectors_brand", "brand_id", "active"),
    )

    def __repr__(self) -> str:
        return f"<WebsiteConnector {self.name} ({self.driver}:{self.table_name})>"


class SocialConnector(Base):
    __tablename__ = "social_connectors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    brand_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("brands.id"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)  # facebook, twitter, linkedin, instagram
    account_name: Mapped[Optional[str]] = mapped_column(String(255))
    account_id: Mapped[Optional[str]] = mapped_column(String(255))
    encrypted_token: Mapped[Optional[str]] = mapped_column(Text)  # {access_token, refresh_token, expires_in}
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    platform_settings: Mapped[dict] = mapped_column(JSONB, default=dict)  # page_id, author_urn, ig_user_id
    rate_limits: Mapped[dict] = mapped_column(JSONB, default=dict)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_social_connectors_brand_platform", "brand_id", "platform", "active"),
    )

    def is_token_expired(self, now: Optional[datetime] = None) -> bool:
        if not self.token_expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        return ensure_utc(self.token_expires_at) <= now

    def is_token_expiring_soon(self, window_days: int = 7, now: Optional[datetime] = None) -> bool:
        if not self.token_expires_at:
            return False
        now = now or datetime.now(timezone.utc)
        return ensure_utc(self.token_expires_at) <= now + timedelta(days=window_days)

    def __repr__(self) -> str:
        return f"<SocialConnector {self.platform}:{self.account_name}>"


@dataclass(frozen=True)
class WebsiteTarget:
    """Publish target backed by an external website database."""
    connector: WebsiteConnector

    @property
    def platform(self) -> str:
        return "website"

    @property
    def rate_limit_key(self) -> str:
        return f"website:{self.connector.id}"


@dataclass(frozen=True)
class SocialTarget:
    """Publish target backed by a social account."""
    connector: SocialConnector

    @property
    def platform(self) -> str:
        return self.connector.platform

    @property
    def rate_limit_key(self) -> str:
        return f"social:{self.connector.id}"


PublishTarget = Union[WebsiteTarget, SocialTarget]
