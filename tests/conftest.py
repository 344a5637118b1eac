"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest
import uuid
from contextlib import ExitStack
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from src.database import Base
import src.models  # noqa: F401  (register every table on Base.metadata)
from src.models.brand import Brand, Category
from src.models.connector import SocialConnector, WebsiteConnector
from src.models.content_draft import ContentDraft, DraftStage, DraftStatus
from src.models.content_variant import ContentVariant
from src.models.topic import Topic, TopicStatus
from src.utils.encryption import encrypt_json


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Modules that open their own sessions via async_session_factory()
SESSION_MODULES = (
    "src.services.content_pipeline",
    "src.services.pipeline",
    "src.services.task_dispatch",
    "src.workers.task_processor",
    "src.workers.pipeline_sweeper",
)


class _SessionCtx:
    """async with wrapper that hands out the test session without closing it."""

    def __init__(self, session):
        self.session = session

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *args):
        return False


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def session_db(db):
    """Route every handler's async_session_factory() to the test session."""
    with ExitStack() as stack:
        for module in SESSION_MODULES:
            stack.enter_context(patch(f"{module}.async_session_factory", lambda: _SessionCtx(db)))
        yield db


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.lpush = AsyncMock(return_value=1)
    redis_mock.eval = AsyncMock(return_value=1)
    with patch("src.utils.cache.get_redis", new_callable=AsyncMock, return_value=redis_mock):
        yield redis_mock


@pytest.fixture(autouse=True)
def quiet_alerts():
    """Alerts never leave the process in tests."""
    with patch("src.utils.alerting._send_webhook_alert", new_callable=AsyncMock) as mock:
        yield mock


@pytest.fixture
def mock_ai():
    """Mock for async generate_response - prevents real AI API calls in tests."""
    with patch("src.services.content_generation.generate_response", new_callable=AsyncMock) as mock:
        mock.return_value = {
            "content": "Generated text",
            "provider": "anthropic",
            "model": "claude-haiku",
            "latency_ms": 500,
            "cost_usd": 0.001,
            "input_tokens": 100,
            "output_tokens": 50,
            "error": None,
        }
        yield mock


@pytest.fixture
async def brand(db):
    brand = Brand(
        name="Acme Security",
        slug="acme",
        domain="acme.example.com",
        brand_voice={"tone": "confident"},
        style_guide={"blocklist": ["guaranteed"]},
        settings={"posts_per_day": 2, "timezone": "UTC"},
    )
    db.add(brand)
    await db.flush()
    return brand


@pytest.fixture
async def category(db, brand):
    category = Category(brand_id=brand.id, name="API Security", keywords=["api", "security", "oauth"])
    db.add(category)
    await db.flush()
    return category


@pytest.fixture
def make_topic(db, brand):
    async def _make(**overrides):
        fields = {
            "brand_id": brand.id,
            "title": "How to Secure Your API",
            "description": "A practical guide to API authentication and rate limiting.",
            "keywords": ["api", "security"],
            "source_urls": ["https://techcrunch.com/api-security"],
            "confidence_score": 0.92,
            "status": TopicStatus.DISCOVERED,
            "trending_at": datetime.now(timezone.utc) - timedelta(hours=2),
        }
        fields.update(overrides)
        topic = Topic(**fields)
        db.add(topic)
        await db.flush()
        return topic
    return _make


@pytest.fixture
def make_draft(db, brand):
    async def _make(**overrides):
        fields = {
            "brand_id": brand.id,
            "title": "How to Secure Your API",
            "strategy_brief": "Audience: backend developers.",
            "outline": [{"heading": "Intro", "points": [], "word_target": 100}],
            "body": "## Intro\nUse short-lived tokens.",
            "seo_metadata": {"meta_description": "Secure your API", "slug": "secure-your-api"},
            "keywords": ["api", "security"],
            "confidence_score": 0.92,
            "status": DraftStatus.APPROVED,
            "stage": DraftStage.APPROVED,
        }
        fields.update(overrides)
        draft = ContentDraft(**fields)
        db.add(draft)
        await db.flush()
        return draft
    return _make


@pytest.fixture
def make_variant(db):
    async def _make(draft, platform, **overrides):
        fields = {
            "content_draft_id": draft.id,
            "platform": platform,
            "title": draft.title,
            "content": f"{platform} version of {draft.title}",
        }
        fields.update(overrides)
        variant = ContentVariant(**fields)
        db.add(variant)
        await db.flush()
        return variant
    return _make


@pytest.fixture
def make_social_connector(db, brand):
    async def _make(platform, **overrides):
        fields = {
            "brand_id": brand.id,
            "platform": platform,
            "account_name": f"acme-{platform}",
            "encrypted_token": encrypt_json({"access_token": f"{platform}-token", "refresh_token": "r"}),
            "token_expires_at": datetime.now(timezone.utc) + timedelta(days=30),
            "platform_settings": {"page_id": "123", "author_urn": "urn:li:organization:1"},
        }
        fields.update(overrides)
        connector = SocialConnector(**fields)
        db.add(connector)
        await db.flush()
        return connector
    return _make


@pytest.fixture
def make_website_connector(db, brand):
    async def _make(**overrides):
        fields = {
            "brand_id": brand.id,
            "name": "Acme blog",
            "driver": "pgsql",
            "encrypted_credentials": encrypt_json({
                "host": "db.example.com", "port": 5432, "database": "blog",
                "username": "writer", "password": "secret",
            }),
            "table_name": "wp_posts",
            "field_mapping": {},
        }
        fields.update(overrides)
        connector = WebsiteConnector(**fields)
        db.add(connector)
        await db.flush()
        return connector
    return _make


@pytest.fixture
def fake_publisher():
    """A publisher double that grants rate-limit slots and posts successfully."""
    def _make(platform: str, post_id: str = "post-1", url: str = None, error: Exception = None):
        from src.schemas.pipeline import PublishResult
        publisher = MagicMock()
        publisher.platform = platform
        publisher.can_post = AsyncMock(return_value=True)
        publisher.refresh_token = AsyncMock(return_value={})
        if error is not None:
            publisher.publish = AsyncMock(side_effect=error)
        else:
            publisher.publish = AsyncMock(return_value=PublishResult(
                post_id=post_id, url=url or f"https://{platform}.example.com/{post_id}", platform=platform,
            ))
        publisher.get_metrics = AsyncMock(return_value={})
        return publisher
    return _make


@pytest.fixture
def sample_id():
    return str(uuid.UUID("11111111-1111-1111-1111-111111111111"))
