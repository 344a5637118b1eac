"""
Tests for src/integrations/website.py - field mapping, row building and CMS inserts.
"""
import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from src.integrations.publisher_base import PlatformError
from src.integrations.website import FieldMapper, WebsitePublisher, make_slug
from src.utils.encryption import encrypt_json


def _connector(**overrides):
    fields = {
        "id": "0b10c000-0000-0000-0000-000000000001",
        "name": "Acme blog",
        "driver": "pgsql",
        "encrypted_credentials": encrypt_json({
            "host": "db.example.com", "database": "blog", "username": "writer", "password": "secret",
        }),
        "table_name": "posts",
        "field_mapping": FieldMapper.default_mapping("generic"),
        "slug_policy": "auto",
        "status_workflow": {"published": "publish"},
        "timezone": "UTC",
    }
    fields.update(overrides)
    return MagicMock(**fields)


def _engine(dialect="postgresql", scalar=17, lastrowid=None):
    result = MagicMock()
    result.scalar = MagicMock(return_value=scalar)
    result.lastrowid = lastrowid
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=result)
    begin = MagicMock()
    begin.__aenter__ = AsyncMock(return_value=conn)
    begin.__aexit__ = AsyncMock(return_value=False)
    engine = MagicMock()
    engine.begin = MagicMock(return_value=begin)
    engine.dispose = AsyncMock()
    engine.dialect.name = dialect
    return engine, conn


# ---------------------------------------------------------------------------
# Slugs and field mapping
# ---------------------------------------------------------------------------

class TestMakeSlug:
    @pytest.mark.parametrize("title,slug", [
        ("Secure Your API!", "secure-your-api"),
        ("  Café & Crème  ", "cafe-creme"),
        ("---", ""),
        (None, ""),
    ])
    def test_slugs(self, title, slug):
        assert make_slug(title) == slug

    def test_max_length_has_no_trailing_dash(self):
        assert make_slug("abc def", max_length=4) == "abc"


class TestFieldMapper:
    def test_unknown_cms_gets_generic(self):
        assert FieldMapper.default_mapping("ghost") == FieldMapper.default_mapping("generic")

    def test_default_mapping_is_a_copy(self):
        mapping = FieldMapper.default_mapping("wordpress")
        mapping["title"] = "changed"
        assert FieldMapper.default_mapping("wordpress")["title"] == "post_title"

    def test_validate_required_and_duplicates(self):
        errors = FieldMapper.validate({"title": "name", "excerpt": "name"})
        assert "Required field 'body' must be mapped" in errors
        assert "Database column 'name' is mapped multiple times" in errors

    def test_validate_allows_shared_json_root(self):
        mapping = {"title": "t", "body": "b", "meta_description": "meta.description", "tags": "meta.tags"}
        assert FieldMapper.validate(mapping) == []

    def test_map_flattens_lists_and_nests_json(self):
        mapping = FieldMapper.default_mapping("wordpress")
        row = FieldMapper.map(
            {"title": "T", "body": "B", "meta_description": "D", "excerpt": None, "unmapped": "x"},
            {**mapping, "tags": "post_tags"},
        )
        assert row["post_title"] == "T"
        assert json.loads(row["post_meta"]) == {"description": "D"}
        assert "post_excerpt" not in row

        assert FieldMapper.map({"tags": ["api", "security"]}, {"tags": "tags"}) == {"tags": "api, security"}

    def test_reverse_map(self):
        mapping = FieldMapper.default_mapping("wordpress")
        row = {"post_title": "T", "post_content": "B", "post_meta": json.dumps({"description": "D"})}
        assert FieldMapper.reverse_map(row, mapping) == {"title": "T", "body": "B", "meta_description": "D"}

    def test_reverse_map_bad_json(self):
        content = FieldMapper.reverse_map({"post_meta": "{not json"}, {"meta_description": "post_meta.description"})
        assert content == {}


# ---------------------------------------------------------------------------
# WebsitePublisher
# ---------------------------------------------------------------------------

class TestBuildRow:
    def test_auto_slug_status_and_timestamps(self):
        connector = _connector(field_mapping={
            "title": "title", "body": "content", "slug": "slug", "created": "created_at",
        })
        now = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)

        row = WebsitePublisher(rate_limiter=MagicMock()).build_row(connector, {"title": "Secure Your API", "body": "B"}, now)

        assert row["slug"] == "secure-your-api"
        assert row["status"] == "publish"
        assert row["created_at"] == datetime(2026, 3, 10, 9, 0)

    def test_timestamps_in_site_timezone(self):
        connector = _connector(
            timezone="America/New_York",
            field_mapping={"title": "title", "body": "content", "updated": "updated_at"},
        )
        now = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)

        row = WebsitePublisher(rate_limiter=MagicMock()).build_row(connector, {"title": "T", "body": "B"}, now)

        assert row["updated_at"] == datetime(2026, 3, 10, 10, 0)

    def test_manual_slug_policy(self):
        connector = _connector(slug_policy="manual")
        row = WebsitePublisher(rate_limiter=MagicMock()).build_row(connector, {"title": "T", "body": "B"})
        assert "slug" not in row

    def test_invalid_mapping_not_retryable(self):
        connector = _connector(field_mapping={"title": "title"})
        with pytest.raises(PlatformError) as exc:
            WebsitePublisher(rate_limiter=MagicMock()).build_row(connector, {"title": "T"})
        assert exc.value.retryable is False


class TestBuildUrl:
    def test_pgsql_defaults_port(self):
        url = WebsitePublisher(rate_limiter=MagicMock()).build_url(_connector())
        assert url.drivername == "postgresql+asyncpg"
        assert url.port == 5432
        assert url.host == "db.example.com"
        assert url.database == "blog"

    def test_mysql(self):
        url = WebsitePublisher(rate_limiter=MagicMock()).build_url(_connector(driver="mysql"))
        assert url.drivername == "mysql+aiomysql"
        assert url.port == 3306

    def test_unsupported_driver(self):
        with pytest.raises(PlatformError, match="Unsupported website driver"):
            WebsitePublisher(rate_limiter=MagicMock()).build_url(_connector(driver="mssql"))


class TestWebsitePublish:
    @pytest.mark.asyncio
    async def test_dry_run_touches_no_database(self):
        publisher = WebsitePublisher(rate_limiter=MagicMock())
        variant = MagicMock(title="Secure Your API", content="<p>Body</p>")

        with patch.object(publisher, "create_engine") as create_engine:
            result = await publisher.publish(variant, _connector(), {"excerpt": "E"}, dry_run=True)

        create_engine.assert_not_called()
        assert result.post_id is None
        assert result.raw["dry_run"] is True
        assert result.raw["data"]["slug"] == "secure-your-api"

    @pytest.mark.asyncio
    async def test_postgres_insert_returns_url(self):
        publisher = WebsitePublisher(rate_limiter=MagicMock())
        engine, conn = _engine(scalar=17)
        variant = MagicMock(title="Secure Your API", content="<p>Body</p>")

        with patch.object(publisher, "create_engine", return_value=engine):
            result = await publisher.publish(variant, _connector(), {"site_url": "https://acme.example.com/"})

        assert result.post_id == "17"
        assert result.url == "https://acme.example.com/secure-your-api"
        conn.execute.assert_awaited_once()
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_mysql_insert_uses_lastrowid(self):
        publisher = WebsitePublisher(rate_limiter=MagicMock())
        engine, _ = _engine(dialect="mysql", lastrowid=5)

        with patch.object(publisher, "create_engine", return_value=engine):
            result = await publisher.publish(MagicMock(title="T", content="B"), _connector(driver="mysql"))

        assert result.post_id == "5"
        assert result.url is None

    @pytest.mark.asyncio
    async def test_insert_failure_becomes_platform_error(self):
        publisher = WebsitePublisher(rate_limiter=MagicMock())
        engine, conn = _engine()
        conn.execute.side_effect = RuntimeError("relation does not exist")

        with patch.object(publisher, "create_engine", return_value=engine):
            with pytest.raises(PlatformError, match="Website insert failed"):
                await publisher.publish(MagicMock(title="T", content="B"), _connector())
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_metrics_and_separate_rate_key(self):
        publisher = WebsitePublisher(rate_limiter=MagicMock())
        connector = _connector()
        assert await publisher.get_metrics("17", connector) == {}
        assert publisher.rate_limit_key(connector) == f"website:{connector.id}"
