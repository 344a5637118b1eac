"""
Website publisher - inserts articles straight into a CMS database table.

The connector stores encrypted credentials {host, port, database, username,
password}, the target table and a field mapping (app field -> db column).
A dotted target like "post_meta.description" collects values into one
JSON-encoded column. Supported drivers: pgsql (asyncpg), mysql (aiomysql).
"""
import json
import logging
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import column, delete, func, insert, select, table, text, update
from sqlalchemy.engine import URL
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.integrations.publisher_base import PlatformError, Publisher
from src.models.content_variant import Platform
from src.schemas.pipeline import PublishResult
from src.utils.encryption import decrypt_json
from src.utils.timezone import get_zone

logger = logging.getLogger(__name__)

DRIVERS = {
    "pgsql": ("postgresql+asyncpg", 5432),
    "mysql": ("mysql+aiomysql", 3306),
}

REQUIRED_FIELDS = ("title", "body")
STATUS_COLUMNS = ("status", "post_status", "state", "published")
CREATED_COLUMNS = ("created_at", "created", "date_created", "post_date")
UPDATED_COLUMNS = ("updated_at", "modified", "date_modified", "post_modified")

DEFAULT_MAPPINGS = {
    "wordpress": {
        "title": "post_title",
        "body": "post_content",
        "excerpt": "post_excerpt",
        "slug": "post_name",
        "status": "post_status",
        "published_at": "post_date",
        "meta_description": "post_meta.description",
        "featured_image_url": "thumbnail_url",
    },
    "drupal": {
        "title": "title",
        "body": "body",
        "excerpt": "summary",
        "slug": "alias",
        "status": "status",
        "published_at": "created",
    },
    "joomla": {
        "title": "title",
        "body": "introtext",
        "meta_description": "metadesc",
        "slug": "alias",
        "status": "state",
        "published_at": "publish_up",
    },
    "generic": {
        "title": "title",
        "body": "content",
        "excerpt": "excerpt",
        "slug": "slug",
        "status": "status",
        "published_at": "published_at",
        "meta_description": "meta_description",
        "featured_image_url": "featured_image_url",
    },
}


def make_slug(value: str, max_length: int = 200) -> str:
    normalized = unicodedata.normalize("NFKD", value or "").encode("ascii", "ignore").decode()
    slug = re.sub(r"[^a-z0-9]+", "-", normalized.lower()).strip("-")
    return slug[:max_length].rstrip("-")


class FieldMapper:
    """App field <-> database column translation."""

    @staticmethod
    def default_mapping(cms: str = "generic") -> dict:
        return dict(DEFAULT_MAPPINGS.get(cms, DEFAULT_MAPPINGS["generic"]))

    @staticmethod
    def validate(mapping: dict) -> list[str]:
        errors = []
        for field in REQUIRED_FIELDS:
            if not mapping.get(field):
                errors.append(f"Required field '{field}' must be mapped")

        seen: dict[str, int] = {}
        for target in mapping.values():
            if not target or "." in target:
                continue
            seen[target] = seen.get(target, 0) + 1
        for target, count in seen.items():
            if count > 1:
                errors.append(f"Database column '{target}' is mapped multiple times")
        return errors

    @staticmethod
    def map(content: dict, mapping: dict) -> dict:
        row: dict[str, Any] = {}
        nested: dict[str, dict] = {}
        for field, target in mapping.items():
            if not target or field not in content or content[field] is None:
                continue
            value = content[field]
            if isinstance(value, (list, tuple)):
                value = ", ".join(str(v) for v in value)
            if "." in target:
                root, key = target.split(".", 1)
                nested.setdefault(root, {})[key] = value
            else:
                row[target] = value
        for root, values in nested.items():
            row[root] = json.dumps(values)
        return row

    @staticmethod
    def reverse_map(row: dict, mapping: dict) -> dict:
        content: dict[str, Any] = {}
        decoded: dict[str, dict] = {}
        for field, target in mapping.items():
            if not target:
                continue
            if "." in target:
                root, key = target.split(".", 1)
                if root not in decoded:
                    raw = row.get(root)
                    try:
                        decoded[root] = json.loads(raw) if isinstance(raw, str) else (raw or {})
                    except ValueError:
                        decoded[root] = {}
                if key in decoded[root]:
                    content[field] = decoded[root][key]
            elif target in row:
                content[field] = row[target]
        return content


class WebsitePublisher(Publisher):
    platform = Platform.WEBSITE

    def rate_limit_key(self, connector) -> str:
        return f"website:{connector.id}"

    def _mapping(self, connector) -> dict:
        return dict(connector.field_mapping or FieldMapper.default_mapping())

    def _id_column(self, connector) -> str:
        return self._mapping(connector).get("id", "id")

    def build_url(self, connector) -> URL:
        """Connection URL from decrypted credentials. CredentialError propagates."""
        if connector.driver not in DRIVERS:
            raise PlatformError(
                f"Unsupported website driver: {connector.driver}",
                platform=self.platform.value,
                retryable=False,
            )
        drivername, default_port = DRIVERS[connector.driver]
        creds = decrypt_json(connector.encrypted_credentials)
        return URL.create(
            drivername,
            username=creds.get("username"),
            password=creds.get("password"),
            host=creds.get("host"),
            port=int(creds.get("port") or default_port),
            database=creds.get("database"),
        )

    def create_engine(self, connector) -> AsyncEngine:
        return create_async_engine(self.build_url(connector), pool_pre_ping=True)

    def build_row(self, connector, content: dict, now: Optional[datetime] = None) -> dict:
        """Mapped column values plus slug, status and timestamps per connector policy."""
        mapping = self._mapping(connector)
        errors = FieldMapper.validate(mapping)
        if errors:
            raise PlatformError("; ".join(errors), platform=self.platform.value, retryable=False)

        content = dict(content)
        if (connector.slug_policy or "auto") == "auto" and not content.get("slug"):
            content["slug"] = make_slug(content.get("title", ""))

        row = FieldMapper.map(content, mapping)
        columns = {t for t in mapping.values() if t and "." not in t}

        status_column = next((c for c in STATUS_COLUMNS if c in columns), "status")
        if status_column not in row:
            row[status_column] = (connector.status_workflow or {}).get("published", 1)

        local_now = (now or datetime.now(timezone.utc)).astimezone(get_zone(connector.timezone))
        local_now = local_now.replace(tzinfo=None)
        for name in CREATED_COLUMNS + UPDATED_COLUMNS:
            if name in columns and name not in row:
                row[name] = local_now
        return row

    async def publish(
        self,
        variant,
        connector,
        context: Optional[dict] = None,
        dry_run: bool = False,
    ) -> PublishResult:
        content = {"title": variant.title, "body": variant.content, **(context or {})}
        row = self.build_row(connector, content)

        if dry_run:
            return PublishResult(
                post_id=None,
                platform=self.platform.value,
                raw={"success": True, "dry_run": True, "data": {k: str(v) for k, v in row.items()}},
            )

        target = table(connector.table_name, *[column(c) for c in row])
        id_column = self._id_column(connector)
        engine = self.create_engine(connector)
        try:
            async with engine.begin() as conn:
                if engine.dialect.name == "postgresql":
                    result = await conn.execute(insert(target).values(**row).returning(column(id_column)))
                    inserted_id = result.scalar()
                else:
                    result = await conn.execute(insert(target).values(**row))
                    inserted_id = result.lastrowid
        except Exception as e:
            raise PlatformError(f"Website insert failed: {e}", platform=self.platform.value) from e
        finally:
            await engine.dispose()

        logger.info(
            "Website row inserted: table=%s id=%s", connector.table_name, inserted_id,
            extra={"connector_id": str(connector.id), "platform": self.platform.value},
        )
        base = (context or {}).get("site_url")
        slug = row.get(self._mapping(connector).get("slug", "slug"))
        return PublishResult(
            post_id=str(inserted_id) if inserted_id is not None else None,
            url=f"{base.rstrip('/')}/{slug}" if base and slug else None,
            platform=self.platform.value,
            raw={"inserted_id": inserted_id},
        )

    async def update(self, connector, external_id: str, content: dict) -> bool:
        row = FieldMapper.map(content, self._mapping(connector))
        if not row:
            return False
        id_column = self._id_column(connector)
        target = table(connector.table_name, *[column(c) for c in {id_column, *row}])
        engine = self.create_engine(connector)
        try:
            async with engine.begin() as conn:
                result = await conn.execute(
                    update(target)
                    .where(target.c[id_column] == external_id)
                    .values(**row)
                )
                return (result.rowcount or 0) > 0
        finally:
            await engine.dispose()

    async def exists(self, connector, external_id: str) -> bool:
        id_column = self._id_column(connector)
        target = table(connector.table_name, column(id_column))
        engine = self.create_engine(connector)
        try:
            async with engine.connect() as conn:
                result = await conn.execute(
                    select(func.count()).select_from(target).where(target.c[id_column] == external_id)
                )
                return (result.scalar() or 0) > 0
        finally:
            await engine.dispose()

    async def delete(self, post_id: str, connector) -> bool:
        id_column = self._id_column(connector)
        target = table(connector.table_name, column(id_column))
        engine = self.create_engine(connector)
        try:
            async with engine.begin() as conn:
                result = await conn.execute(delete(target).where(target.c[id_column] == post_id))
                return (result.rowcount or 0) > 0
        except Exception as e:
            logger.error("Website delete failed for %s: %s", post_id, str(e))
            return False
        finally:
            await engine.dispose()

    async def get_metrics(self, post_id: str, connector) -> dict:
        # CMS tables carry no engagement data
        return {}

    async def refresh_token(self, connector) -> dict:
        return {}

    async def test_connection(self, connector) -> dict:
        """SELECT 1 against the target database; stamps last_tested_at on success."""
        engine = self.create_engine(connector)
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            connector.last_tested_at = datetime.now(timezone.utc)
            return {"success": True, "error": None}
        except Exception as e:
            logger.warning("Website connection test failed for %s: %s", connector.name, str(e))
            return {"success": False, "error": str(e)}
        finally:
            await engine.dispose()
