"""
Publishing orchestrator - one approved draft out to a website and N social accounts.

Each (variant, connector) leg runs independently; a failing leg is recorded in
the aggregate result and never stops the others. Every leg is backed by a
PublishJob found-or-created by idempotency key, and the external call runs
under a per-key Redis lock, so redelivery never double-posts.

Overall success means at least one leg published. A leg refused by the rate
limiter is deferred (re-enqueued later), counting as neither success nor failure.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.integrations.publisher_base import PlatformError
from src.integrations.registry import get_publisher
from src.models.brand import Brand
from src.models.connector import SocialConnector, SocialTarget, WebsiteConnector, WebsiteTarget, PublishTarget
from src.models.content_draft import ContentDraft, DraftStage, DraftStatus
from src.models.content_variant import ContentVariant, Platform, VariantStatus
from src.models.publish_job import PublishJob, PublishJobStatus, make_idempotency_key
from src.services.pipeline import TaskType, enqueue_pipeline_task
from src.utils.alerting import AlertType, send_alert
from src.utils.encryption import CredentialError
from src.utils.locks import LockTimeoutError, publish_lock
from src.utils.timezone import ensure_utc

logger = logging.getLogger(__name__)


class PublishFailedError(Exception):
    """Every attempted leg failed and at least one is worth retrying."""
    pass


def _leg(platform: str, success: bool = False, **fields) -> dict:
    return {
        "platform": platform,
        "success": success,
        "deferred": fields.pop("deferred", False),
        "retryable": fields.pop("retryable", False),
        "publish_job_id": fields.pop("publish_job_id", None),
        "post_id": fields.pop("post_id", None),
        "url": fields.pop("url", None),
        "error": fields.pop("error", None),
    }


def _dialect_insert(db: AsyncSession):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    else:
        return None
    return dialect_insert


def build_publish_context(draft: ContentDraft, brand: Optional[Brand], variant: Optional[ContentVariant]) -> dict:
    """Draft-level fields a publisher may need beyond the variant text."""
    seo = draft.seo_metadata or {}
    meta = (variant.meta if variant else None) or {}
    keywords = seo.get("keywords") or draft.keywords or []
    context = {
        "title": (variant.title if variant else None) or draft.title,
        "excerpt": meta.get("excerpt") or seo.get("meta_description"),
        "meta_description": seo.get("meta_description"),
        "meta_keywords": keywords,
        "slug": seo.get("slug"),
        "tags": draft.keywords or keywords,
        "featured_image_url": seo.get("featured_image_url") or meta.get("image_url"),
        "link": seo.get("canonical_url"),
    }
    if brand and brand.domain:
        context["site_url"] = brand.domain if brand.domain.startswith("http") else f"https://{brand.domain}"
    return {k: v for k, v in context.items() if v}


class PublishingOrchestrator:

    async def get_or_create_job(
        self,
        db: AsyncSession,
        draft: ContentDraft,
        variant: ContentVariant,
        target: PublishTarget,
        scheduled_at: Optional[datetime] = None,
    ) -> PublishJob:
        """Atomic find-or-create on the idempotency key. Never raises on a duplicate."""
        key = make_idempotency_key(variant.id, target.connector.id, target.platform)
        existing = await db.scalar(select(PublishJob).where(PublishJob.idempotency_key == key))
        if existing is not None:
            return existing

        now = datetime.now(timezone.utc)
        values = {
            "id": uuid.uuid4(),
            "content_draft_id": draft.id,
            "content_variant_id": variant.id,
            "brand_id": draft.brand_id,
            "platform": target.platform,
            "idempotency_key": key,
            "status": PublishJobStatus.PENDING,
            "attempt_count": 0,
            "scheduled_at": scheduled_at or now,
            "created_at": now,
            "updated_at": now,
            **PublishJob.connector_columns(target),
        }
        dialect_insert = _dialect_insert(db)
        if dialect_insert is not None:
            await db.execute(
                dialect_insert(PublishJob).values(**values)
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
            )
        else:
            await db.execute(insert(PublishJob).values(**values))
        return await db.scalar(
            select(PublishJob)
            .where(PublishJob.idempotency_key == key)
            .execution_options(populate_existing=True)
        )

    async def _active_website_connector(self, db: AsyncSession, brand_id) -> Optional[WebsiteConnector]:
        return await db.scalar(
            select(WebsiteConnector)
            .where(WebsiteConnector.brand_id == brand_id, WebsiteConnector.active.is_(True))
            .order_by(WebsiteConnector.created_at)
            .limit(1)
        )

    async def _active_social_connector(self, db: AsyncSession, brand_id, platform: str) -> Optional[SocialConnector]:
        return await db.scalar(
            select(SocialConnector)
            .where(
                SocialConnector.brand_id == brand_id,
                SocialConnector.platform == platform,
                SocialConnector.active.is_(True),
            )
            .order_by(SocialConnector.created_at)
            .limit(1)
        )

    async def _variant(self, db: AsyncSession, draft_id, platform: str) -> Optional[ContentVariant]:
        return await db.scalar(
            select(ContentVariant).where(
                ContentVariant.content_draft_id == draft_id,
                ContentVariant.platform == platform,
            )
        )

    async def _resolve_targets(self, db: AsyncSession, draft: ContentDraft, options: dict):
        """(platform, variant, target, error) per requested leg. Missing config is an error, not an exception."""
        legs = []
        if options["publish_to_website"]:
            connector = await self._active_website_connector(db, draft.brand_id)
            variant = await self._variant(db, draft.id, Platform.WEBSITE.value)
            if connector is None:
                legs.append(("website", None, None, "No active website connector configured"))
            elif variant is None:
                legs.append(("website", None, None, "No website variant found"))
            else:
                legs.append(("website", variant, WebsiteTarget(connector), None))

        if options["publish_to_social"]:
            for platform in options["platforms"]:
                if platform == Platform.WEBSITE.value:
                    continue
                connector = await self._active_social_connector(db, draft.brand_id, platform)
                variant = await self._variant(db, draft.id, platform)
                if connector is None:
                    legs.append((platform, None, None, f"No active {platform} connector configured"))
                elif variant is None:
                    legs.append((platform, None, None, f"No {platform} variant found"))
                else:
                    legs.append((platform, variant, SocialTarget(connector), None))
        return legs

    @staticmethod
    def _options(options: Optional[dict]) -> dict:
        options = dict(options or {})
        options.setdefault("publish_to_website", True)
        options.setdefault("publish_to_social", True)
        options["platforms"] = list(options.get("platforms") or get_settings().publish_platforms)
        return options

    async def plan_jobs(
        self,
        db: AsyncSession,
        draft: ContentDraft,
        scheduled_at: datetime,
        options: Optional[dict] = None,
    ) -> list[PublishJob]:
        """Create pending jobs for a future publish so the scheduler sees the slot as taken."""
        jobs = []
        for _platform, variant, target, error in await self._resolve_targets(db, draft, self._options(options)):
            if error:
                continue
            job = await self.get_or_create_job(db, draft, variant, target, scheduled_at=scheduled_at)
            if job.status == PublishJobStatus.PENDING:
                job.scheduled_at = scheduled_at
            variant.status = VariantStatus.SCHEDULED
            variant.scheduled_for = scheduled_at
            jobs.append(job)
        return jobs

    async def publish(self, db: AsyncSession, draft: ContentDraft, options: Optional[dict] = None) -> dict:
        """
        Publish an approved draft to every requested target.

        Returns:
            {"success": bool, "website": leg|None, "social": {platform: leg},
             "errors": [str], "deferred": [platform]}
        """
        results = {"success": False, "website": None, "social": {}, "errors": [], "deferred": []}
        if draft.status != DraftStatus.APPROVED:
            logger.warning(
                "Publish skipped: draft %s is %s, not approved", str(draft.id)[:8], draft.status,
                extra={"draft_id": str(draft.id)},
            )
            results["skipped"] = True
            results["errors"].append(f"Draft is {draft.status}, not approved")
            return results

        options = self._options(options)
        brand = await db.get(Brand, draft.brand_id)
        link = None
        retryable = False

        for platform, variant, target, error in await self._resolve_targets(db, draft, options):
            if error:
                leg = _leg(platform, error=error)
            else:
                context = build_publish_context(draft, brand, variant)
                if link and platform != Platform.WEBSITE.value:
                    context["link"] = link
                leg = await self.publish_leg(db, draft, variant, target, context)
                if platform == Platform.WEBSITE.value and leg["success"] and leg.get("url"):
                    link = leg["url"]

            if platform == Platform.WEBSITE.value:
                results["website"] = leg
            else:
                results["social"][platform] = leg

            if leg["success"]:
                results["success"] = True
            elif leg["deferred"]:
                results["deferred"].append(platform)
            else:
                retryable = retryable or leg["retryable"]
                results["errors"].append(f"{platform}: {leg['error']}")

        if results["success"]:
            self._mark_published(draft)
            if results["errors"]:
                logger.warning(
                    "Draft %s partially published: %s", str(draft.id)[:8], results["errors"],
                    extra={"draft_id": str(draft.id)},
                )
        elif not results["deferred"]:
            logger.error(
                "All publish legs failed for draft %s: %s", str(draft.id)[:8], results["errors"],
                extra={"draft_id": str(draft.id)},
            )
            await send_alert(
                AlertType.PUBLISH_ALL_LEGS_FAILED,
                f"Every publish leg failed for draft {draft.id}: {results['errors']}",
                cooldown_scope=str(draft.id),
            )
        results["retryable"] = retryable
        return results

    @staticmethod
    def _mark_published(draft: ContentDraft) -> None:
        if draft.can_transition_to(DraftStatus.PUBLISHED):
            draft.status = DraftStatus.PUBLISHED
            draft.stage = DraftStage.PUBLISHED
            draft.published_at = datetime.now(timezone.utc)
            logger.info("Draft %s published", str(draft.id)[:8], extra={"draft_id": str(draft.id)})

    async def _ensure_token(self, publisher, target: PublishTarget) -> Optional[str]:
        """Refresh a token near expiry. Returns an error only when the token is unusable."""
        if not isinstance(target, SocialTarget):
            return None
        connector = target.connector
        window = get_settings().token_refresh_window_days
        if not connector.is_token_expiring_soon(window_days=window):
            return None
        try:
            await publisher.refresh_token(connector)
            return None
        except Exception as e:
            if connector.is_token_expired():
                await send_alert(
                    AlertType.CONNECTOR_TOKEN_EXPIRED,
                    f"{connector.platform} token expired and refresh failed for connector {connector.id}: {e}",
                    cooldown_scope=str(connector.id),
                )
                return f"{connector.platform} token expired and refresh failed: {e}"
            logger.warning(
                "Token refresh failed for %s connector %s, using current token: %s",
                connector.platform, str(connector.id)[:8], str(e),
                extra={"connector_id": str(connector.id), "platform": connector.platform},
            )
            return None

    @staticmethod
    def _past_horizon(job: PublishJob) -> bool:
        created = ensure_utc(job.created_at) or datetime.now(timezone.utc)
        horizon = timedelta(hours=get_settings().publish_retry_horizon_hours)
        return datetime.now(timezone.utc) >= created + horizon

    async def _defer(self, db: AsyncSession, job: PublishJob) -> None:
        delay = get_settings().rate_limit_requeue_seconds
        job.status = PublishJobStatus.PENDING
        job.scheduled_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        await enqueue_pipeline_task(
            db, TaskType.PUBLISH_JOB, {"publish_job_id": str(job.id)},
            delay_seconds=delay,
            horizon_start=ensure_utc(job.created_at),
        )
        await send_alert(
            AlertType.RATE_LIMIT_DEFERRED,
            f"Publish to {job.platform} deferred {delay}s by rate limit (job {job.id})",
            severity="warning",
            cooldown_scope=job.platform,
        )

    async def publish_leg(
        self,
        db: AsyncSession,
        draft: ContentDraft,
        variant: ContentVariant,
        target: PublishTarget,
        context: dict,
    ) -> dict:
        """One (variant, connector) publish with idempotency, token and rate-limit checks."""
        platform = target.platform
        job = await self.get_or_create_job(db, draft, variant, target)
        log_extra = {"publish_job_id": str(job.id), "platform": platform, "draft_id": str(draft.id)}

        if job.status == PublishJobStatus.PUBLISHED:
            stored = job.result or {}
            return _leg(platform, True, publish_job_id=str(job.id), post_id=job.external_id, url=stored.get("url"))
        if job.status == PublishJobStatus.CANCELLED:
            return _leg(platform, publish_job_id=str(job.id), error="Publish job was cancelled")

        publisher = get_publisher(platform)
        token_error = await self._ensure_token(publisher, target)
        if token_error:
            self._fail(job, variant, token_error, retryable=False)
            await db.commit()
            return _leg(platform, publish_job_id=str(job.id), error=token_error)

        try:
            async with publish_lock(job.idempotency_key):
                await db.refresh(job)
                if job.status == PublishJobStatus.PUBLISHED:
                    stored = job.result or {}
                    return _leg(platform, True, publish_job_id=str(job.id), post_id=job.external_id, url=stored.get("url"))

                # Rate slot is only taken once this worker is the one about to post
                if not await publisher.can_post(target.connector):
                    if self._past_horizon(job):
                        error = "Rate limited past the retry horizon"
                        self._fail(job, variant, error, retryable=False)
                        await db.commit()
                        logger.critical(
                            "Publish job %s exhausted retries: %s", str(job.id)[:8], error, extra=log_extra,
                        )
                        await send_alert(
                            AlertType.PUBLISH_RETRIES_EXHAUSTED,
                            f"Publish to {platform} gave up after {get_settings().publish_retry_horizon_hours}h "
                            f"of rate limiting (job {job.id})",
                            cooldown_scope=str(job.id),
                        )
                        return _leg(platform, publish_job_id=str(job.id), error=error)
                    await self._defer(db, job)
                    await db.commit()
                    return _leg(platform, deferred=True, publish_job_id=str(job.id), error="Rate limit reached, deferred")

                job.status = PublishJobStatus.PROCESSING
                job.attempt_count = (job.attempt_count or 0) + 1
                await db.flush()

                try:
                    result = await publisher.publish(variant, target.connector, context)
                except PlatformError as e:
                    retryable = e.retryable and job.can_retry()
                    self._fail(job, variant, str(e), retryable=retryable)
                    await db.commit()
                    logger.warning("Publish leg failed: %s", str(e), extra=log_extra)
                    return _leg(platform, publish_job_id=str(job.id), error=str(e), retryable=retryable)
                except CredentialError as e:
                    self._fail(job, variant, str(e), retryable=False)
                    await db.commit()
                    await send_alert(
                        AlertType.CONNECTOR_CREDENTIALS_INVALID,
                        f"Credentials unreadable for {platform} connector {target.connector.id}: {e}",
                        cooldown_scope=str(target.connector.id),
                    )
                    return _leg(platform, publish_job_id=str(job.id), error=str(e))
                except Exception as e:
                    retryable = job.can_retry()
                    self._fail(job, variant, f"{type(e).__name__}: {e}", retryable=retryable)
                    await db.commit()
                    logger.warning("Publish leg error: %s", str(e), extra=log_extra)
                    return _leg(platform, publish_job_id=str(job.id), error=str(e), retryable=retryable)

                now = datetime.now(timezone.utc)
                job.status = PublishJobStatus.PUBLISHED
                job.published_at = now
                job.external_id = result.post_id
                job.error_message = None
                job.result = result.model_dump()
                variant.status = VariantStatus.PUBLISHED
                variant.published_at = now
                target.connector.last_posted_at = now
                if result.post_id and platform != Platform.WEBSITE.value:
                    await enqueue_pipeline_task(
                        db, TaskType.FETCH_METRICS, {"publish_job_id": str(job.id)},
                        delay_seconds=get_settings().metrics_fetch_delay_seconds,
                    )
                await db.commit()
        except LockTimeoutError as e:
            logger.warning("Publish already in flight: %s", str(e), extra=log_extra)
            return _leg(platform, publish_job_id=str(job.id), error="Publish already in progress", retryable=True)

        logger.info("Published %s post %s", platform, result.post_id, extra=log_extra)
        return _leg(platform, True, publish_job_id=str(job.id), post_id=result.post_id, url=result.url)

    @staticmethod
    def _fail(job: PublishJob, variant: ContentVariant, error: str, retryable: bool) -> None:
        job.status = PublishJobStatus.FAILED
        job.error_message = error[:2000]
        if not retryable:
            variant.status = VariantStatus.FAILED

    async def _load_job_leg(self, db: AsyncSession, job: PublishJob):
        draft = await db.get(ContentDraft, job.content_draft_id)
        variant = await db.get(ContentVariant, job.content_variant_id)
        if job.website_connector_id:
            connector = await db.get(WebsiteConnector, job.website_connector_id)
            target = WebsiteTarget(connector) if connector else None
        else:
            connector = await db.get(SocialConnector, job.social_connector_id)
            target = SocialTarget(connector) if connector else None
        return draft, variant, target

    @staticmethod
    def _abandon(job: PublishJob, error: str) -> dict:
        """The leg cannot run at all: fail the job so it stops holding a schedule slot."""
        job.status = PublishJobStatus.FAILED
        job.error_message = error
        return _leg(job.platform, publish_job_id=str(job.id), error=error)

    async def run_job(self, db: AsyncSession, job: PublishJob) -> dict:
        """Re-run the single leg behind an existing job (deferred or retried)."""
        draft, variant, target = await self._load_job_leg(db, job)
        if draft is None or variant is None:
            return self._abandon(job, "Draft or variant no longer exists")
        if target is None or not target.connector.active:
            return self._abandon(job, f"No active {job.platform} connector configured")
        if draft.status not in (DraftStatus.APPROVED, DraftStatus.PUBLISHED):
            logger.warning("Job %s skipped: draft is %s", str(job.id)[:8], draft.status)
            return self._abandon(job, f"Draft is {draft.status}")

        brand = await db.get(Brand, draft.brand_id)
        leg = await self.publish_leg(db, draft, variant, target, build_publish_context(draft, brand, variant))
        if leg["success"]:
            self._mark_published(draft)
        return leg

    async def retry_publish(self, db: AsyncSession, job: PublishJob) -> dict:
        if job.status != PublishJobStatus.FAILED:
            return {"success": False, "error": "Only failed jobs can be retried"}
        job.status = PublishJobStatus.PROCESSING
        job.error_message = None
        await db.flush()
        leg = await self.run_job(db, job)
        await db.commit()
        return leg

    async def cancel_publish(self, db: AsyncSession, job: PublishJob) -> dict:
        if job.status != PublishJobStatus.PENDING:
            return {"success": False, "error": "Only pending jobs can be cancelled"}
        job.status = PublishJobStatus.CANCELLED
        await db.flush()
        logger.info("Publish job %s cancelled", str(job.id)[:8], extra={"publish_job_id": str(job.id)})
        return {"success": True}

    async def get_publishing_stats(self, db: AsyncSession, brand: Brand, days: int = 30) -> dict:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        rows = (await db.execute(
            select(PublishJob.platform, PublishJob.status, func.count())
            .where(PublishJob.brand_id == brand.id, PublishJob.created_at >= cutoff)
            .group_by(PublishJob.platform, PublishJob.status)
        )).all()

        platforms: dict[str, dict] = {}
        for platform, status, count in rows:
            entry = platforms.setdefault(platform, {"published": 0, "failed": 0})
            if status == PublishJobStatus.PUBLISHED:
                entry["published"] += count
            elif status == PublishJobStatus.FAILED:
                entry["failed"] += count

        for entry in platforms.values():
            attempted = entry["published"] + entry["failed"]
            entry["success_rate"] = round(entry["published"] / attempted * 100, 2) if attempted else 0.0

        published = sum(e["published"] for e in platforms.values())
        failed = sum(e["failed"] for e in platforms.values())
        attempted = published + failed
        return {
            "total_published": published,
            "failed_jobs": failed,
            "platforms": platforms,
            "success_rate": round(published / attempted * 100, 2) if attempted else 0.0,
        }

    async def validate_configuration(self, db: AsyncSession, brand: Brand) -> dict:
        issues = []
        website = await self._active_website_connector(db, brand.id)
        if website is None:
            issues.append({"type": "error", "component": "website", "message": "No active website connector configured"})
        elif website.last_tested_at is None:
            issues.append({"type": "warning", "component": "website", "message": "Website connector has not been tested"})

        for platform in get_settings().publish_platforms:
            connector = await self._active_social_connector(db, brand.id, platform)
            if connector is None:
                issues.append({"type": "warning", "component": platform, "message": f"{platform.title()} not connected"})
            elif connector.is_token_expired():
                issues.append({
                    "type": "error",
                    "component": platform,
                    "message": f"{platform.title()} token expired - re-authentication required",
                })

        return {"valid": not any(i["type"] == "error" for i in issues), "issues": issues}


_orchestrator: Optional[PublishingOrchestrator] = None


def get_orchestrator() -> PublishingOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = PublishingOrchestrator()
    return _orchestrator
