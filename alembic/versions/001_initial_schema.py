"""Initial schema - brands, topics, drafts, variants, connectors, publish jobs, metrics, task queue.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Brands
    op.create_table(
        "brands",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("domain", sa.String(255)),
        sa.Column("brand_voice", postgresql.JSONB, server_default="{}"),
        sa.Column("style_guide", postgresql.JSONB, server_default="{}"),
        sa.Column("settings", postgresql.JSONB, server_default="{}"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_brands_active", "brands", ["active"])

    # Categories
    op.create_table(
        "categories",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(100)),
        sa.Column("keywords", postgresql.JSONB, server_default="[]"),
        sa.Column("trend_sources", postgresql.JSONB, server_default="{}"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_categories_brand", "categories", ["brand_id", "active"])

    # Topics
    op.create_table(
        "topics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column(
            "category_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("keywords", postgresql.JSONB, server_default="[]"),
        sa.Column("source_urls", postgresql.JSONB, server_default="[]"),
        sa.Column("source_metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("confidence_score", sa.Numeric(5, 4), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="discovered"),
        sa.Column("published_at", sa.DateTime(timezone=True)),
        sa.Column("trending_at", sa.DateTime(timezone=True)),
        sa.Column("used_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_topics_brand_status", "topics", ["brand_id", "status"])
    op.create_index("ix_topics_brand_created", "topics", ["brand_id", "created_at"])
    op.create_index("ix_topics_trending", "topics", ["trending_at"])

    # Content drafts
    op.create_table(
        "content_drafts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("topic_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("topics.id", ondelete="SET NULL")),
        sa.Column(
            "category_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("title", sa.String(500)),
        sa.Column("strategy_brief", sa.Text),
        sa.Column("outline", postgresql.JSONB, server_default="[]"),
        sa.Column("body", sa.Text),
        sa.Column("seo_metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("keywords", postgresql.JSONB, server_default="[]"),
        sa.Column("confidence_score", sa.Float, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("stage", sa.String(20), nullable=False, server_default="outline"),
        sa.Column("stage_task_id", postgresql.UUID(as_uuid=True)),
        sa.Column("approved_by", sa.String(100)),
        sa.Column("approved_at", sa.DateTime(timezone=True)),
        sa.Column("published_at", sa.DateTime(timezone=True)),
        sa.Column("generated_at", sa.DateTime(timezone=True)),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_content_drafts_brand_status", "content_drafts", ["brand_id", "status"])
    op.create_index("ix_content_drafts_stage", "content_drafts", ["stage", "updated_at"])
    op.create_index("ix_content_drafts_created", "content_drafts", ["created_at"])

    # Approvals
    op.create_table(
        "approvals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "content_draft_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("content_drafts.id"), nullable=False,
        ),
        sa.Column("reviewer", sa.String(100), nullable=False),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("comment", sa.Text),
        sa.Column("changes", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_approvals_draft", "approvals", ["content_draft_id"])

    # Content variants
    op.create_table(
        "content_variants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "content_draft_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("content_drafts.id"), nullable=False,
        ),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("title", sa.String(500)),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("formatting", postgresql.JSONB, server_default="{}"),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True)),
        sa.Column("published_at", sa.DateTime(timezone=True)),
        *_timestamps(),
        sa.UniqueConstraint("content_draft_id", "platform", name="uq_content_variants_draft_platform"),
    )

    # Website connectors
    op.create_table(
        "website_connectors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("driver", sa.String(20), nullable=False, server_default="pgsql"),
        sa.Column("encrypted_credentials", sa.Text, nullable=False),
        sa.Column("table_name", sa.String(255), nullable=False),
        sa.Column("field_mapping", postgresql.JSONB, server_default="{}"),
        sa.Column("status_workflow", postgresql.JSONB),
        sa.Column("slug_policy", sa.String(20), server_default="auto"),
        sa.Column("timezone", sa.String(50), server_default="UTC"),
        sa.Column("rate_limits", postgresql.JSONB, server_default="{}"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_tested_at", sa.DateTime(timezone=True)),
        sa.Column("last_posted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index("ix_website_connectors_brand", "website_connectors", ["brand_id", "active"])

    # Social connectors
    op.create_table(
        "social_connectors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("account_name", sa.String(255)),
        sa.Column("account_id", sa.String(255)),
        sa.Column("encrypted_token", sa.Text),
        sa.Column("token_expires_at", sa.DateTime(timezone=True)),
        sa.Column("platform_settings", postgresql.JSONB, server_default="{}"),
        sa.Column("rate_limits", postgresql.JSONB, server_default="{}"),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_posted_at", sa.DateTime(timezone=True)),
        *_timestamps(),
    )
    op.create_index(
        "ix_social_connectors_brand_platform", "social_connectors", ["brand_id", "platform", "active"],
    )

    # Publish jobs
    op.create_table(
        "publish_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "content_draft_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("content_drafts.id"), nullable=False,
        ),
        sa.Column(
            "content_variant_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("content_variants.id"), nullable=False,
        ),
        sa.Column("brand_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("brands.id"), nullable=False),
        sa.Column("website_connector_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("website_connectors.id")),
        sa.Column("social_connector_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("social_connectors.id")),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("idempotency_key", sa.String(64), nullable=False, unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True)),
        sa.Column("published_at", sa.DateTime(timezone=True)),
        sa.Column("external_id", sa.String(255)),
        sa.Column("result", postgresql.JSONB),
        sa.Column("error_message", sa.Text),
        *_timestamps(),
        sa.CheckConstraint(
            "(website_connector_id IS NULL) <> (social_connector_id IS NULL)",
            name="ck_publish_jobs_single_connector",
        ),
    )
    op.create_index("ix_publish_jobs_brand_schedule", "publish_jobs", ["brand_id", "status", "scheduled_at"])
    op.create_index("ix_publish_jobs_draft", "publish_jobs", ["content_draft_id"])

    # Metrics
    op.create_table(
        "metrics",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("publish_job_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("publish_jobs.id"), nullable=False),
        sa.Column("metric_type", sa.String(30), nullable=False),
        sa.Column("value", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
    )
    op.create_index("ix_metrics_job_type", "metrics", ["publish_job_id", "metric_type"])

    # Task queue
    op.create_table(
        "task_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, server_default="5"),
        sa.Column("retry_count", sa.Integer, server_default="0"),
        sa.Column("max_retries", sa.Integer, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("retry_until", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(32)),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("result_data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_task_queue_processing", "task_queue", ["status", "scheduled_at", "priority"])
    op.create_index("ix_task_queue_type", "task_queue", ["task_type", "status"])


def downgrade() -> None:
    op.drop_table("task_queue")
    op.drop_table("metrics")
    op.drop_table("publish_jobs")
    op.drop_table("social_connectors")
    op.drop_table("website_connectors")
    op.drop_table("content_variants")
    op.drop_table("approvals")
    op.drop_table("content_drafts")
    op.drop_table("topics")
    op.drop_table("categories")
    op.drop_table("brands")
