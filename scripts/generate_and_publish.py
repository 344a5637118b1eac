"""
Start content generation for one brand or every active brand.

Picks the best fresh topics and enqueues their pipeline runs. Approved
drafts are published when they come out of the pipeline: --immediate
publishes right away, --schedule holds them for the next free slot.

Usage:
    python scripts/generate_and_publish.py --brand acme --limit 3
    python scripts/generate_and_publish.py --auto-approve --schedule
    python scripts/generate_and_publish.py --dry-run
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def generate(
    brand_ref: str = None,
    limit: int = None,
    category_id: str = None,
    auto_approve: bool = None,
    publish_mode: str = None,
    dry_run: bool = False,
) -> dict:
    from src.database import async_session_factory, dispose_engine
    from src.services.publishing_engine import get_engine, load_brands

    totals = {"topics_processed": 0, "content_generated": 0, "scheduled": 0, "publish_queued": 0, "errors": []}
    engine = get_engine()
    try:
        async with async_session_factory() as db:
            brands = await load_brands(db, brand_ref)
            if not brands:
                logger.error("No brand found for %r", brand_ref or "active brands")
                totals["errors"].append("no brand")
                return totals

            for brand in brands:
                stats = await engine.generate_for_brand(
                    db,
                    brand,
                    limit=limit,
                    category_id=category_id,
                    auto_approve=auto_approve,
                    dry_run=dry_run,
                    publish_mode=publish_mode,
                )
                if not dry_run:
                    await db.commit()
                for key in ("topics_processed", "content_generated", "scheduled", "publish_queued"):
                    totals[key] += stats[key]
                totals["errors"].extend(f"{brand.slug}: {e}" for e in stats["errors"])
    finally:
        await dispose_engine()

    logger.info(
        "%sProcessed %d topics, generation started for %d (scheduled %d, immediate %d)",
        "[DRY RUN] " if dry_run else "",
        totals["topics_processed"], totals["content_generated"],
        totals["scheduled"], totals["publish_queued"],
    )
    for error in totals["errors"]:
        logger.warning("  %s", error)
    return totals


def main():
    parser = argparse.ArgumentParser(description="Generate (and publish) content")
    parser.add_argument("--brand", help="Brand slug or id (default: all active brands)")
    parser.add_argument("--limit", type=int, default=None, help="Topics per brand (default: posts_per_day)")
    parser.add_argument("--category", help="Only topics from this category id")
    parser.add_argument(
        "--auto-approve", action="store_true", default=None,
        help="Approve drafts that clear the brand's confidence threshold",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--schedule", action="store_true", help="Publish approved drafts in the next free slot")
    mode.add_argument("--immediate", action="store_true", help="Publish approved drafts right away")
    parser.add_argument("--dry-run", action="store_true", help="Show the topics that would be used")
    args = parser.parse_args()

    publish_mode = "schedule" if args.schedule else "immediate" if args.immediate else None
    totals = asyncio.run(generate(
        brand_ref=args.brand,
        limit=args.limit,
        category_id=args.category,
        auto_approve=args.auto_approve,
        publish_mode=publish_mode,
        dry_run=args.dry_run,
    ))
    sys.exit(1 if totals["errors"] and not totals["content_generated"] else 0)


if __name__ == "__main__":
    main()
