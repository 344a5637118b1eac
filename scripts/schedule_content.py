"""
Build a forward content schedule: one pipeline run per slot for the next N days.

Usage:
    python scripts/schedule_content.py --brand acme --days 7
    python scripts/schedule_content.py --days 3 --dry-run
"""
import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def schedule(brand_ref: str = None, days: int = 7, dry_run: bool = False) -> int:
    from src.database import async_session_factory, dispose_engine
    from src.services.publishing_engine import get_engine, load_brands
    from src.services.scheduler import validate_scheduling_settings

    engine = get_engine()
    total = 0
    try:
        async with async_session_factory() as db:
            brands = await load_brands(db, brand_ref)
            if not brands:
                logger.error("No brand found for %r", brand_ref or "active brands")
                return 0

            for brand in brands:
                for suggestion in validate_scheduling_settings(brand):
                    logger.info("  %s [%s] %s", brand.slug, suggestion["type"], suggestion["message"])

                result = await engine.schedule_content(db, brand, days=days, dry_run=dry_run)
                if not dry_run:
                    await db.commit()
                total += result["scheduled"]

                for slot in result["slots"]:
                    logger.info(
                        "  %s%s  %s  (generate at %s)",
                        "[DRY RUN] " if dry_run else "", slot["publish_at"], slot["title"][:70], slot["generate_at"],
                    )
    finally:
        await dispose_engine()

    logger.info("%s%d posts scheduled over %d days", "[DRY RUN] " if dry_run else "", total, days)
    return total


def main():
    parser = argparse.ArgumentParser(description="Schedule content for the coming days")
    parser.add_argument("--brand", help="Brand slug or id (default: all active brands)")
    parser.add_argument("--days", type=int, default=7, help="Days to schedule ahead")
    parser.add_argument("--dry-run", action="store_true", help="Preview the schedule without enqueuing")
    args = parser.parse_args()

    asyncio.run(schedule(brand_ref=args.brand, days=args.days, dry_run=args.dry_run))


if __name__ == "__main__":
    main()
