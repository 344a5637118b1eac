"""
Discover trending topics for one brand or every active brand.

Runs every configured trend source for each active category, scores and
deduplicates the candidates and stores the best as discovered topics.
Old discovered topics are expired at the end of the run.

Usage:
    python scripts/discover_topics.py
    python scripts/discover_topics.py --brand acme --limit 20
"""
import argparse
import asyncio
import logging
import sys

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def discover(brand_ref: str = None, limit: int = 10) -> int:
    """Returns the number of brands that reported errors."""
    from src.database import async_session_factory, dispose_engine
    from src.services.publishing_engine import load_brands
    from src.services.topic_discovery import discover_for_brand, expire_old_topics

    failures = 0
    try:
        async with async_session_factory() as db:
            brands = await load_brands(db, brand_ref)
            if not brands:
                logger.error("No brand found for %r", brand_ref or "active brands")
                return 1

            for brand in brands:
                stats = await discover_for_brand(db, brand, limit=limit)
                await db.commit()
                logger.info(
                    "%s: %d topics discovered across %d categories",
                    brand.slug, stats["discovered"], stats["categories"],
                )
                for error in stats["errors"]:
                    logger.warning("  %s: %s", brand.slug, error)
                if stats["errors"]:
                    failures += 1

            expired = await expire_old_topics(db)
            await db.commit()
            logger.info("Expired %d stale topics", expired)
    finally:
        await dispose_engine()
    return failures


def main():
    parser = argparse.ArgumentParser(description="Discover trending topics")
    parser.add_argument("--brand", help="Brand slug or id (default: all active brands)")
    parser.add_argument("--limit", type=int, default=10, help="Topics to keep per category")
    args = parser.parse_args()

    failures = asyncio.run(discover(brand_ref=args.brand, limit=args.limit))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
