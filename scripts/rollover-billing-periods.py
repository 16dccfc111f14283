#!/usr/bin/env python3
"""
Refinery Usage - Billing Period Rollover

Closes expired billing periods and opens the next one for every active
subscription. Reads never roll periods, so run this from cron (hourly is
plenty) to keep quotas resetting on schedule.

Usage:
    # Roll over everything expired as of now (default - for cron)
    python3 scripts/rollover-billing-periods.py

    # Pretend it's a later date (useful for staging)
    python3 scripts/rollover-billing-periods.py --as-of 2026-11-01T00:00:00+00:00

    # Verbose logging
    python3 scripts/rollover-billing-periods.py --verbose
"""

import argparse
import asyncio
import logging
import sys
from datetime import UTC, datetime

from app.db.session import close_engines, get_write_session
from app.observability import get_logger, setup_logging
from app.services.subscriptions import SubscriptionService

logger = get_logger("scripts.rollover_billing_periods")


def parse_as_of(value: str) -> datetime:
    """ISO-8601 timestamp; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid timestamp: {value}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


async def rollover(as_of: datetime) -> int:
    try:
        async with get_write_session() as session:
            return await SubscriptionService(session).roll_over_expired_periods(as_of)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Roll expired billing periods forward",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Roll over as of now (for cron jobs)
  python3 scripts/rollover-billing-periods.py

  # Roll over as of a specific instant
  python3 scripts/rollover-billing-periods.py --as-of 2026-11-01T00:00:00Z
        """,
    )
    parser.add_argument(
        "--as-of",
        type=parse_as_of,
        default=None,
        help="Treat this instant as now (default: current time)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args()

    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    as_of = args.as_of or datetime.now(UTC)
    logger.info("billing_rollover_starting", as_of=as_of.isoformat())

    try:
        rolled = asyncio.run(rollover(as_of))
    except Exception as e:
        logger.error("billing_rollover_failed", error=str(e), exc_info=True)
        sys.exit(1)

    logger.info("billing_rollover_complete", subscriptions_rolled=rolled)
    sys.exit(0)


if __name__ == "__main__":
    main()
