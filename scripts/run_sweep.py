"""Run the referential integrity sweeper once.

Repairs bids whose user, party or media no longer exist: bids that lost
their party move to the Global Party, bids that lost both user and media
are deleted, and the rest get sentinel snapshot values.

Usage:
    # Report what would change
    python -m scripts.run_sweep --dry-run

    # Apply the repairs
    python -m scripts.run_sweep
"""

import argparse
import asyncio
import sys

from partybids.core.config import settings
from partybids.core.database import async_session_maker, engine
from partybids.core.exceptions import MaintenanceLockError
from partybids.core.logging import setup_logging
from partybids.core.redis import close_redis, get_redis
from partybids.services.redis_service import RedisService
from partybids.services.sweep_service import ReferentialIntegritySweeper


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Repair bids with dangling references")
    parser.add_argument("--dry-run", action="store_true", help="report without writing")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.SWEEP_BATCH_SIZE,
        help=f"bids per batch (default: {settings.SWEEP_BATCH_SIZE})",
    )
    return parser.parse_args()


async def main(args: argparse.Namespace) -> int:
    print("=" * 60)
    print(f"PartyBids - Referential Integrity Sweep ({'dry run' if args.dry_run else 'live'})")
    print("=" * 60)

    redis = await get_redis()
    try:
        async with async_session_maker() as session:
            sweeper = ReferentialIntegritySweeper(session, RedisService(redis), args.batch_size)
            try:
                report = await sweeper.run(dry_run=args.dry_run)
            except MaintenanceLockError as e:
                print(f"  {e}")
                return 1
    finally:
        await close_redis()
        await engine.dispose()

    print(f"  Scanned: {report.scanned}")
    print(f"  Reassigned: {report.reassigned}")
    print(f"  Deleted: {report.deleted}")
    print(f"  Stubbed: {report.stubbed}")
    print(f"  Skipped: {report.skipped}")
    for action, bid_ids in report.samples.items():
        print(f"  Sample {action}: {', '.join(str(b) for b in bid_ids)}")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    sys.exit(asyncio.run(main(parse_args())))
