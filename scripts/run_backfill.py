"""Recompute cached aggregates from the bid ledger.

Compares every bucket, media total, party top and per-bid running total
in scope against a recompute from the ledger, and on a live run rewrites
the rows that drifted.

Usage:
    # Report drift everywhere
    python -m scripts.run_backfill --dry-run

    # Repair one party, or one media item
    python -m scripts.run_backfill --party <party_id>
    python -m scripts.run_backfill --media <media_id>
"""

import argparse
import asyncio
import sys
from uuid import UUID

from partybids.core.config import settings
from partybids.core.database import async_session_maker, engine
from partybids.core.exceptions import MaintenanceLockError
from partybids.core.logging import setup_logging
from partybids.core.redis import close_redis, get_redis
from partybids.services.backfill_service import BackfillEngine
from partybids.services.redis_service import RedisService

# Diffs printed in full before summarising the rest
MAX_PRINTED_DIFFS = 50


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute aggregates from the bid ledger")
    parser.add_argument("--dry-run", action="store_true", help="report drift without writing")
    scope = parser.add_mutually_exclusive_group()
    scope.add_argument("--party", type=UUID, help="limit to one party")
    scope.add_argument("--media", type=UUID, help="limit to one media item")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=settings.BACKFILL_BATCH_SIZE,
        help=f"ledger rows per batch (default: {settings.BACKFILL_BATCH_SIZE})",
    )
    return parser.parse_args()


async def main(args: argparse.Namespace) -> int:
    print("=" * 60)
    print(f"PartyBids - Aggregate Backfill ({'dry run' if args.dry_run else 'live'})")
    if args.party:
        print(f"  Party: {args.party}")
    if args.media:
        print(f"  Media: {args.media}")
    print("=" * 60)

    redis = await get_redis()
    try:
        async with async_session_maker() as session:
            backfill = BackfillEngine(session, RedisService(redis), args.batch_size)
            try:
                report = await backfill.run(
                    dry_run=args.dry_run, party_id=args.party, media_id=args.media
                )
            except MaintenanceLockError as e:
                print(f"  {e}")
                return 1
    finally:
        await close_redis()
        await engine.dispose()

    for diff in report.diffs[:MAX_PRINTED_DIFFS]:
        print(f"  {diff.entity} {diff.key} {diff.field}: {diff.cached} -> {diff.recomputed}")
    if len(report.diffs) > MAX_PRINTED_DIFFS:
        print(f"  ... and {len(report.diffs) - MAX_PRINTED_DIFFS} more")

    print("=" * 60)
    print(f"  Diffs: {len(report.diffs)}")
    print(f"  Buckets rewritten: {report.buckets_rewritten}")
    print(f"  Media rewritten: {report.media_rewritten}")
    print(f"  Parties rewritten: {report.parties_rewritten}")
    print(f"  Bids rewritten: {report.bids_rewritten}")
    print(f"  Conflicts: {report.conflicts}")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    sys.exit(asyncio.run(main(parse_args())))
