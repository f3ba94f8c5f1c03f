"""Seed data script for development and testing.

Creates:
- SEED_USERS test users (default: 50)
- SEED_MEDIA media items (default: 20)
- 3 standard parties and the Global Party
- SEED_BIDS random bids placed through BidService (default: 500)

Environment Variables:
    SEED_USERS: Number of users to create (default: 50)
    SEED_MEDIA: Number of media items to create (default: 20)
    SEED_BIDS: Number of bids to place (default: 500)
    RESET_DATA: Set to "true" to clear bids and cached aggregates first (default: false)

Usage:
    # First time setup
    python -m scripts.seed_data

    # Wipe the ledger and aggregates, then place a fresh set of bids
    RESET_DATA=true python -m scripts.seed_data
"""

import asyncio
import os
import random

from sqlalchemy import select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.database import async_session_maker, engine
from partybids.core.exceptions import StaleTopComparisonError
from partybids.core.redis import get_redis
from partybids.models import Media, Party, User
from partybids.models.party import PARTY_TYPE_GLOBAL, PARTY_TYPE_STANDARD
from partybids.services.bid_service import BidService
from partybids.services.redis_service import RedisService

# Configuration from environment variables
SEED_USERS = int(os.getenv("SEED_USERS", "50"))
SEED_MEDIA = int(os.getenv("SEED_MEDIA", "20"))
SEED_BIDS = int(os.getenv("SEED_BIDS", "500"))
RESET_DATA = os.getenv("RESET_DATA", "false").lower() == "true"

PARTY_NAMES = ["Friday Night", "Road Trip", "Study Session"]
GLOBAL_PARTY_NAME = "Global Party"


async def reset_bid_data(session: AsyncSession) -> None:
    """Clear bids and every cached aggregate."""
    print("Resetting bid data...")
    await session.execute(text("DELETE FROM bucket_user_totals"))
    await session.execute(text("DELETE FROM party_media"))
    await session.execute(text("DELETE FROM bids"))
    await session.execute(
        update(Media).values(global_aggregate=0, global_scope_aggregate=0, revision=0)
    )
    await session.execute(
        update(Party).values(
            top_bid=0,
            top_bid_user_id=None,
            top_bid_bid_id=None,
            top_bid_at=None,
            top_user_aggregate=0,
            top_user_aggregate_user_id=None,
            top_user_aggregate_at=None,
            top_user_aggregate_media_id=None,
            top_stale=False,
            revision=0,
        )
    )
    await session.commit()
    print("  Cleared bids, buckets, user totals and cached tops")


async def seed_users(session: AsyncSession) -> list[User]:
    """Create test users: listener001 ... listenerNNN."""
    print("Seeding users...")

    result = await session.execute(select(User).limit(1))
    if result.scalar_one_or_none():
        print("  Users already exist, skipping...")
        result = await session.execute(select(User))
        return list(result.scalars().all())

    users = [User(username=f"listener{i:03d}", status="active") for i in range(1, SEED_USERS + 1)]
    session.add_all(users)
    await session.commit()

    print(f"  Created {len(users)} users")
    return users


async def seed_media(session: AsyncSession) -> list[Media]:
    """Create media items with a spread of durations."""
    print("Seeding media...")

    result = await session.execute(select(Media).limit(1))
    if result.scalar_one_or_none():
        print("  Media already exist, skipping...")
        result = await session.execute(select(Media))
        return list(result.scalars().all())

    media = [
        Media(
            title=f"Track {i:02d}",
            artist=f"Artist {(i % 7) + 1}",
            cover_art=f"https://example.com/covers/{i:02d}.jpg",
            duration_seconds=random.randint(150, 360),
        )
        for i in range(1, SEED_MEDIA + 1)
    ]
    session.add_all(media)
    await session.commit()

    print(f"  Created {len(media)} media items")
    return media


async def seed_parties(session: AsyncSession) -> list[Party]:
    """Create the standard parties and, if missing, the Global Party."""
    print("Seeding parties...")

    result = await session.execute(select(Party))
    parties = list(result.scalars().all())
    if parties:
        print("  Parties already exist, skipping...")
        return parties

    parties = [Party(name=name, type=PARTY_TYPE_STANDARD) for name in PARTY_NAMES]
    parties.append(Party(name=GLOBAL_PARTY_NAME, type=PARTY_TYPE_GLOBAL))
    session.add_all(parties)
    await session.commit()

    for party in parties:
        print(f"  Created party: {party.name} ({party.type}) {party.party_id}")
    return parties


async def seed_bids(
    session: AsyncSession,
    users: list[User],
    parties: list[Party],
    media: list[Media],
) -> tuple[int, int]:
    """Place random bids through the regular write path.

    Returns:
        Tuple of (bids recorded, bids whose top fields are still settling)
    """
    print(f"Placing {SEED_BIDS} bids...")
    service = BidService(session)
    # A few popular tracks get most of the money
    weights = [1.0 / (rank + 1) for rank in range(len(media))]

    settling = 0
    for i in range(SEED_BIDS):
        user = random.choice(users)
        party = random.choice(parties)
        item = random.choices(media, weights=weights)[0]
        amount = random.choice([100, 200, 250, 500, 1000, 2500])
        try:
            await service.place_bid(user.user_id, party.party_id, item.media_id, amount)
        except StaleTopComparisonError:
            settling += 1

        if (i + 1) % 100 == 0:
            print(f"  {i + 1}/{SEED_BIDS} bids placed")

    print(f"  Placed {SEED_BIDS} bids ({settling} settling)")
    return SEED_BIDS, settling


async def main():
    """Main seed function."""
    print("=" * 60)
    print("PartyBids - Seed Data Script")
    print("=" * 60)
    print(f"  RESET_DATA: {RESET_DATA}")
    print(f"  SEED_USERS: {SEED_USERS}")
    print(f"  SEED_MEDIA: {SEED_MEDIA}")
    print(f"  SEED_BIDS: {SEED_BIDS}")
    print("=" * 60)

    redis = await get_redis()
    redis_service = RedisService(redis)

    async with async_session_maker() as session:
        if RESET_DATA:
            await reset_bid_data(session)

        users = await seed_users(session)
        media = await seed_media(session)
        parties = await seed_parties(session)
        placed, settling = await seed_bids(session, users, parties, media)

    await redis_service.invalidate_global_view()

    print("=" * 60)
    print("Seed data complete!")
    print(f"  Users: {len(users)}")
    print(f"  Media: {len(media)}")
    print(f"  Parties: {len(parties)}")
    print(f"  Bids: {placed} ({settling} settling)")
    print("=" * 60)
    print("")
    print("Check the caches against the ledger with:")
    print("  python -m scripts.run_backfill --dry-run")
    print("=" * 60)

    # Cleanup
    await redis.aclose()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
