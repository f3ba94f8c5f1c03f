"""Global view projector: the Global Party's content, computed from the ledger."""

import logging
from collections import defaultdict
from typing import Iterable
from uuid import UUID

from sqlalchemy import desc, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.config import settings
from partybids.core.exceptions import BidValidationError
from partybids.models.bid import Bid, BidStatus
from partybids.models.media import Media
from partybids.services.aggregation import (
    MediaProjection,
    PartyTops,
    best,
    compute_media_projection,
)
from partybids.services.redis_service import RedisService

logger = logging.getLogger(__name__)

SORT_FIELDS = ("global_aggregate", "top_bid", "top_user_aggregate", "bid_count")
DEFAULT_SORT = "global_aggregate"


def counted():
    return Bid.status.in_(BidStatus.COUNTED)


def user_totals_by_media():
    """(media_id, total) columns of each user's counted total per media."""
    per_user = (
        select(Bid.media_id, func.sum(Bid.amount).label("total"))
        .where(counted())
        .group_by(Bid.media_id, Bid.user_id)
        .subquery()
    )
    return per_user.c.media_id, per_user.c.total


def sort_value(projection: MediaProjection, sort_by: str) -> int:
    if sort_by == "top_bid":
        return projection.top_bid.value
    if sort_by == "top_user_aggregate":
        return projection.top_user_aggregate.value
    if sort_by == "bid_count":
        return projection.bid_count
    return projection.global_aggregate


def rank_projections(
    projections: Iterable[MediaProjection], sort_by: str, limit: int
) -> list[MediaProjection]:
    """Order by ``sort_by`` descending, then media id, dropping empty media."""
    ranked = sorted(
        (p for p in projections if p.bid_count > 0),
        key=lambda p: (-sort_value(p, sort_by), str(p.media_id)),
    )
    return ranked[:limit]


def project_ledger(bids: Iterable) -> list[MediaProjection]:
    """One projection per media over the given counted bids."""
    by_media: dict[UUID, list] = defaultdict(list)
    for bid in bids:
        by_media[bid.media_id].append(bid)
    return [compute_media_projection(media_id, rows) for media_id, rows in by_media.items()]


def global_party_tops(projections: Iterable[MediaProjection]) -> PartyTops:
    """Party-level tops of the Global Party: max over its media entries."""
    projections = list(projections)
    return PartyTops(
        top_bid=best(p.top_bid for p in projections),
        top_user_aggregate=best(p.top_user_aggregate for p in projections),
    )


def projection_to_entry(projection: MediaProjection) -> dict:
    """JSON-ready entry (ids as strings so it can be cached as is)."""
    top_bid = projection.top_bid
    top_user = projection.top_user_aggregate
    return {
        "media_id": str(projection.media_id),
        "title": projection.title,
        "artist": projection.artist,
        "global_aggregate": projection.global_aggregate,
        "top_bid": top_bid.value,
        "top_bid_user_id": str(top_bid.user_id) if top_bid.user_id else None,
        "top_user_aggregate": top_user.value,
        "top_user_aggregate_user_id": str(top_user.user_id) if top_user.user_id else None,
        "bid_count": projection.bid_count,
    }


class GlobalViewProjector:
    """Computes the Global Party's view on read. Nothing here is stored."""

    def __init__(self, db: AsyncSession, redis_service: RedisService | None = None):
        self.db = db
        self.redis_service = redis_service

    def _validate(self, limit: int | None, sort_by: str | None) -> tuple[int, str]:
        sort_by = sort_by or DEFAULT_SORT
        if sort_by not in SORT_FIELDS:
            raise BidValidationError(
                f"Unknown sort field: {sort_by}",
                {"sort_by": sort_by, "allowed": list(SORT_FIELDS)},
            )
        limit = settings.GLOBAL_VIEW_DEFAULT_LIMIT if limit is None else limit
        if limit < 1 or limit > settings.GLOBAL_VIEW_MAX_LIMIT:
            raise BidValidationError(
                f"limit must be between 1 and {settings.GLOBAL_VIEW_MAX_LIMIT}",
                {"limit": limit},
            )
        return limit, sort_by

    async def _counted_bids(self, *criteria) -> list:
        stmt = select(
            Bid.bid_id,
            Bid.user_id,
            Bid.party_id,
            Bid.media_id,
            Bid.amount,
            Bid.status,
            Bid.bid_scope,
            Bid.created_at,
            Bid.media_title,
            Bid.media_artist,
        ).where(counted(), *criteria)
        result = await self.db.execute(stmt)
        return list(result.all())

    async def _candidate_media(self, sort_by: str, limit: int) -> list[UUID]:
        """Ids of the ``limit`` media that rank highest, ranked in SQL.

        Each sort field has an exact per-media aggregate over counted bids,
        so only the winners' bids need to be loaded and projected.
        """
        if sort_by == "top_user_aggregate":
            media_id, value = user_totals_by_media()
            stmt = select(media_id, func.max(value).label("value")).group_by(media_id)
        else:
            media_id = Bid.media_id
            if sort_by == "top_bid":
                value = func.max(Bid.amount)
            elif sort_by == "bid_count":
                value = func.count(Bid.bid_id)
            else:
                value = func.sum(Bid.amount)
            stmt = select(media_id, value.label("value")).where(counted()).group_by(media_id)

        stmt = stmt.order_by(desc("value"), media_id).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _top_holder_media(self) -> set[UUID]:
        """Media holding the highest counted bid or the highest user total."""
        top_amount = select(func.max(Bid.amount)).where(counted()).scalar_subquery()
        by_bid = await self.db.execute(
            select(Bid.media_id).where(counted(), Bid.amount == top_amount).distinct()
        )

        media_id, total = user_totals_by_media()
        top_total = select(func.max(total)).scalar_subquery()
        by_user = await self.db.execute(select(media_id).where(total == top_total).distinct())

        return set(by_bid.scalars().all()) | set(by_user.scalars().all())

    async def _apply_media_details(self, projections: list[MediaProjection]) -> None:
        """Prefer the live media row's title/artist over the bid snapshot."""
        if not projections:
            return
        result = await self.db.execute(
            select(Media.media_id, Media.title, Media.artist).where(
                Media.media_id.in_([p.media_id for p in projections])
            )
        )
        details = {row.media_id: row for row in result.all()}
        for projection in projections:
            row = details.get(projection.media_id)
            if row is not None:
                projection.title = row.title
                projection.artist = row.artist

    async def get_global_media_view(
        self, limit: int | None = None, sort_by: str | None = None
    ) -> list[dict]:
        """Ranked global media entries.

        Raises:
            BidValidationError: unknown ``sort_by`` or ``limit`` out of range
        """
        limit, sort_by = self._validate(limit, sort_by)

        if self.redis_service is not None:
            cached = await self.redis_service.get_cached_global_view(sort_by, limit)
            if cached is not None:
                return cached

        media_ids = await self._candidate_media(sort_by, limit)
        bids = await self._counted_bids(Bid.media_id.in_(media_ids)) if media_ids else []
        ranked = rank_projections(project_ledger(bids), sort_by, limit)
        await self._apply_media_details(ranked)
        entries = [projection_to_entry(p) for p in ranked]

        if self.redis_service is not None:
            await self.redis_service.cache_global_view(
                sort_by, limit, entries, settings.GLOBAL_VIEW_CACHE_TTL
            )
        return entries

    async def get_media_projection(self, media_id: UUID) -> MediaProjection:
        """Global tops of one media (the Global Party's 'bucket' for it)."""
        projection = compute_media_projection(
            media_id, await self._counted_bids(Bid.media_id == media_id)
        )
        await self._apply_media_details([projection])
        return projection

    async def get_global_party_aggregates(self) -> tuple[PartyTops, int]:
        """Party-level tops of the Global Party and the number of media it holds.

        Only the media holding a top are projected.
        """
        media_count = (
            await self.db.execute(select(func.count(distinct(Bid.media_id))).where(counted()))
        ).scalar_one()
        if not media_count:
            return PartyTops(), 0

        holders = await self._top_holder_media()
        projections = project_ledger(await self._counted_bids(Bid.media_id.in_(holders)))
        return global_party_tops(projections), media_count
