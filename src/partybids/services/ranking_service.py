"""Ranking service: read path for bucket, party and per-user aggregates."""

import logging
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.exceptions import (
    NotFoundError,
    PartyNotFoundError,
    StaleTopComparisonError,
)
from partybids.models.bid import Bid
from partybids.models.bucket import PartyMedia
from partybids.models.party import Party
from partybids.models.user import User
from partybids.services.aggregation import EMPTY_TOP, TopEntry, best, bid_entry
from partybids.services.aggregation_service import (
    AggregationMaintainer,
    top_bid_from_row,
    top_user_from_row,
)
from partybids.services.global_view_service import GlobalViewProjector, counted
from partybids.services.redis_service import RedisService

logger = logging.getLogger(__name__)


def tops_dict(top_bid: TopEntry, top_user: TopEntry) -> dict:
    return {
        "top_bid": top_bid.value,
        "top_bid_user_id": top_bid.user_id,
        "top_bid_bid_id": top_bid.ref_id,
        "top_user_aggregate": top_user.value,
        "top_user_aggregate_user_id": top_user.user_id,
    }


def user_top_dict(bid: Bid | None) -> dict:
    if bid is None:
        return {"top_bid": 0, "top_bid_bid_id": None, "top_bid_media_id": None, "top_bid_at": None}
    return {
        "top_bid": bid.amount,
        "top_bid_bid_id": bid.bid_id,
        "top_bid_media_id": bid.media_id,
        "top_bid_at": bid.created_at,
    }


class RankingService:
    """Service class for aggregate queries.

    Rows flagged stale are recomputed (bounded to that bucket or party)
    before they are returned.
    """

    def __init__(self, db: AsyncSession, redis_service: RedisService):
        self.db = db
        self.redis_service = redis_service
        self.maintainer = AggregationMaintainer(db)
        self.projector = GlobalViewProjector(db, redis_service)

    async def _get_party(self, party_id: UUID) -> Party:
        party = await self.db.get(Party, party_id)
        if party is None:
            raise PartyNotFoundError(party_id)
        return party

    async def get_bucket_aggregates(self, party_id: UUID, media_id: UUID) -> dict:
        """Aggregates of one (party, media) bucket.

        A pair with no bucket yet returns zeros. For the Global Party the
        entry is projected from the ledger.

        Raises:
            PartyNotFoundError: unknown party
        """
        party = await self._get_party(party_id)

        if party.is_global:
            projection = await self.projector.get_media_projection(media_id)
            return {
                "party_id": party_id,
                "media_id": media_id,
                "aggregate": projection.global_aggregate,
                **tops_dict(projection.top_bid, projection.top_user_aggregate),
                "status": None,
                "stale": False,
            }

        result = await self.db.execute(
            select(PartyMedia).where(
                PartyMedia.party_id == party_id,
                PartyMedia.media_id == media_id,
            )
        )
        bucket = result.scalar_one_or_none()
        if bucket is None:
            return {
                "party_id": party_id,
                "media_id": media_id,
                "aggregate": 0,
                **tops_dict(EMPTY_TOP, EMPTY_TOP),
                "status": None,
                "stale": False,
            }

        # Rollback below expires the instance; read what is returned first
        aggregate, status = bucket.aggregate, bucket.status
        top_bid = top_bid_from_row(bucket)
        top_user = top_user_from_row(bucket)
        stale = bucket.top_stale
        if stale:
            try:
                snapshot = await self.maintainer.refresh_bucket(party_id, media_id)
                await self.db.commit()
            except StaleTopComparisonError:
                await self.db.rollback()
                logger.warning(f"Bucket ({party_id}, {media_id}) still contended; serving stale tops")
            else:
                if snapshot is not None:
                    top_bid, top_user, stale = snapshot.top_bid, snapshot.top_user_aggregate, False

        return {
            "party_id": party_id,
            "media_id": media_id,
            "aggregate": aggregate,
            **tops_dict(top_bid, top_user),
            "status": status,
            "stale": stale,
        }

    async def get_party_aggregates(self, party_id: UUID) -> dict:
        """Party-level tops: the max over the party's buckets.

        Raises:
            PartyNotFoundError: unknown party
        """
        party = await self._get_party(party_id)
        summary = {
            "party_id": party.party_id,
            "name": party.name,
            "type": party.type,
        }

        if party.is_global:
            tops, media_count = await self.projector.get_global_party_aggregates()
            return {
                **summary,
                **tops_dict(tops.top_bid, tops.top_user_aggregate),
                "top_user_aggregate_media_id": tops.top_user_aggregate.ref_id,
                "bucket_count": media_count,
                "stale": False,
            }

        top_bid = top_bid_from_row(party)
        top_user = top_user_from_row(party, party.top_user_aggregate_media_id)
        stale = party.top_stale
        if stale:
            try:
                tops = await self.maintainer.refresh_party(party_id)
                await self.db.commit()
            except StaleTopComparisonError:
                await self.db.rollback()
                logger.warning(f"Party {party_id} still contended; serving stale tops")
            else:
                if tops is not None:
                    top_bid, top_user, stale = tops.top_bid, tops.top_user_aggregate, False

        count = await self.db.execute(
            select(func.count()).select_from(PartyMedia).where(PartyMedia.party_id == party_id)
        )
        return {
            **summary,
            **tops_dict(top_bid, top_user),
            "top_user_aggregate_media_id": top_user.ref_id,
            "bucket_count": count.scalar_one(),
            "stale": stale,
        }

    async def get_user_aggregates(self, user_id: UUID, party_id: UUID | None = None) -> dict:
        """A user's counted total and top bid, overall and per party.

        Read straight from the ledger: one grouped sum and one
        ``DISTINCT ON (party_id)`` pick of the best bid per party. Ties on
        amount go to the earliest bid. ``party_id`` narrows the per-party
        list only; the overall fields always cover every party.

        Raises:
            NotFoundError: unknown user
            PartyNotFoundError: unknown party filter
        """
        if await self.db.get(User, user_id) is None:
            raise NotFoundError("User", user_id)
        if party_id is not None:
            await self._get_party(party_id)

        own = (Bid.user_id == user_id, counted())
        totals = await self.db.execute(
            select(Bid.party_id, func.sum(Bid.amount), func.count(Bid.bid_id))
            .where(*own)
            .group_by(Bid.party_id)
        )
        tops = await self.db.execute(
            select(Bid)
            .where(*own)
            .order_by(Bid.party_id, Bid.amount.desc(), Bid.created_at, Bid.bid_id)
            .distinct(Bid.party_id)
        )
        top_bids = {bid.party_id: bid for bid in tops.scalars().all()}

        rows = totals.all()
        parties = [
            {
                "party_id": row_party,
                "total": int(total),
                "bid_count": count,
                **user_top_dict(top_bids.get(row_party)),
            }
            for row_party, total, count in rows
            if party_id is None or row_party == party_id
        ]
        parties.sort(key=lambda entry: (-entry["total"], str(entry["party_id"])))

        by_bid = {bid.bid_id: bid for bid in top_bids.values()}
        winner = by_bid.get(best(bid_entry(bid) for bid in by_bid.values()).ref_id)
        return {
            "user_id": user_id,
            "total": sum(int(total) for _, total, _ in rows),
            "bid_count": sum(count for _, _, count in rows),
            **user_top_dict(winner),
            "top_bid_party_id": winner.party_id if winner else None,
            "parties": parties,
        }
