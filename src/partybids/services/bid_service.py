"""Bid service for bidding operations."""

import logging
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.exceptions import NotFoundError
from partybids.models.base import utcnow
from partybids.models.bid import Bid, BidScope, BidStatus
from partybids.models.bucket import BUCKET_STATUS_PLAYED, BUCKET_STATUS_VETOED, PartyMedia
from partybids.services.ledger_service import BidLedger

logger = logging.getLogger(__name__)


class BidService:
    """Service class for bid operations.

    Each public method is one unit of work: it commits on success and rolls
    back on error. When top propagation could not settle, the unit of work
    is still committed and ``StaleTopComparisonError`` is raised afterwards,
    carrying the id of the recorded bid.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = BidLedger(db)

    async def place_bid(
        self, user_id: UUID, party_id: UUID, media_id: UUID, amount: int
    ) -> Bid:
        """Record a bid and apply it to every aggregate it belongs to.

        Raises:
            BidValidationError: amount not a positive integer
            BidReferenceError: user, party or media could not be resolved
            StaleTopComparisonError: bid recorded, top fields still settling
        """
        try:
            bid, applied = await self.ledger.append(user_id, party_id, media_id, amount)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if applied.unsettled is not None:
            logger.warning(f"Bid {bid.bid_id} recorded but top fields are settling")
            raise applied.unsettled
        return bid

    async def set_bid_status(self, bid_id: UUID, status: str) -> Bid:
        """Move one bid to a new status.

        Raises:
            BidNotFoundError: no such bid
            BidValidationError: unknown status
            InvalidTransitionError: illegal change
            StaleTopComparisonError: status changed, top fields still settling
        """
        try:
            bid, applied = await self.ledger.set_status(bid_id, status)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        if applied is not None and applied.unsettled is not None:
            raise applied.unsettled
        return bid

    async def _close_bucket(
        self, party_id: UUID, media_id: UUID, bid_status: str, bucket_status: str
    ) -> int:
        """Move every active bid of a bucket to ``bid_status`` and stamp the bucket."""
        try:
            # Bids are locked before the bucket, as in a single status change
            result = await self.db.execute(
                select(Bid)
                .where(
                    Bid.party_id == party_id,
                    Bid.media_id == media_id,
                    Bid.bid_scope == BidScope.PARTY,
                    Bid.status == BidStatus.ACTIVE,
                )
                .order_by(Bid.created_at, Bid.bid_id)
                .with_for_update()
            )
            bids = list(result.scalars().all())

            stamp = utcnow()
            values = {"status": bucket_status}
            values["played_at" if bucket_status == BUCKET_STATUS_PLAYED else "vetoed_at"] = stamp
            stamped = await self.db.execute(
                update(PartyMedia)
                .where(PartyMedia.party_id == party_id, PartyMedia.media_id == media_id)
                .values(**values)
                .returning(PartyMedia.bucket_id)
                .execution_options(synchronize_session=False)
            )
            if stamped.first() is None:
                raise NotFoundError("Bucket", f"{party_id}:{media_id}")

            for bid in bids:
                await self.ledger.transition(bid, bid_status)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Bucket ({party_id}, {media_id}) {bucket_status}: {len(bids)} active bids moved to {bid_status}"
        )
        return len(bids)

    async def mark_bucket_played(self, party_id: UUID, media_id: UUID) -> int:
        """Mark a party's media as played; its active bids become played.

        Played bids stay counted, so aggregates do not change.

        Raises:
            NotFoundError: the party has no bucket for this media
        """
        return await self._close_bucket(party_id, media_id, BidStatus.PLAYED, BUCKET_STATUS_PLAYED)

    async def veto_bucket(self, party_id: UUID, media_id: UUID) -> int:
        """Veto a party's media; its active bids become vetoed and stop counting.

        Raises:
            NotFoundError: the party has no bucket for this media
        """
        return await self._close_bucket(party_id, media_id, BidStatus.VETOED, BUCKET_STATUS_VETOED)
