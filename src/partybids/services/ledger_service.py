"""Bid ledger: append-mostly record of bids and their status transitions."""

import logging
from datetime import datetime
from typing import Any, AsyncIterator
from uuid import UUID

from sqlalchemy import func, select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.exceptions import (
    BidNotFoundError,
    BidValidationError,
    InvalidTransitionError,
)
from partybids.models.base import utcnow
from partybids.models.bid import Bid, BidScope, BidStatus
from partybids.models.media import Media
from partybids.models.party import PARTY_TYPE_GLOBAL, Party
from partybids.models.user import User
from partybids.services.aggregation_service import AggregationMaintainer, AppliedDelta
from partybids.services.reference_resolver import ReferenceResolver

logger = logging.getLogger(__name__)

# Allowed status changes; same-status requests are no-ops handled separately
TRANSITIONS: dict[str, frozenset[str]] = {
    BidStatus.ACTIVE: frozenset({BidStatus.PLAYED, BidStatus.VETOED, BidStatus.REFUNDED}),
    BidStatus.VETOED: frozenset({BidStatus.ACTIVE, BidStatus.REFUNDED}),
    BidStatus.PLAYED: frozenset(),
    BidStatus.REFUNDED: frozenset(),
}


def validate_amount(amount: Any) -> int:
    """Amounts are positive integers in minor currency units."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise BidValidationError(
            "Bid amount must be an integer number of minor units",
            {"amount": repr(amount)},
        )
    if amount <= 0:
        raise BidValidationError("Bid amount must be positive", {"amount": amount})
    return amount


def scope_for_party(party: Party) -> str:
    return BidScope.GLOBAL if party.type == PARTY_TYPE_GLOBAL else BidScope.PARTY


def check_transition(bid_id: UUID, current: str, requested: str) -> bool:
    """Validate a status change.

    Returns:
        False for a same-status no-op, True for a real transition

    Raises:
        BidValidationError: unknown status
        InvalidTransitionError: transition not allowed from ``current``
    """
    if requested not in BidStatus.ALL:
        raise BidValidationError(
            f"Unknown bid status: {requested}",
            {"status": requested, "allowed": list(BidStatus.ALL)},
        )
    if requested == current:
        return False
    if requested not in TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(bid_id, current, requested)
    return True


def build_snapshot(user: User, party: Party, media: Media, created_at: datetime) -> dict:
    """Denormalized view of the referenced entities at placement time."""
    return {
        "username": user.username,
        "party_name": party.name,
        "party_type": party.type,
        "media_title": media.title,
        "media_artist": media.artist,
        "media_cover_art": media.cover_art,
        "media_duration": media.duration_seconds,
        "day_of_week": created_at.weekday(),
        "hour_of_day": created_at.hour,
    }


async def iter_bid_batches(
    db: AsyncSession, batch_size: int, *criteria
) -> AsyncIterator[list[Bid]]:
    """Keyset-paged scan of the ledger in ``(created_at, bid_id)`` order.

    Rows deleted or rewritten between pages do not shift later pages.
    """
    last_key: tuple[datetime, UUID] | None = None
    while True:
        stmt = select(Bid).where(*criteria).order_by(Bid.created_at, Bid.bid_id).limit(batch_size)
        if last_key is not None:
            stmt = stmt.where(tuple_(Bid.created_at, Bid.bid_id) > tuple_(*last_key))

        result = await db.execute(stmt)
        batch = list(result.scalars().all())
        if not batch:
            return

        # Taken before yielding: the consumer may delete or detach rows
        last_key = (batch[-1].created_at, batch[-1].bid_id)
        yield batch

        if len(batch) < batch_size:
            return


class BidLedger:
    """Writes bids and status changes, and hands every delta to the maintainer.

    Nothing here commits: the caller owns the unit of work, so a bid row and
    the aggregate deltas it caused land together or not at all.
    """

    def __init__(
        self,
        db: AsyncSession,
        resolver: ReferenceResolver | None = None,
        maintainer: AggregationMaintainer | None = None,
    ):
        self.db = db
        self.resolver = resolver or ReferenceResolver(db)
        self.maintainer = maintainer or AggregationMaintainer(db)

    async def append(
        self, user_id: UUID, party_id: UUID, media_id: UUID, amount: int
    ) -> tuple[Bid, AppliedDelta]:
        """Record a new active bid and apply its forward delta.

        Raises:
            BidValidationError: amount not a positive integer (nothing looked up)
            BidReferenceError: user, party or media could not be resolved
        """
        amount = validate_amount(amount)
        user, party, media = await self.resolver.resolve_bid_references(user_id, party_id, media_id)

        created_at = utcnow()
        bid = Bid(
            user_id=user.user_id,
            party_id=party.party_id,
            media_id=media.media_id,
            amount=amount,
            status=BidStatus.ACTIVE,
            bid_scope=scope_for_party(party),
            created_at=created_at,
            updated_at=created_at,
            **build_snapshot(user, party, media, created_at),
        )
        self.db.add(bid)
        await self.db.flush()

        applied = await self.maintainer.apply_addition(bid)
        await self._fill_running_totals(bid, applied)

        logger.debug(
            f"Bid {bid.bid_id} recorded: {amount} on media {media_id} "
            f"in party {party_id} ({bid.bid_scope} scope)"
        )
        return bid, applied

    async def _fill_running_totals(self, bid: Bid, applied: AppliedDelta) -> None:
        if bid.bid_scope == BidScope.PARTY:
            bid.is_initial_bid = applied.bucket_created
            bid.party_aggregate_bid_value = applied.bucket_user_total or bid.amount
        else:
            first_on_media = await self.db.execute(
                select(func.count(Bid.bid_id)).where(
                    Bid.media_id == bid.media_id,
                    Bid.bid_scope == BidScope.GLOBAL,
                    Bid.status.in_(BidStatus.COUNTED),
                )
            )
            bid.is_initial_bid = first_on_media.scalar_one() == 1
            bid.party_aggregate_bid_value = await self._user_sum(
                bid.user_id, bid.media_id, Bid.party_id == bid.party_id
            )

        bid.global_aggregate_bid_value = await self._user_sum(bid.user_id, bid.media_id)
        await self.db.flush()

    async def _user_sum(self, user_id: UUID, media_id: UUID, *criteria) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Bid.amount), 0)).where(
                Bid.user_id == user_id,
                Bid.media_id == media_id,
                Bid.status.in_(BidStatus.COUNTED),
                *criteria,
            )
        )
        return int(result.scalar_one())

    async def get_for_update(self, bid_id: UUID) -> Bid:
        result = await self.db.execute(
            select(Bid).where(Bid.bid_id == bid_id).with_for_update()
        )
        bid = result.scalar_one_or_none()
        if bid is None:
            raise BidNotFoundError(bid_id)
        return bid

    async def set_status(self, bid_id: UUID, new_status: str) -> tuple[Bid, AppliedDelta | None]:
        """Move a bid to ``new_status`` and apply the matching delta.

        Raises:
            BidNotFoundError: no such bid
            BidValidationError: unknown status
            InvalidTransitionError: illegal change; nothing is mutated
        """
        bid = await self.get_for_update(bid_id)
        return bid, await self.transition(bid, new_status)

    async def transition(self, bid: Bid, new_status: str) -> AppliedDelta | None:
        """Apply a status change to a bid already locked by the caller."""
        if not check_transition(bid.bid_id, bid.status, new_status):
            return None

        was_counted = bid.is_counted
        previous = bid.status
        bid.status = new_status
        bid.updated_at = utcnow()
        await self.db.flush()

        applied = None
        if was_counted and not bid.is_counted:
            await self.maintainer.apply_removal(bid)
        elif not was_counted and bid.is_counted:
            applied = await self.maintainer.apply_addition(bid)

        logger.debug(f"Bid {bid.bid_id}: {previous} -> {new_status}")
        return applied
