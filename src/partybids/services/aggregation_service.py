"""Aggregation maintainer: applies one bid's delta to the cached aggregates.

Three cache layers are touched per bid: the (party, media) bucket, the party
and the media item. Sums are unconditional atomic increments. "Top" fields
are compare-and-set on the row's ``revision``: read the current holder,
decide with the tie-break rule, then ``UPDATE ... WHERE revision = seen``.
A lost race is retried a bounded number of times; when retries run out the
row is flagged stale and recomputed on the next read.

Removing a bid never tries to un-maximize incrementally. If the removed bid
(or its bidder) held a top, the row is flagged stale instead and
``refresh_bucket`` / ``refresh_party`` recompute it from that bucket's (or
party's) rows only.

Rows are always written in the order bucket, user total, media, party.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.config import settings
from partybids.core.exceptions import StaleTopComparisonError
from partybids.middleware.metrics import STALE_REFRESHES, TOP_COMPARISON_RETRIES
from partybids.models.base import utcnow
from partybids.models.bid import Bid, BidScope, BidStatus
from partybids.models.bucket import BUCKET_STATUS_QUEUED, BucketUserTotal, PartyMedia
from partybids.models.media import Media
from partybids.models.party import Party
from partybids.services.aggregation import (
    EMPTY_TOP,
    BidLike,
    BucketSnapshot,
    PartyTops,
    TopEntry,
    UserTotal,
    bid_entry,
    compute_bucket_snapshot,
    is_counted,
    merge_party_tops,
    outranks,
    user_entry,
)

logger = logging.getLogger(__name__)

LAYER_BUCKET = "bucket"
LAYER_PARTY = "party"


@dataclass(frozen=True)
class BidFacts:
    """Immutable copy of the bid fields a delta depends on."""

    bid_id: UUID
    user_id: UUID
    party_id: UUID
    media_id: UUID
    amount: int
    status: str
    bid_scope: str
    created_at: datetime

    @classmethod
    def from_bid(cls, bid: BidLike) -> "BidFacts":
        return cls(
            bid_id=bid.bid_id,
            user_id=bid.user_id,
            party_id=bid.party_id,
            media_id=bid.media_id,
            amount=bid.amount,
            status=bid.status,
            bid_scope=bid.bid_scope,
            created_at=bid.created_at,
        )


@dataclass(frozen=True)
class TopState:
    revision: int
    stale: bool
    top_bid: TopEntry
    top_user_aggregate: TopEntry


@dataclass(frozen=True)
class AppliedDelta:
    """What a forward delta observed, for the ledger's denormalized fields."""

    bucket_created: bool = False
    bucket_user_total: int | None = None
    # Set when top fields could not be settled within the retry budget
    unsettled: StaleTopComparisonError | None = None


def top_bid_from_row(row) -> TopEntry:
    if row.top_bid_user_id is None or not row.top_bid:
        return EMPTY_TOP
    return TopEntry(
        value=row.top_bid,
        user_id=row.top_bid_user_id,
        at=row.top_bid_at,
        tiebreak=str(row.top_bid_bid_id) if row.top_bid_bid_id else "",
        ref_id=row.top_bid_bid_id,
    )


def top_user_from_row(row, ref_id: UUID | None = None) -> TopEntry:
    if row.top_user_aggregate_user_id is None or not row.top_user_aggregate:
        return EMPTY_TOP
    return TopEntry(
        value=row.top_user_aggregate,
        user_id=row.top_user_aggregate_user_id,
        at=row.top_user_aggregate_at,
        tiebreak=str(row.top_user_aggregate_user_id),
        ref_id=ref_id,
    )


def top_values(top_bid: TopEntry | None, top_user: TopEntry | None, party_level: bool) -> dict:
    """Column values for the given top holders (None leaves a field alone)."""
    values: dict = {}
    if top_bid is not None:
        values.update(
            top_bid=top_bid.value,
            top_bid_user_id=top_bid.user_id,
            top_bid_bid_id=top_bid.ref_id,
            top_bid_at=top_bid.at,
        )
    if top_user is not None:
        values.update(
            top_user_aggregate=top_user.value,
            top_user_aggregate_user_id=top_user.user_id,
            top_user_aggregate_at=top_user.at,
        )
        if party_level:
            values["top_user_aggregate_media_id"] = top_user.ref_id
    return values


class AggregationMaintainer:
    """Applies incremental deltas and bounded stale recomputes."""

    def __init__(self, db: AsyncSession, max_retries: int | None = None):
        self.db = db
        self.max_retries = (
            max_retries if max_retries is not None else settings.TOP_COMPARISON_MAX_RETRIES
        )

    # ==================== Forward Delta ====================

    async def apply_addition(self, bid: BidLike) -> AppliedDelta:
        """Add one counted bid to every layer it belongs to.

        Sums are always applied. If a top comparison exhausted its retries
        the affected rows are flagged stale and the error is returned in
        ``AppliedDelta.unsettled`` for the caller to raise after commit.
        """
        facts = BidFacts.from_bid(bid)

        if facts.bid_scope != BidScope.PARTY:
            # Global Party owns no buckets: media layer only
            await self._shift_media(facts.media_id, facts.amount, global_scope=True)
            return AppliedDelta()

        bucket_created = await self._add_to_bucket(facts)
        user_total = await self._add_to_user_total(facts)
        await self._shift_media(facts.media_id, facts.amount, global_scope=False)
        unsettled = await self._propagate_tops(facts, user_total)

        return AppliedDelta(
            bucket_created=bucket_created,
            bucket_user_total=user_total.total,
            unsettled=unsettled,
        )

    async def _add_to_bucket(self, facts: BidFacts) -> bool:
        """Create the bucket lazily and add the amount. True if just created."""
        stmt = pg_insert(PartyMedia).values(
            bucket_id=uuid.uuid4(),
            party_id=facts.party_id,
            media_id=facts.media_id,
            aggregate=facts.amount,
            status=BUCKET_STATUS_QUEUED,
            queued_at=utcnow(),
            top_bid=0,
            top_user_aggregate=0,
            top_stale=False,
            revision=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["party_id", "media_id"],
            set_={
                "aggregate": PartyMedia.aggregate + stmt.excluded.aggregate,
                "revision": PartyMedia.revision + 1,
            },
        ).returning(PartyMedia.revision)

        result = await self.db.execute(stmt)
        return result.scalar_one() == 1

    async def _add_to_user_total(self, facts: BidFacts) -> UserTotal:
        stmt = pg_insert(BucketUserTotal).values(
            party_id=facts.party_id,
            media_id=facts.media_id,
            user_id=facts.user_id,
            total=facts.amount,
            first_bid_at=facts.created_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["party_id", "media_id", "user_id"],
            set_={
                "total": BucketUserTotal.total + stmt.excluded.total,
                "first_bid_at": func.least(
                    BucketUserTotal.first_bid_at, stmt.excluded.first_bid_at
                ),
            },
        ).returning(BucketUserTotal.total, BucketUserTotal.first_bid_at)

        row = (await self.db.execute(stmt)).one()
        return UserTotal(total=row.total, first_bid_at=row.first_bid_at)

    async def _shift_media(self, media_id: UUID, amount: int, global_scope: bool) -> None:
        """Atomic +/- on the media totals (negative amount removes)."""
        values = {
            "global_aggregate": Media.global_aggregate + amount,
            "revision": Media.revision + 1,
        }
        if global_scope:
            values["global_scope_aggregate"] = Media.global_scope_aggregate + amount
        await self.db.execute(
            update(Media)
            .where(Media.media_id == media_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def _propagate_tops(
        self, facts: BidFacts, user_total: UserTotal
    ) -> StaleTopComparisonError | None:
        """Offer the bid and the bidder's new total to the bucket, then the party.

        Both candidates are exact on their own, so the party comparison does
        not depend on the bucket comparison having succeeded.
        """
        bid_candidate = bid_entry(facts)
        failure: StaleTopComparisonError | None = None

        bucket_where = and_(
            PartyMedia.party_id == facts.party_id,
            PartyMedia.media_id == facts.media_id,
        )
        try:
            await self._offer_tops(
                LAYER_BUCKET,
                (facts.party_id, facts.media_id),
                PartyMedia,
                bucket_where,
                bid_candidate,
                user_entry(facts.user_id, user_total.total, user_total.first_bid_at),
            )
        except StaleTopComparisonError as exc:
            failure = exc

        try:
            await self._offer_tops(
                LAYER_PARTY,
                facts.party_id,
                Party,
                Party.party_id == facts.party_id,
                bid_candidate,
                user_entry(facts.user_id, user_total.total, user_total.first_bid_at, facts.media_id),
            )
        except StaleTopComparisonError as exc:
            failure = failure or exc

        if failure is not None:
            failure.bid_id = facts.bid_id
        return failure

    # ==================== Compare-And-Set on Tops ====================

    async def _load_tops(self, model, where) -> TopState | None:
        columns = [
            model.revision,
            model.top_stale,
            model.top_bid,
            model.top_bid_user_id,
            model.top_bid_bid_id,
            model.top_bid_at,
            model.top_user_aggregate,
            model.top_user_aggregate_user_id,
            model.top_user_aggregate_at,
        ]
        party_level = model is Party
        if party_level:
            columns.append(Party.top_user_aggregate_media_id)

        row = (await self.db.execute(select(*columns).where(where))).one_or_none()
        if row is None:
            return None
        return TopState(
            revision=row.revision,
            stale=row.top_stale,
            top_bid=top_bid_from_row(row),
            top_user_aggregate=top_user_from_row(
                row, row.top_user_aggregate_media_id if party_level else None
            ),
        )

    async def _compare_and_set(self, model, where, seen_revision: int, values: dict) -> bool:
        stmt = (
            update(model)
            .where(where, model.revision == seen_revision)
            .values(revision=model.revision + 1, **values)
            .returning(model.revision)
            .execution_options(synchronize_session=False)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _try_offer(
        self,
        layer: str,
        key,
        model,
        where,
        bid_candidate: TopEntry,
        user_candidate: TopEntry,
    ) -> None:
        state = await self._load_tops(model, where)
        if state is None or state.stale:
            # Row gone, or a full recompute is already pending for it
            return

        new_top_bid = bid_candidate if outranks(bid_candidate, state.top_bid) else None
        new_top_user = user_candidate if outranks(user_candidate, state.top_user_aggregate) else None
        if new_top_bid is None and new_top_user is None:
            return

        values = top_values(new_top_bid, new_top_user, party_level=model is Party)
        if not await self._compare_and_set(model, where, state.revision, values):
            raise StaleTopComparisonError(layer, key)

    async def _offer_tops(
        self,
        layer: str,
        key,
        model,
        where,
        bid_candidate: TopEntry,
        user_candidate: TopEntry,
    ) -> None:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await self._try_offer(layer, key, model, where, bid_candidate, user_candidate)
                return
            except StaleTopComparisonError:
                TOP_COMPARISON_RETRIES.labels(layer=layer).inc()
                logger.debug(f"Top comparison on {layer} {key} lost a race (attempt {attempt}/{attempts})")

        logger.warning(f"Top comparison on {layer} {key} exhausted {attempts} attempts; flagging stale")
        await self._mark_stale(model, where)
        raise StaleTopComparisonError(layer, key)

    async def _mark_stale(self, model, where) -> None:
        await self.db.execute(
            update(model)
            .where(where)
            .values(top_stale=True, revision=model.revision + 1)
            .execution_options(synchronize_session=False)
        )

    # ==================== Inverse Delta ====================

    async def apply_removal(self, bid: BidLike) -> None:
        """Remove one bid's contribution (refund, veto, sweeper delete).

        The bid must already be non-counted (or deleted) in this session so
        that per-user recomputes exclude it.
        """
        facts = BidFacts.from_bid(bid)
        if facts.bid_scope == BidScope.PARTY:
            await self._remove_from_bucket(facts)
            await self._shift_media(facts.media_id, -facts.amount, global_scope=False)
            await self._flag_party_if_holder(facts)
        else:
            await self._shift_media(facts.media_id, -facts.amount, global_scope=True)

    async def _remove_from_bucket(self, facts: BidFacts) -> None:
        bucket_where = and_(
            PartyMedia.party_id == facts.party_id,
            PartyMedia.media_id == facts.media_id,
        )
        row = (
            await self.db.execute(
                update(PartyMedia)
                .where(bucket_where)
                .values(
                    aggregate=PartyMedia.aggregate - facts.amount,
                    revision=PartyMedia.revision + 1,
                )
                .returning(PartyMedia.top_bid_bid_id, PartyMedia.top_user_aggregate_user_id)
                .execution_options(synchronize_session=False)
            )
        ).first()

        await self._recompute_user_total(facts.party_id, facts.media_id, facts.user_id)

        if row is not None and (
            row.top_bid_bid_id == facts.bid_id or row.top_user_aggregate_user_id == facts.user_id
        ):
            await self._mark_stale(PartyMedia, bucket_where)

    async def _recompute_user_total(self, party_id: UUID, media_id: UUID, user_id: UUID) -> UserTotal | None:
        """Rebuild one user's running total in one bucket from their live bids."""
        row = (
            await self.db.execute(
                select(
                    func.coalesce(func.sum(Bid.amount), 0).label("total"),
                    func.min(Bid.created_at).label("first_bid_at"),
                ).where(
                    Bid.party_id == party_id,
                    Bid.media_id == media_id,
                    Bid.user_id == user_id,
                    Bid.bid_scope == BidScope.PARTY,
                    Bid.status.in_(BidStatus.COUNTED),
                )
            )
        ).one()

        key_where = and_(
            BucketUserTotal.party_id == party_id,
            BucketUserTotal.media_id == media_id,
            BucketUserTotal.user_id == user_id,
        )
        if not row.total:
            await self.db.execute(delete(BucketUserTotal).where(key_where))
            return None

        stmt = pg_insert(BucketUserTotal).values(
            party_id=party_id,
            media_id=media_id,
            user_id=user_id,
            total=row.total,
            first_bid_at=row.first_bid_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["party_id", "media_id", "user_id"],
            set_={"total": stmt.excluded.total, "first_bid_at": stmt.excluded.first_bid_at},
        )
        await self.db.execute(stmt)
        return UserTotal(total=row.total, first_bid_at=row.first_bid_at)

    async def _flag_party_if_holder(self, facts: BidFacts) -> None:
        await self.db.execute(
            update(Party)
            .where(
                Party.party_id == facts.party_id,
                or_(
                    Party.top_bid_bid_id == facts.bid_id,
                    and_(
                        Party.top_user_aggregate_user_id == facts.user_id,
                        Party.top_user_aggregate_media_id == facts.media_id,
                    ),
                ),
            )
            .values(top_stale=True, revision=Party.revision + 1)
            .execution_options(synchronize_session=False)
        )

    async def apply_rehome(self, old: BidLike, new_scope: str) -> None:
        """Move a bid's contribution after the sweeper re-homed it.

        The media total already counts the bid, so only its split between the
        party-scope and global-scope parts changes; the old bucket loses it.
        """
        facts = BidFacts.from_bid(old)
        if not is_counted(facts):
            return

        if facts.bid_scope == BidScope.PARTY:
            await self._remove_from_bucket(facts)
            await self._flag_party_if_holder(facts)

        if facts.bid_scope != new_scope:
            shift = facts.amount if new_scope == BidScope.GLOBAL else -facts.amount
            await self.db.execute(
                update(Media)
                .where(Media.media_id == facts.media_id)
                .values(
                    global_scope_aggregate=Media.global_scope_aggregate + shift,
                    revision=Media.revision + 1,
                )
                .execution_options(synchronize_session=False)
            )

    # ==================== Bounded Recompute ====================

    async def _bucket_bids(self, party_id: UUID, media_id: UUID) -> list[Bid]:
        result = await self.db.execute(
            select(Bid).where(
                Bid.party_id == party_id,
                Bid.media_id == media_id,
                Bid.bid_scope == BidScope.PARTY,
                Bid.status.in_(BidStatus.COUNTED),
            )
        )
        return list(result.scalars().all())

    async def _recompute_with_cas(
        self,
        layer: str,
        key,
        model,
        where,
        compute: Callable[[], Awaitable[dict]],
    ) -> dict | None:
        """Recompute a row's tops and write them only if nobody wrote meanwhile."""
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            state = await self._load_tops(model, where)
            if state is None:
                return None
            values = await compute()
            values["top_stale"] = False
            if await self._compare_and_set(model, where, state.revision, values):
                STALE_REFRESHES.labels(layer=layer).inc()
                return values
            TOP_COMPARISON_RETRIES.labels(layer=layer).inc()
            logger.debug(f"Recompute of {layer} {key} lost a race (attempt {attempt}/{attempts})")

        raise StaleTopComparisonError(layer, key)

    async def refresh_bucket(self, party_id: UUID, media_id: UUID) -> BucketSnapshot | None:
        """Recompute one bucket's tops from that bucket's live bids only."""
        snapshot: BucketSnapshot | None = None

        async def compute() -> dict:
            nonlocal snapshot
            snapshot = compute_bucket_snapshot(
                party_id, media_id, await self._bucket_bids(party_id, media_id)
            )
            return top_values(snapshot.top_bid, snapshot.top_user_aggregate, party_level=False)

        where = and_(PartyMedia.party_id == party_id, PartyMedia.media_id == media_id)
        written = await self._recompute_with_cas(
            LAYER_BUCKET, (party_id, media_id), PartyMedia, where, compute
        )
        if written is None:
            return None
        logger.debug(f"Refreshed stale bucket ({party_id}, {media_id})")
        return snapshot

    async def load_party_buckets(self, party_id: UUID) -> list[BucketSnapshot]:
        """Stored bucket tops of a party (after refreshing any stale bucket)."""
        stale = await self.db.execute(
            select(PartyMedia.media_id).where(
                PartyMedia.party_id == party_id,
                PartyMedia.top_stale.is_(True),
            )
        )
        for media_id in stale.scalars().all():
            await self.refresh_bucket(party_id, media_id)

        rows = await self.db.execute(
            select(
                PartyMedia.media_id,
                PartyMedia.aggregate,
                PartyMedia.top_bid,
                PartyMedia.top_bid_user_id,
                PartyMedia.top_bid_bid_id,
                PartyMedia.top_bid_at,
                PartyMedia.top_user_aggregate,
                PartyMedia.top_user_aggregate_user_id,
                PartyMedia.top_user_aggregate_at,
            ).where(PartyMedia.party_id == party_id)
        )
        return [
            BucketSnapshot(
                party_id=party_id,
                media_id=row.media_id,
                aggregate=row.aggregate,
                top_bid=top_bid_from_row(row),
                top_user_aggregate=top_user_from_row(row),
            )
            for row in rows.all()
        ]

    async def refresh_party(self, party_id: UUID) -> PartyTops | None:
        """Recompute a party's tops as the max over its buckets."""
        tops: PartyTops | None = None

        async def compute() -> dict:
            nonlocal tops
            tops = merge_party_tops(await self.load_party_buckets(party_id))
            return top_values(tops.top_bid, tops.top_user_aggregate, party_level=True)

        written = await self._recompute_with_cas(
            LAYER_PARTY, party_id, Party, Party.party_id == party_id, compute
        )
        if written is None:
            return None
        logger.debug(f"Refreshed stale party {party_id}")
        return tops
