"""Pure aggregation math over ledger rows.

Nothing in this module touches the database. The maintainer, the backfill
engine, the sweeper and the global view projector all derive their numbers
from these functions, so the incremental path and the full recompute path
agree on every sum, every top and every tie-break.

Ordering rule for "top" fields: a larger value wins; on equal values the
entry with the earlier tie-break key wins. For a single bid the key is
``(created_at, bid_id)``; for a user aggregate it is the user's earliest
qualifying bid, then ``user_id``.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol
from uuid import UUID

from partybids.models.bid import BidScope, BidStatus

_FAR_FUTURE = datetime.max


class BidLike(Protocol):
    bid_id: UUID
    user_id: UUID
    party_id: UUID
    media_id: UUID
    amount: int
    status: str
    bid_scope: str
    created_at: datetime


@dataclass(frozen=True)
class TopEntry:
    """Holder of a top field: value, who holds it, and its tie-break key."""

    value: int = 0
    user_id: UUID | None = None
    at: datetime | None = None
    tiebreak: str = ""
    # bid_id for top bids; media_id for a party's top user aggregate
    ref_id: UUID | None = None

    @property
    def is_empty(self) -> bool:
        return self.user_id is None or self.value <= 0


EMPTY_TOP = TopEntry()


@dataclass(frozen=True)
class UserTotal:
    total: int
    first_bid_at: datetime


@dataclass
class BucketSnapshot:
    party_id: UUID
    media_id: UUID
    aggregate: int = 0
    top_bid: TopEntry = EMPTY_TOP
    top_user_aggregate: TopEntry = EMPTY_TOP
    user_totals: dict[UUID, UserTotal] = field(default_factory=dict)


@dataclass(frozen=True)
class PartyTops:
    top_bid: TopEntry = EMPTY_TOP
    top_user_aggregate: TopEntry = EMPTY_TOP


@dataclass(frozen=True)
class MediaTotals:
    global_aggregate: int = 0
    global_scope_aggregate: int = 0


@dataclass
class MediaProjection:
    """Global view of one media item, computed from its counted bids."""

    media_id: UUID
    global_aggregate: int = 0
    top_bid: TopEntry = EMPTY_TOP
    top_user_aggregate: TopEntry = EMPTY_TOP
    bid_count: int = 0
    title: str | None = None
    artist: str | None = None


@dataclass
class LedgerRebuild:
    """Every cached value derivable from a set of ledger rows."""

    buckets: dict[tuple[UUID, UUID], BucketSnapshot] = field(default_factory=dict)
    media: dict[UUID, MediaTotals] = field(default_factory=dict)
    parties: dict[UUID, PartyTops] = field(default_factory=dict)
    # bid_id -> (party_aggregate_bid_value, global_aggregate_bid_value)
    running_totals: dict[UUID, tuple[int, int]] = field(default_factory=dict)


def is_counted(bid: BidLike) -> bool:
    return bid.status in BidStatus.COUNTED


def bid_order_key(bid: BidLike) -> tuple:
    return (bid.created_at, str(bid.bid_id))


def bid_entry(bid: BidLike) -> TopEntry:
    return TopEntry(
        value=bid.amount,
        user_id=bid.user_id,
        at=bid.created_at,
        tiebreak=str(bid.bid_id),
        ref_id=bid.bid_id,
    )


def user_entry(
    user_id: UUID, total: int, first_bid_at: datetime, media_id: UUID | None = None
) -> TopEntry:
    return TopEntry(
        value=total,
        user_id=user_id,
        at=first_bid_at,
        tiebreak=str(user_id),
        ref_id=media_id,
    )


def outranks(challenger: TopEntry, holder: TopEntry) -> bool:
    """True when ``challenger`` should replace ``holder``.

    Equal values never replace an earlier holder, so re-applying the same
    candidate is a no-op.
    """
    if challenger.is_empty:
        return False
    if holder.is_empty:
        return True
    if challenger.value != holder.value:
        return challenger.value > holder.value
    return (challenger.at or _FAR_FUTURE, challenger.tiebreak) < (
        holder.at or _FAR_FUTURE,
        holder.tiebreak,
    )


def best(entries: Iterable[TopEntry]) -> TopEntry:
    """Winner among entries; the result does not depend on input order."""
    winner = EMPTY_TOP
    for entry in entries:
        if outranks(entry, winner):
            winner = entry
    return winner


def compute_user_totals(bids: Iterable[BidLike]) -> dict[UUID, UserTotal]:
    totals: dict[UUID, int] = defaultdict(int)
    first_at: dict[UUID, datetime] = {}
    for bid in bids:
        if not is_counted(bid):
            continue
        totals[bid.user_id] += bid.amount
        if bid.user_id not in first_at or bid.created_at < first_at[bid.user_id]:
            first_at[bid.user_id] = bid.created_at
    return {
        user_id: UserTotal(total=total, first_bid_at=first_at[user_id])
        for user_id, total in totals.items()
    }


def top_user_entry(
    user_totals: dict[UUID, UserTotal], media_id: UUID | None = None
) -> TopEntry:
    return best(
        user_entry(user_id, ut.total, ut.first_bid_at, media_id)
        for user_id, ut in user_totals.items()
    )


def compute_bucket_snapshot(
    party_id: UUID, media_id: UUID, bids: Iterable[BidLike]
) -> BucketSnapshot:
    """Recompute one bucket from its bids (counted, party scoped only)."""
    live = [
        b for b in bids
        if is_counted(b) and b.bid_scope == BidScope.PARTY
    ]
    user_totals = compute_user_totals(live)
    return BucketSnapshot(
        party_id=party_id,
        media_id=media_id,
        aggregate=sum(b.amount for b in live),
        top_bid=best(bid_entry(b) for b in live),
        top_user_aggregate=top_user_entry(user_totals),
        user_totals=user_totals,
    )


def merge_party_tops(buckets: Iterable[BucketSnapshot]) -> PartyTops:
    """Party-level tops: the max over the party's bucket-level tops."""
    top_bid = EMPTY_TOP
    top_user = EMPTY_TOP
    for bucket in buckets:
        if outranks(bucket.top_bid, top_bid):
            top_bid = bucket.top_bid
        candidate = bucket.top_user_aggregate
        if not candidate.is_empty:
            candidate = TopEntry(
                value=candidate.value,
                user_id=candidate.user_id,
                at=candidate.at,
                tiebreak=candidate.tiebreak,
                ref_id=bucket.media_id,
            )
        if outranks(candidate, top_user):
            top_user = candidate
    return PartyTops(top_bid=top_bid, top_user_aggregate=top_user)


def compute_media_totals(bids: Iterable[BidLike]) -> MediaTotals:
    total = 0
    global_scope = 0
    for bid in bids:
        if not is_counted(bid):
            continue
        total += bid.amount
        if bid.bid_scope == BidScope.GLOBAL:
            global_scope += bid.amount
    return MediaTotals(global_aggregate=total, global_scope_aggregate=global_scope)


def compute_media_projection(media_id: UUID, bids: Iterable[BidLike]) -> MediaProjection:
    """Global tops of one media across every party plus global-scope bids."""
    live = sorted((b for b in bids if is_counted(b)), key=bid_order_key)
    projection = MediaProjection(media_id=media_id)
    if not live:
        return projection

    user_totals = compute_user_totals(live)
    projection.global_aggregate = sum(b.amount for b in live)
    projection.top_bid = best(bid_entry(b) for b in live)
    projection.top_user_aggregate = top_user_entry(user_totals, media_id)
    projection.bid_count = len(live)

    latest = live[-1]
    projection.title = getattr(latest, "media_title", None)
    projection.artist = getattr(latest, "media_artist", None)
    return projection


def compute_running_totals(bids: Iterable[BidLike]) -> dict[UUID, tuple[int, int]]:
    """Each bid's bidder totals up to and including that bid.

    Returns ``bid_id -> (party total, global total)`` where the party total
    is the bidder's sum in the bid's (party, media) pair and the global total
    is the bidder's sum on the media across every party. Only counted bids
    add to the totals.
    """
    party_running: dict[tuple[UUID, UUID, UUID], int] = defaultdict(int)
    global_running: dict[tuple[UUID, UUID], int] = defaultdict(int)
    result: dict[UUID, tuple[int, int]] = {}

    for bid in sorted(bids, key=bid_order_key):
        party_key = (bid.user_id, bid.party_id, bid.media_id)
        global_key = (bid.user_id, bid.media_id)
        if is_counted(bid):
            party_running[party_key] += bid.amount
            global_running[global_key] += bid.amount
        result[bid.bid_id] = (party_running[party_key], global_running[global_key])
    return result


def rebuild_aggregates(
    bids: Iterable[BidLike], with_running_totals: bool = False
) -> LedgerRebuild:
    """Rebuild buckets, media totals and party tops from ledger rows alone."""
    bids = list(bids)
    by_bucket: dict[tuple[UUID, UUID], list[BidLike]] = defaultdict(list)
    by_media: dict[UUID, list[BidLike]] = defaultdict(list)

    for bid in bids:
        if not is_counted(bid):
            continue
        by_media[bid.media_id].append(bid)
        if bid.bid_scope == BidScope.PARTY:
            by_bucket[(bid.party_id, bid.media_id)].append(bid)

    rebuild = LedgerRebuild()
    for (party_id, media_id), bucket_bids in by_bucket.items():
        rebuild.buckets[(party_id, media_id)] = compute_bucket_snapshot(
            party_id, media_id, bucket_bids
        )

    for media_id, media_bids in by_media.items():
        rebuild.media[media_id] = compute_media_totals(media_bids)

    party_buckets: dict[UUID, list[BucketSnapshot]] = defaultdict(list)
    for (party_id, _), snapshot in rebuild.buckets.items():
        party_buckets[party_id].append(snapshot)
    for party_id, snapshots in party_buckets.items():
        rebuild.parties[party_id] = merge_party_tops(snapshots)

    if with_running_totals:
        rebuild.running_totals = compute_running_totals(bids)

    return rebuild
