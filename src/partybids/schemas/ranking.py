"""Aggregate schemas for bucket, party, user and global views."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class TopFields(BaseModel):
    top_bid: int = 0
    top_bid_user_id: UUID | None = None
    top_user_aggregate: int = 0
    top_user_aggregate_user_id: UUID | None = None


class BucketAggregates(TopFields):
    """Schema for one (party, media) bucket."""

    party_id: UUID
    media_id: UUID
    aggregate: int
    top_bid_bid_id: UUID | None = None
    status: str | None = None
    stale: bool = False


class PartyAggregates(TopFields):
    """Schema for party-level tops."""

    party_id: UUID
    name: str
    type: str
    top_bid_bid_id: UUID | None = None
    top_user_aggregate_media_id: UUID | None = None
    bucket_count: int
    stale: bool = False


class GlobalMediaEntry(TopFields):
    """Schema for one media item in the global view."""

    media_id: UUID
    title: str | None = None
    artist: str | None = None
    global_aggregate: int
    bid_count: int


class GlobalMediaView(BaseModel):
    """Schema for the ranked global view."""

    sort_by: str
    limit: int
    entries: list[GlobalMediaEntry]


class UserBidTop(BaseModel):
    top_bid: int = 0
    top_bid_bid_id: UUID | None = None
    top_bid_media_id: UUID | None = None
    top_bid_at: datetime | None = None


class PartyUserAggregates(UserBidTop):
    """Schema for a user's total and top bid within one party."""

    party_id: UUID
    total: int
    bid_count: int


class UserAggregates(UserBidTop):
    """Schema for a user's totals across every party."""

    user_id: UUID
    total: int
    bid_count: int
    top_bid_party_id: UUID | None = None
    parties: list[PartyUserAggregates]
