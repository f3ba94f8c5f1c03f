"""Bid schemas for request/response validation."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class BidCreate(BaseModel):
    """Schema for bid placement request.

    The bidder comes from the verified identity header, not the body.
    """

    party_id: UUID
    media_id: UUID
    # Minor currency units
    amount: int = Field(..., gt=0, strict=True)


class BidStatusUpdate(BaseModel):
    """Schema for a bid status change."""

    status: str


class BidResponse(BaseModel):
    """Schema for bid response."""

    bid_id: UUID
    user_id: UUID
    party_id: UUID
    media_id: UUID
    amount: int
    status: str
    bid_scope: str
    is_initial_bid: bool
    party_aggregate_bid_value: int
    global_aggregate_bid_value: int
    created_at: datetime

    model_config = {"from_attributes": True}


class BidSettlingResponse(BaseModel):
    """Schema for a recorded bid whose top fields are still settling."""

    error: str
    detail: str
    bid_id: UUID | None
    layer: str
    key: str


class BucketTransitionResponse(BaseModel):
    """Schema for a bucket-wide played/veto transition."""

    party_id: UUID
    media_id: UUID
    status: str
    bids_updated: int
