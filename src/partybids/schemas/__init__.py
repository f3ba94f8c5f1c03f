"""Pydantic schemas for request/response validation."""

from partybids.schemas.bid import (
    BidCreate,
    BidResponse,
    BidSettlingResponse,
    BidStatusUpdate,
    BucketTransitionResponse,
)
from partybids.schemas.maintenance import AggregateDiff, BackfillReport, SweepReport
from partybids.schemas.ranking import (
    BucketAggregates,
    GlobalMediaEntry,
    GlobalMediaView,
    PartyAggregates,
)

__all__ = [
    "BidCreate",
    "BidResponse",
    "BidSettlingResponse",
    "BidStatusUpdate",
    "BucketTransitionResponse",
    "AggregateDiff",
    "BackfillReport",
    "SweepReport",
    "BucketAggregates",
    "GlobalMediaEntry",
    "GlobalMediaView",
    "PartyAggregates",
]
