"""SQLAlchemy ORM models."""

from partybids.models.base import TimestampMixin, TopFieldsMixin
from partybids.models.bid import Bid, BidScope, BidStatus
from partybids.models.bucket import BucketUserTotal, PartyMedia
from partybids.models.media import Media
from partybids.models.party import Party
from partybids.models.user import User

__all__ = [
    "TimestampMixin",
    "TopFieldsMixin",
    "User",
    "Media",
    "Party",
    "PartyMedia",
    "BucketUserTotal",
    "Bid",
    "BidScope",
    "BidStatus",
]
