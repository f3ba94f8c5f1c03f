"""Base model with common timestamp fields."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive ``DateTime`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )


class TopFieldsMixin:
    """Cached "top" fields shared by buckets and parties.

    ``top_*_at`` holds the tie-break key: creation time of the top bid, or
    the earliest qualifying bid of the top user. ``top_stale`` marks tops that
    must be recomputed from the ledger before they are served. ``revision``
    is bumped by every write and guards compare-and-set updates.
    """

    top_bid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    top_bid_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    top_bid_bid_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    top_bid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    top_user_aggregate: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    top_user_aggregate_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    top_user_aggregate_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    top_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revision: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
