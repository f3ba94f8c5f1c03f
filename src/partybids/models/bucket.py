"""Bucket models: cached aggregates of one (party, media) pair."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Index, PrimaryKeyConstraint, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from partybids.core.database import Base
from partybids.models.base import TopFieldsMixin, utcnow

BUCKET_STATUS_QUEUED = "queued"
BUCKET_STATUS_PLAYED = "played"
BUCKET_STATUS_VETOED = "vetoed"


class PartyMedia(Base, TopFieldsMixin):
    """A party's media entry and its bucket of cached aggregates.

    ``aggregate`` is the sum of counted party-scoped bids for this media in
    this party. Created lazily by the first bid that lands in it.
    """

    __tablename__ = "party_media"

    bucket_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    party_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    media_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    aggregate: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BUCKET_STATUS_QUEUED,
    )
    queued_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    played_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    vetoed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("party_id", "media_id", name="uq_party_media_bucket"),
        Index("idx_party_media_media", "media_id"),
        Index("idx_party_media_aggregate", "party_id", "aggregate"),
    )


class BucketUserTotal(Base):
    """Running total of one user's counted bids inside one bucket."""

    __tablename__ = "bucket_user_totals"

    party_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    media_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    total: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
    # Earliest qualifying bid of this user in the bucket (tie-break key)
    first_bid_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
    )

    __table_args__ = (
        PrimaryKeyConstraint("party_id", "media_id", "user_id", name="pk_bucket_user_totals"),
    )
