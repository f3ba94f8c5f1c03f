"""Bid model: the append-mostly ledger of bid events."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Index, Integer, SmallInteger, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from partybids.core.database import Base
from partybids.models.base import utcnow


class BidStatus:
    ACTIVE = "active"
    PLAYED = "played"
    VETOED = "vetoed"
    REFUNDED = "refunded"

    ALL = (ACTIVE, PLAYED, VETOED, REFUNDED)
    # Statuses that contribute to aggregates
    COUNTED = (ACTIVE, PLAYED)


class BidScope:
    PARTY = "party"
    GLOBAL = "global"

    ALL = (PARTY, GLOBAL)


class Bid(Base):
    """One bid event.

    Only ``status`` changes in normal operation. ``bid_scope`` is fixed at
    creation from the target party's type. The snapshot columns record what
    the user, party and media looked like when the bid was placed; only the
    sweeper and the backfill engine rewrite them.

    User, party and media are referenced by id without foreign keys: those
    entities can be deleted upstream, and the sweeper repairs what is left.
    """

    __tablename__ = "bids"

    bid_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    party_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    media_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
    )
    # Minor currency units
    amount: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BidStatus.ACTIVE,
    )
    bid_scope: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=BidScope.PARTY,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    # Snapshot taken at placement time
    username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    party_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    party_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    media_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    media_artist: Mapped[str | None] = mapped_column(String(255), nullable=True)
    media_cover_art: Mapped[str | None] = mapped_column(String(500), nullable=True)
    media_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    day_of_week: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    hour_of_day: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    is_initial_bid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Bidder's running totals including this bid, at placement time
    party_aggregate_bid_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    global_aggregate_bid_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    @property
    def is_counted(self) -> bool:
        return self.status in BidStatus.COUNTED

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_bid_amount_positive"),
        CheckConstraint("status IN ('active', 'played', 'vetoed', 'refunded')", name="chk_bid_status"),
        CheckConstraint("bid_scope IN ('party', 'global')", name="chk_bid_scope"),
        Index("idx_bids_bucket", "party_id", "media_id", "status"),
        Index("idx_bids_media_status", "media_id", "status"),
        Index("idx_bids_user", "user_id"),
        Index("idx_bids_created", "created_at", "bid_id"),
    )
