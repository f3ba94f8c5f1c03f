"""Media model: a content item with its media-level bid aggregates."""

import uuid

from sqlalchemy import BigInteger, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from partybids.core.database import Base
from partybids.models.base import TimestampMixin


class Media(Base, TimestampMixin):
    """Media model.

    ``global_aggregate`` is the sum of every counted bid on this media, party
    scoped and global scoped alike. ``global_scope_aggregate`` is the global
    scoped part of it, kept separately so support placed through the Global
    Party is never mixed into any party's totals. Amounts are minor units.
    """

    __tablename__ = "media"

    media_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    artist: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    cover_art: Mapped[str | None] = mapped_column(
        String(500),
        nullable=True,
    )
    duration_seconds: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
    )
    global_aggregate: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
    global_scope_aggregate: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )
    revision: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    __table_args__ = (
        Index("idx_media_global_aggregate", "global_aggregate"),
    )
