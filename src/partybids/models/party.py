"""Party model for listening sessions."""

import uuid

from sqlalchemy import Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from partybids.core.database import Base
from partybids.models.base import TimestampMixin, TopFieldsMixin

PARTY_TYPE_STANDARD = "standard"
PARTY_TYPE_GLOBAL = "global"
PARTY_TYPES = (PARTY_TYPE_STANDARD, PARTY_TYPE_GLOBAL)


class Party(Base, TimestampMixin, TopFieldsMixin):
    """Party model.

    Party-level tops are the max over the party's buckets. A party with
    ``type == "global"`` owns no buckets; its content and tops are projected
    from the ledger on read.
    """

    __tablename__ = "parties"

    party_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=PARTY_TYPE_STANDARD,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="active",
    )
    # Bucket (media) holding the current top user aggregate
    top_user_aggregate_media_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    @property
    def is_global(self) -> bool:
        return self.type == PARTY_TYPE_GLOBAL

    __table_args__ = (
        Index("idx_parties_type", "type"),
        Index("idx_parties_top_bid", "top_bid"),
        Index("idx_parties_top_user_aggregate", "top_user_aggregate"),
    )
