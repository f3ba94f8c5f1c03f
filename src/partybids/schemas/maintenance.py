"""Schemas for sweeper and backfill reports."""

from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

SAMPLE_SIZE = 10


class SweepReport(BaseModel):
    """Outcome of one referential integrity sweep."""

    scanned: int = 0
    reassigned: int = 0
    deleted: int = 0
    stubbed: int = 0
    skipped: int = 0
    dry_run: bool = False
    # action -> first few bid ids it applied to
    samples: dict[str, list[UUID]] = Field(default_factory=dict)

    def record(self, action: str, bid_id: UUID) -> None:
        setattr(self, action, getattr(self, action) + 1)
        sample = self.samples.setdefault(action, [])
        if len(sample) < SAMPLE_SIZE:
            sample.append(bid_id)

    @property
    def changed(self) -> int:
        return self.reassigned + self.deleted + self.stubbed


class AggregateDiff(BaseModel):
    """One cached field that disagrees with its recomputed value."""

    entity: str  # bucket, media, party, bid
    key: str
    field: str
    cached: Any = None
    recomputed: Any = None


class BackfillReport(BaseModel):
    """Outcome of one backfill/recompute run."""

    buckets_rewritten: int = 0
    media_rewritten: int = 0
    parties_rewritten: int = 0
    bids_rewritten: int = 0
    # Rows left alone because a concurrent bid changed them mid-run
    conflicts: int = 0
    diffs: list[AggregateDiff] = Field(default_factory=list)
    dry_run: bool = False
    party_id: UUID | None = None
    media_id: UUID | None = None
