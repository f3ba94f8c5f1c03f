"""Maintenance API endpoints for the sweeper and the backfill engine."""

from uuid import UUID

from fastapi import APIRouter

from partybids.api.deps import BackfillEngineDep, SweeperDep
from partybids.schemas.maintenance import BackfillReport, SweepReport

router = APIRouter()


@router.post("/sweep", response_model=SweepReport)
async def run_sweep(
    sweeper: SweeperDep,
    dry_run: bool = False,
):
    """Repair bids whose user, party or media no longer exist."""
    return await sweeper.run(dry_run=dry_run)


@router.post("/backfill", response_model=BackfillReport)
async def run_backfill(
    engine: BackfillEngineDep,
    dry_run: bool = False,
    party_id: UUID | None = None,
    media_id: UUID | None = None,
):
    """Recompute cached aggregates from the ledger and repair drift."""
    return await engine.run(dry_run=dry_run, party_id=party_id, media_id=media_id)
