"""Aggregate query API endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query

from partybids.api.deps import GlobalViewDep, RankingServiceDep
from partybids.core.config import settings
from partybids.schemas.ranking import (
    BucketAggregates,
    GlobalMediaEntry,
    GlobalMediaView,
    PartyAggregates,
    UserAggregates,
)
from partybids.services.global_view_service import DEFAULT_SORT

router = APIRouter()


@router.get("/global", response_model=GlobalMediaView)
async def get_global_media_view(
    projector: GlobalViewDep,
    limit: int = Query(default=settings.GLOBAL_VIEW_DEFAULT_LIMIT),
    sort_by: str = Query(default=DEFAULT_SORT),
):
    """Ranked media across every party plus global-scope bids."""
    entries = await projector.get_global_media_view(limit=limit, sort_by=sort_by)
    return GlobalMediaView(
        sort_by=sort_by,
        limit=limit,
        entries=[GlobalMediaEntry(**entry) for entry in entries],
    )


@router.get("/parties/{party_id}", response_model=PartyAggregates)
async def get_party_aggregates(
    party_id: UUID,
    ranking_service: RankingServiceDep,
):
    """Party-level top bid and top user aggregate."""
    return PartyAggregates(**await ranking_service.get_party_aggregates(party_id))


@router.get("/parties/{party_id}/media/{media_id}", response_model=BucketAggregates)
async def get_bucket_aggregates(
    party_id: UUID,
    media_id: UUID,
    ranking_service: RankingServiceDep,
):
    """Aggregate, top bid and top user aggregate of one bucket."""
    return BucketAggregates(**await ranking_service.get_bucket_aggregates(party_id, media_id))


@router.get("/users/{user_id}", response_model=UserAggregates)
async def get_user_aggregates(
    user_id: UUID,
    ranking_service: RankingServiceDep,
    party_id: UUID | None = Query(default=None),
):
    """A user's total and top bid, overall and per party."""
    return UserAggregates(**await ranking_service.get_user_aggregates(user_id, party_id))
