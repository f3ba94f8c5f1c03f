"""Bid API endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from partybids.api.deps import BidServiceDep, CurrentUserId
from partybids.models.bid import BidStatus
from partybids.schemas.bid import (
    BidCreate,
    BidResponse,
    BidSettlingResponse,
    BidStatusUpdate,
    BucketTransitionResponse,
)

router = APIRouter()


@router.post(
    "/bids",
    response_model=BidResponse,
    status_code=status.HTTP_201_CREATED,
    responses={status.HTTP_202_ACCEPTED: {"model": BidSettlingResponse}},
)
async def place_bid(
    bid_data: BidCreate,
    user_id: CurrentUserId,
    bid_service: BidServiceDep,
):
    """Place a bid on a media item in a party.

    201 means the bid and every aggregate it touches are up to date. 202
    means the bid is recorded but its top fields are still settling.
    """
    bid = await bid_service.place_bid(
        user_id=user_id,
        party_id=bid_data.party_id,
        media_id=bid_data.media_id,
        amount=bid_data.amount,
    )
    return BidResponse.model_validate(bid)


@router.patch("/bids/{bid_id}/status", response_model=BidResponse)
async def set_bid_status(
    bid_id: UUID,
    update: BidStatusUpdate,
    bid_service: BidServiceDep,
):
    """Move a bid to played, vetoed, refunded or back to active."""
    bid = await bid_service.set_bid_status(bid_id, update.status)
    return BidResponse.model_validate(bid)


@router.post(
    "/parties/{party_id}/media/{media_id}/played",
    response_model=BucketTransitionResponse,
)
async def mark_bucket_played(
    party_id: UUID,
    media_id: UUID,
    bid_service: BidServiceDep,
):
    """Mark a party's media as played."""
    count = await bid_service.mark_bucket_played(party_id, media_id)
    return BucketTransitionResponse(
        party_id=party_id,
        media_id=media_id,
        status=BidStatus.PLAYED,
        bids_updated=count,
    )


@router.post(
    "/parties/{party_id}/media/{media_id}/veto",
    response_model=BucketTransitionResponse,
)
async def veto_bucket(
    party_id: UUID,
    media_id: UUID,
    bid_service: BidServiceDep,
):
    """Veto a party's media; its active bids stop counting."""
    count = await bid_service.veto_bucket(party_id, media_id)
    return BucketTransitionResponse(
        party_id=party_id,
        media_id=media_id,
        status=BidStatus.VETOED,
        bids_updated=count,
    )
