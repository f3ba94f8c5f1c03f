"""API dependencies for caller identity, database and service access."""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.database import get_db
from partybids.core.redis import get_redis
from partybids.services.backfill_service import BackfillEngine
from partybids.services.bid_service import BidService
from partybids.services.global_view_service import GlobalViewProjector
from partybids.services.ranking_service import RankingService
from partybids.services.redis_service import RedisService
from partybids.services.sweep_service import ReferentialIntegritySweeper


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Caller identity, verified upstream by the auth gateway.

    Raises:
        HTTPException: If the header is missing or not a UUID
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID in X-User-Id header",
        )


# Type aliases for cleaner dependency injection
CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_redis_service() -> RedisService:
    """Get RedisService instance with shared Redis connection pool."""
    redis = await get_redis()
    return RedisService(redis)


RedisServiceDep = Annotated[RedisService, Depends(get_redis_service)]


async def get_bid_service(db: DbSession) -> BidService:
    """Get BidService instance with injected dependencies."""
    return BidService(db)


async def get_ranking_service(db: DbSession, redis_service: RedisServiceDep) -> RankingService:
    return RankingService(db, redis_service)


async def get_global_view(db: DbSession, redis_service: RedisServiceDep) -> GlobalViewProjector:
    return GlobalViewProjector(db, redis_service)


async def get_sweeper(
    db: DbSession, redis_service: RedisServiceDep
) -> ReferentialIntegritySweeper:
    return ReferentialIntegritySweeper(db, redis_service)


async def get_backfill_engine(db: DbSession, redis_service: RedisServiceDep) -> BackfillEngine:
    return BackfillEngine(db, redis_service)


# Type aliases for service dependencies
BidServiceDep = Annotated[BidService, Depends(get_bid_service)]
RankingServiceDep = Annotated[RankingService, Depends(get_ranking_service)]
GlobalViewDep = Annotated[GlobalViewProjector, Depends(get_global_view)]
SweeperDep = Annotated[ReferentialIntegritySweeper, Depends(get_sweeper)]
BackfillEngineDep = Annotated[BackfillEngine, Depends(get_backfill_engine)]
