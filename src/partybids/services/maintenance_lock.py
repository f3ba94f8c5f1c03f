"""Global serialization of the bulk-rewrite jobs (sweeper and backfill)."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from partybids.core.config import settings
from partybids.core.exceptions import MaintenanceLockError
from partybids.services.redis_service import RedisService

logger = logging.getLogger(__name__)

MAINTENANCE_LOCK_NAME = "maintenance:aggregates"


@asynccontextmanager
async def maintenance_lock(redis_service: RedisService, job: str) -> AsyncIterator[str]:
    """Hold the maintenance lock for the duration of a job.

    Raises:
        MaintenanceLockError: if another job holds the lock
    """
    acquired, owner_id = await redis_service.acquire_lock(
        MAINTENANCE_LOCK_NAME, ttl=settings.MAINTENANCE_LOCK_TTL
    )
    if not acquired:
        holder = await redis_service.get_lock_owner(MAINTENANCE_LOCK_NAME)
        logger.warning(f"{job}: maintenance lock busy (held by {holder})")
        raise MaintenanceLockError(
            f"Cannot start {job}: another maintenance job is running",
            {"job": job, "holder": holder},
        )

    logger.info(f"{job}: acquired maintenance lock {owner_id}")
    try:
        yield owner_id
    finally:
        released = await redis_service.release_lock(MAINTENANCE_LOCK_NAME, owner_id)
        if not released:
            logger.warning(f"{job}: maintenance lock {owner_id} expired before release")


async def renew_maintenance_lock(redis_service: RedisService, job: str, owner_id: str) -> None:
    """Push the lock's expiry out before the job writes more.

    Raises:
        MaintenanceLockError: the lock expired or another job now holds it
    """
    renewed = await redis_service.extend_lock(
        MAINTENANCE_LOCK_NAME, owner_id, settings.MAINTENANCE_LOCK_TTL
    )
    if renewed:
        return

    holder = await redis_service.get_lock_owner(MAINTENANCE_LOCK_NAME)
    logger.error(f"{job}: lost maintenance lock {owner_id} (now held by {holder})")
    raise MaintenanceLockError(
        f"{job} lost the maintenance lock; stopping before further writes",
        {"job": job, "holder": holder},
    )
