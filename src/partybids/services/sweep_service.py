"""Referential integrity sweeper for bids whose references disappeared."""

import logging
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.config import settings
from partybids.middleware.metrics import record_maintenance_changes, record_maintenance_run
from partybids.models.bid import Bid, BidScope
from partybids.models.media import Media
from partybids.models.party import Party
from partybids.models.user import User
from partybids.schemas.maintenance import SweepReport
from partybids.services.aggregation import is_counted
from partybids.services.aggregation_service import AggregationMaintainer, BidFacts
from partybids.services.ledger_service import iter_bid_batches
from partybids.services.maintenance_lock import maintenance_lock, renew_maintenance_lock
from partybids.services.redis_service import RedisService
from partybids.services.reference_resolver import ReferenceResolver

logger = logging.getLogger(__name__)

JOB_NAME = "sweep"

ACTION_KEEP = "keep"
ACTION_DELETE = "deleted"
ACTION_REASSIGN = "reassigned"
ACTION_STUB = "stubbed"
ACTION_SKIP = "skipped"

DELETED_USER = "Deleted User"
DELETED_MEDIA = "Deleted Media"
UNKNOWN_ARTIST = "Unknown"


def classify_orphan(user_exists: bool, party_exists: bool, media_exists: bool) -> str:
    """Decide what to do with a bid given which references still resolve.

    Missing user and media together is unrecoverable. A missing party moves
    the bid to the Global Party. A missing user or media alone only stubs
    the snapshot.
    """
    if not user_exists and not media_exists:
        return ACTION_DELETE
    if not party_exists:
        return ACTION_REASSIGN
    if not user_exists or not media_exists:
        return ACTION_STUB
    return ACTION_KEEP


def stub_snapshot(user_exists: bool, media_exists: bool) -> dict:
    """Sentinel values for whichever of user/media is gone."""
    values = {}
    if not user_exists:
        values["username"] = DELETED_USER
    if not media_exists:
        values["media_title"] = DELETED_MEDIA
        values["media_artist"] = UNKNOWN_ARTIST
    return values


def reassigned_snapshot(bid: Bid, user: User | None, party: Party, media: Media | None) -> dict:
    """Full snapshot of a bid moved to ``party``, stubbing what is gone."""
    values = {
        "username": user.username if user else DELETED_USER,
        "party_name": party.name,
        "party_type": party.type,
        "day_of_week": bid.created_at.weekday(),
        "hour_of_day": bid.created_at.hour,
    }
    if media is not None:
        values.update(
            media_title=media.title,
            media_artist=media.artist,
            media_cover_art=media.cover_art,
            media_duration=media.duration_seconds,
        )
    else:
        values.update(media_title=DELETED_MEDIA, media_artist=UNKNOWN_ARTIST)
    return values


def pending_changes(bid: Bid, values: dict) -> dict:
    """Only the fields whose stored value differs."""
    return {name: value for name, value in values.items() if getattr(bid, name) != value}


class ReferentialIntegritySweeper:
    """Finds bids whose user, party or media no longer exist and repairs them."""

    def __init__(
        self,
        db: AsyncSession,
        redis_service: RedisService,
        batch_size: int | None = None,
    ):
        self.db = db
        self.redis_service = redis_service
        self.batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        self.maintainer = AggregationMaintainer(db)
        self.resolver = ReferenceResolver(db)

    async def _existing(self, model, id_column, ids: Iterable[UUID]) -> dict:
        ids = set(ids)
        if not ids:
            return {}
        result = await self.db.execute(select(model).where(id_column.in_(ids)))
        return {getattr(row, id_column.key): row for row in result.scalars().all()}

    async def run(self, dry_run: bool = False) -> SweepReport:
        """Sweep the whole ledger once.

        Raises:
            MaintenanceLockError: another sweeper or backfill run is active
        """
        report = SweepReport(dry_run=dry_run)

        async with maintenance_lock(self.redis_service, JOB_NAME) as owner_id:
            logger.info(f"Sweep started ({'dry run' if dry_run else 'live'})")
            global_party = await self.resolver.get_global_party()
            if global_party is None:
                logger.error("No Global Party found; bids with a missing party will be skipped")

            try:
                async for batch in iter_bid_batches(self.db, self.batch_size):
                    await self._sweep_batch(batch, global_party, report, dry_run)
                    # A batch is only committed while this run still owns the lock
                    await renew_maintenance_lock(self.redis_service, JOB_NAME, owner_id)
                    if not dry_run:
                        await self.db.commit()
            except Exception:
                await self.db.rollback()
                record_maintenance_run(JOB_NAME, dry_run, "error")
                logger.exception("Sweep failed; the current batch was rolled back")
                raise

            if not dry_run and report.changed:
                await self.redis_service.invalidate_global_view()

        record_maintenance_run(JOB_NAME, dry_run, "success")
        if not dry_run:
            for action in (ACTION_REASSIGN, ACTION_DELETE, ACTION_STUB):
                record_maintenance_changes(JOB_NAME, action, getattr(report, action))

        logger.info(
            f"Sweep finished: scanned={report.scanned} reassigned={report.reassigned} "
            f"deleted={report.deleted} stubbed={report.stubbed} skipped={report.skipped}"
        )
        return report

    async def _sweep_batch(
        self,
        batch: list[Bid],
        global_party: Party | None,
        report: SweepReport,
        dry_run: bool,
    ) -> None:
        users = await self._existing(User, User.user_id, (b.user_id for b in batch))
        parties = await self._existing(Party, Party.party_id, (b.party_id for b in batch))
        media = await self._existing(Media, Media.media_id, (b.media_id for b in batch))

        for bid in batch:
            report.scanned += 1
            user = users.get(bid.user_id)
            item = media.get(bid.media_id)
            action = classify_orphan(user is not None, bid.party_id in parties, item is not None)

            if action == ACTION_KEEP:
                continue

            if not dry_run:
                locked = await self._lock_bid(bid.bid_id)
                if locked is None:
                    logger.debug(f"Bid {bid.bid_id}: removed since the batch was read")
                    continue
                bid = locked

            if action == ACTION_DELETE:
                report.record(ACTION_DELETE, bid.bid_id)
                logger.debug(f"Bid {bid.bid_id}: user and media gone, deleting")
                if not dry_run:
                    await self._delete(bid)

            elif action == ACTION_REASSIGN:
                if global_party is None:
                    report.record(ACTION_SKIP, bid.bid_id)
                    continue
                report.record(ACTION_REASSIGN, bid.bid_id)
                logger.debug(f"Bid {bid.bid_id}: party {bid.party_id} gone, moving to Global Party")
                if not dry_run:
                    await self._reassign(bid, user, global_party, item)

            else:
                changes = pending_changes(bid, stub_snapshot(user is not None, item is not None))
                if not changes:
                    continue
                report.record(ACTION_STUB, bid.bid_id)
                logger.debug(f"Bid {bid.bid_id}: stubbing {sorted(changes)}")
                if not dry_run:
                    for name, value in changes.items():
                        setattr(bid, name, value)
                    await self.db.flush()

    async def _lock_bid(self, bid_id: UUID) -> Bid | None:
        """Re-read a bid under FOR UPDATE before repairing it.

        The batch was read without locks; a status change committed since
        then must be seen here, or its inverse delta would be applied twice.
        """
        result = await self.db.execute(
            select(Bid)
            .where(Bid.bid_id == bid_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _delete(self, bid: Bid) -> None:
        facts = BidFacts.from_bid(bid)
        await self.db.delete(bid)
        await self.db.flush()
        if is_counted(facts):
            await self.maintainer.apply_removal(facts)

    async def _reassign(
        self, bid: Bid, user: User | None, global_party: Party, media: Media | None
    ) -> None:
        old = BidFacts.from_bid(bid)
        bid.party_id = global_party.party_id
        bid.bid_scope = BidScope.GLOBAL
        for name, value in reassigned_snapshot(bid, user, global_party, media).items():
            setattr(bid, name, value)
        await self.db.flush()
        await self.maintainer.apply_rehome(old, BidScope.GLOBAL)
