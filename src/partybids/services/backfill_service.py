"""Backfill/recompute engine: rebuild cached aggregates from the ledger alone.

A run reads the stored cache rows (with their revisions) first and the
ledger second, recomputes everything in scope with the same pure functions
the maintainer uses, diffs field by field and, on a live run, writes back
only the rows that differ. Writes are conditional on the revision read at
the start, so a bid committed mid-run is never overwritten; that row is
counted as a conflict and reconciled by the next run.
"""

import logging
import uuid
from collections import defaultdict
from uuid import UUID

from sqlalchemy import and_, delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.config import settings
from partybids.core.exceptions import BidValidationError
from partybids.middleware.metrics import record_maintenance_changes, record_maintenance_run
from partybids.models.base import utcnow
from partybids.models.bid import Bid
from partybids.models.bucket import BUCKET_STATUS_QUEUED, BucketUserTotal, PartyMedia
from partybids.models.media import Media
from partybids.models.party import PARTY_TYPE_STANDARD, Party
from partybids.schemas.maintenance import AggregateDiff, BackfillReport
from partybids.services.aggregation import (
    BucketSnapshot,
    LedgerRebuild,
    MediaTotals,
    PartyTops,
    UserTotal,
    merge_party_tops,
    rebuild_aggregates,
)
from partybids.services.aggregation_service import top_bid_from_row, top_user_from_row, top_values
from partybids.services.ledger_service import iter_bid_batches
from partybids.services.maintenance_lock import maintenance_lock, renew_maintenance_lock
from partybids.services.redis_service import RedisService

logger = logging.getLogger(__name__)

JOB_NAME = "backfill"

BucketKey = tuple[UUID, UUID]


def bucket_values(snapshot: BucketSnapshot) -> dict:
    return {
        "aggregate": snapshot.aggregate,
        **top_values(snapshot.top_bid, snapshot.top_user_aggregate, party_level=False),
        "top_stale": False,
    }


def party_values(tops: PartyTops) -> dict:
    return {
        **top_values(tops.top_bid, tops.top_user_aggregate, party_level=True),
        "top_stale": False,
    }


def media_values(totals: MediaTotals) -> dict:
    return {
        "global_aggregate": totals.global_aggregate,
        "global_scope_aggregate": totals.global_scope_aggregate,
    }


def diff_fields(entity: str, key: str, cached: dict, recomputed: dict) -> list[AggregateDiff]:
    """Field-by-field disagreements between a stored row and its recompute."""
    return [
        AggregateDiff(
            entity=entity,
            key=key,
            field=name,
            cached=cached.get(name),
            recomputed=value,
        )
        for name, value in recomputed.items()
        if cached.get(name) != value
    ]


def diff_user_totals(
    key: str, cached: dict[UUID, UserTotal], recomputed: dict[UUID, UserTotal]
) -> list[AggregateDiff]:
    diffs = []
    for user_id in sorted(set(cached) | set(recomputed), key=str):
        stored = cached.get(user_id)
        fresh = recomputed.get(user_id)
        if stored == fresh:
            continue
        diffs.append(
            AggregateDiff(
                entity="bucket",
                key=key,
                field=f"user_total:{user_id}",
                cached=stored.total if stored else None,
                recomputed=fresh.total if fresh else None,
            )
        )
    return diffs


def bucket_key_str(key: BucketKey) -> str:
    return f"{key[0]}:{key[1]}"


def snapshot_from_row(row: PartyMedia) -> BucketSnapshot:
    return BucketSnapshot(
        party_id=row.party_id,
        media_id=row.media_id,
        aggregate=row.aggregate,
        top_bid=top_bid_from_row(row),
        top_user_aggregate=top_user_from_row(row),
    )


class BackfillEngine:
    """Recomputes buckets, media totals, party tops and per-bid running totals."""

    def __init__(
        self,
        db: AsyncSession,
        redis_service: RedisService,
        batch_size: int | None = None,
    ):
        self.db = db
        self.redis_service = redis_service
        self.batch_size = batch_size or settings.BACKFILL_BATCH_SIZE
        self._owner_id: str | None = None

    async def run(
        self,
        dry_run: bool = False,
        party_id: UUID | None = None,
        media_id: UUID | None = None,
    ) -> BackfillReport:
        """Recompute cached aggregates in scope and report (or repair) drift.

        Args:
            dry_run: report diffs without writing
            party_id: limit to one party's buckets and party tops
            media_id: limit to one media's buckets, totals and holding parties

        Raises:
            BidValidationError: both ``party_id`` and ``media_id`` given
            MaintenanceLockError: another sweeper or backfill run is active
        """
        if party_id is not None and media_id is not None:
            raise BidValidationError("Backfill takes a party or a media scope, not both")

        report = BackfillReport(dry_run=dry_run, party_id=party_id, media_id=media_id)
        scope = f"party {party_id}" if party_id else f"media {media_id}" if media_id else "all"

        async with maintenance_lock(self.redis_service, JOB_NAME) as owner_id:
            self._owner_id = owner_id
            logger.info(f"Backfill started for {scope} ({'dry run' if dry_run else 'live'})")
            try:
                await self._run(report, dry_run, party_id, media_id)
                if not dry_run:
                    await self._renew_lock()
                    await self.db.commit()
            except Exception:
                await self.db.rollback()
                record_maintenance_run(JOB_NAME, dry_run, "error")
                logger.exception(f"Backfill for {scope} failed; nothing was written")
                raise

            if not dry_run and report.diffs:
                await self.redis_service.invalidate_global_view()

        record_maintenance_run(JOB_NAME, dry_run, "success")
        if not dry_run:
            record_maintenance_changes(JOB_NAME, "bucket", report.buckets_rewritten)
            record_maintenance_changes(JOB_NAME, "media", report.media_rewritten)
            record_maintenance_changes(JOB_NAME, "party", report.parties_rewritten)
            record_maintenance_changes(JOB_NAME, "bid", report.bids_rewritten)

        logger.info(
            f"Backfill for {scope} finished: {len(report.diffs)} diffs, "
            f"buckets={report.buckets_rewritten} media={report.media_rewritten} "
            f"parties={report.parties_rewritten} bids={report.bids_rewritten} "
            f"conflicts={report.conflicts}"
        )
        return report

    async def _run(
        self,
        report: BackfillReport,
        dry_run: bool,
        party_id: UUID | None,
        media_id: UUID | None,
    ) -> None:
        unscoped = party_id is None and media_id is None

        bucket_criteria = []
        bid_criteria = []
        if party_id is not None:
            bucket_criteria.append(PartyMedia.party_id == party_id)
            bid_criteria.append(Bid.party_id == party_id)
        if media_id is not None:
            bucket_criteria.append(PartyMedia.media_id == media_id)
            bid_criteria.append(Bid.media_id == media_id)

        # Stored rows (and their revisions) are read before the ledger
        stored_buckets = await self._stored_buckets(*bucket_criteria)
        stored_user_totals = await self._stored_user_totals(party_id, media_id)
        stored_media = await self._stored_media(unscoped, media_id)

        bids: list[Bid] = []
        async for batch in iter_bid_batches(self.db, self.batch_size, *bid_criteria):
            bids.extend(batch)
            await self._renew_lock()
        rebuild = rebuild_aggregates(bids, with_running_totals=unscoped)

        bucket_keys = set(stored_buckets) | set(rebuild.buckets)
        recomputed_buckets = {
            key: rebuild.buckets.get(key) or BucketSnapshot(party_id=key[0], media_id=key[1])
            for key in bucket_keys
        }

        await self._reconcile_buckets(
            report, dry_run, stored_buckets, stored_user_totals, recomputed_buckets
        )
        await self._reconcile_media(report, dry_run, stored_media, rebuild)
        await self._reconcile_parties(
            report, dry_run, party_id, media_id, stored_buckets, recomputed_buckets
        )
        if unscoped:
            await self._reconcile_running_totals(report, dry_run, bids, rebuild)

    async def _renew_lock(self) -> None:
        # Writes are one transaction; losing the lock anywhere rolls all of them back
        await renew_maintenance_lock(self.redis_service, JOB_NAME, self._owner_id)

    # ==================== Stored State ====================

    async def _stored_buckets(self, *criteria) -> dict[BucketKey, PartyMedia]:
        result = await self.db.execute(select(PartyMedia).where(*criteria))
        return {(row.party_id, row.media_id): row for row in result.scalars().all()}

    async def _stored_user_totals(
        self, party_id: UUID | None, media_id: UUID | None
    ) -> dict[BucketKey, dict[UUID, UserTotal]]:
        stmt = select(BucketUserTotal)
        if party_id is not None:
            stmt = stmt.where(BucketUserTotal.party_id == party_id)
        if media_id is not None:
            stmt = stmt.where(BucketUserTotal.media_id == media_id)
        result = await self.db.execute(stmt)

        totals: dict[BucketKey, dict[UUID, UserTotal]] = defaultdict(dict)
        for row in result.scalars().all():
            totals[(row.party_id, row.media_id)][row.user_id] = UserTotal(
                total=row.total, first_bid_at=row.first_bid_at
            )
        return totals

    async def _stored_media(self, unscoped: bool, media_id: UUID | None) -> dict[UUID, Media]:
        # Media totals span every party, so a party-scoped run leaves them alone
        if not unscoped and media_id is None:
            return {}
        stmt = select(Media)
        if media_id is not None:
            stmt = stmt.where(Media.media_id == media_id)
        result = await self.db.execute(stmt)
        return {row.media_id: row for row in result.scalars().all()}

    # ==================== Reconcile ====================

    async def _reconcile_buckets(
        self,
        report: BackfillReport,
        dry_run: bool,
        stored: dict[BucketKey, PartyMedia],
        stored_user_totals: dict[BucketKey, dict[UUID, UserTotal]],
        recomputed: dict[BucketKey, BucketSnapshot],
    ) -> None:
        for key in sorted(recomputed, key=lambda k: (str(k[0]), str(k[1]))):
            snapshot = recomputed[key]
            values = bucket_values(snapshot)
            row = stored.get(key)
            cached = {name: getattr(row, name) for name in values} if row is not None else {}
            key_str = bucket_key_str(key)

            diffs = diff_fields("bucket", key_str, cached, values)
            diffs += diff_user_totals(key_str, stored_user_totals.get(key, {}), snapshot.user_totals)
            if not diffs:
                continue

            report.diffs.extend(diffs)
            if dry_run:
                continue
            await self._renew_lock()

            if row is None:
                written = await self._insert_bucket(snapshot, values)
            else:
                written = await self._write_if_unchanged(
                    PartyMedia,
                    and_(PartyMedia.party_id == key[0], PartyMedia.media_id == key[1]),
                    row.revision,
                    values,
                )
            if not written:
                report.conflicts += 1
                logger.warning(f"Bucket {key_str} changed during backfill; left for the next run")
                continue

            await self._rewrite_user_totals(snapshot)
            report.buckets_rewritten += 1
            logger.debug(f"Rewrote bucket {key_str}: {[d.field for d in diffs]}")

    async def _reconcile_media(
        self,
        report: BackfillReport,
        dry_run: bool,
        stored: dict[UUID, Media],
        rebuild: LedgerRebuild,
    ) -> None:
        for media_id in sorted(stored, key=str):
            row = stored[media_id]
            values = media_values(rebuild.media.get(media_id) or MediaTotals())
            cached = {name: getattr(row, name) for name in values}
            diffs = diff_fields("media", str(media_id), cached, values)
            if not diffs:
                continue

            report.diffs.extend(diffs)
            if dry_run:
                continue
            await self._renew_lock()

            if await self._write_if_unchanged(Media, Media.media_id == media_id, row.revision, values):
                report.media_rewritten += 1
            else:
                report.conflicts += 1
                logger.warning(f"Media {media_id} changed during backfill; left for the next run")

    async def _reconcile_parties(
        self,
        report: BackfillReport,
        dry_run: bool,
        party_id: UUID | None,
        media_id: UUID | None,
        stored_buckets: dict[BucketKey, PartyMedia],
        recomputed: dict[BucketKey, BucketSnapshot],
    ) -> None:
        stmt = select(Party).where(Party.type == PARTY_TYPE_STANDARD)
        if party_id is not None:
            stmt = stmt.where(Party.party_id == party_id)
        elif media_id is not None:
            holders = {key[0] for key in recomputed}
            if not holders:
                return
            stmt = stmt.where(Party.party_id.in_(holders))
        parties = (await self.db.execute(stmt)).scalars().all()
        if not parties:
            return

        buckets_by_party: dict[UUID, dict[UUID, BucketSnapshot]] = defaultdict(dict)
        if media_id is not None:
            # Buckets of other media in these parties are outside the scope:
            # their stored tops take part in the party max as they are
            context = await self._stored_buckets(
                PartyMedia.party_id.in_([p.party_id for p in parties]),
                PartyMedia.media_id != media_id,
            )
            for (pid, mid), row in context.items():
                buckets_by_party[pid][mid] = snapshot_from_row(row)
        for (pid, mid), snapshot in recomputed.items():
            buckets_by_party[pid][mid] = snapshot

        for party in sorted(parties, key=lambda p: str(p.party_id)):
            values = party_values(merge_party_tops(buckets_by_party[party.party_id].values()))
            cached = {name: getattr(party, name) for name in values}
            diffs = diff_fields("party", str(party.party_id), cached, values)
            if not diffs:
                continue

            report.diffs.extend(diffs)
            if dry_run:
                continue
            await self._renew_lock()

            if await self._write_if_unchanged(
                Party, Party.party_id == party.party_id, party.revision, values
            ):
                report.parties_rewritten += 1
            else:
                report.conflicts += 1
                logger.warning(f"Party {party.party_id} changed during backfill; left for the next run")

    async def _reconcile_running_totals(
        self,
        report: BackfillReport,
        dry_run: bool,
        bids: list[Bid],
        rebuild: LedgerRebuild,
    ) -> None:
        changed = 0
        for bid in bids:
            party_total, global_total = rebuild.running_totals[bid.bid_id]
            values = {
                "party_aggregate_bid_value": party_total,
                "global_aggregate_bid_value": global_total,
            }
            cached = {name: getattr(bid, name) for name in values}
            diffs = diff_fields("bid", str(bid.bid_id), cached, values)
            if not diffs:
                continue

            report.diffs.extend(diffs)
            changed += 1
            if not dry_run:
                for name, value in values.items():
                    setattr(bid, name, value)

        if not dry_run and changed:
            await self._renew_lock()
            await self.db.flush()
            report.bids_rewritten = changed

    # ==================== Writes ====================

    async def _write_if_unchanged(self, model, where, seen_revision: int, values: dict) -> bool:
        stmt = (
            update(model)
            .where(where, model.revision == seen_revision)
            .values(revision=model.revision + 1, **values)
            .returning(model.revision)
            .execution_options(synchronize_session=False)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _insert_bucket(self, snapshot: BucketSnapshot, values: dict) -> bool:
        stmt = (
            pg_insert(PartyMedia)
            .values(
                bucket_id=uuid.uuid4(),
                party_id=snapshot.party_id,
                media_id=snapshot.media_id,
                status=BUCKET_STATUS_QUEUED,
                queued_at=utcnow(),
                revision=1,
                **values,
            )
            .on_conflict_do_nothing(index_elements=["party_id", "media_id"])
            .returning(PartyMedia.bucket_id)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _rewrite_user_totals(self, snapshot: BucketSnapshot) -> None:
        await self.db.execute(
            delete(BucketUserTotal).where(
                BucketUserTotal.party_id == snapshot.party_id,
                BucketUserTotal.media_id == snapshot.media_id,
            )
        )
        if not snapshot.user_totals:
            return
        await self.db.execute(
            pg_insert(BucketUserTotal).values(
                [
                    {
                        "party_id": snapshot.party_id,
                        "media_id": snapshot.media_id,
                        "user_id": user_id,
                        "total": user_total.total,
                        "first_bid_at": user_total.first_bid_at,
                    }
                    for user_id, user_total in snapshot.user_totals.items()
                ]
            )
        )
