"""Tests for the bid service unit of work and the aggregate read path."""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from helpers import compiled, first_result, rows_result, scalar_result, scalars_result
from partybids.core.exceptions import (
    BidReferenceError,
    NotFoundError,
    PartyNotFoundError,
    StaleTopComparisonError,
)
from partybids.models.bid import BidStatus
from partybids.services.aggregation import (
    BucketSnapshot,
    MediaProjection,
    PartyTops,
    TopEntry,
)
from partybids.services.aggregation_service import LAYER_BUCKET, AppliedDelta
from partybids.services.bid_service import BidService
from partybids.services.ranking_service import RankingService
from partybids.services.redis_service import RedisService

AT = datetime(2026, 3, 2, 20, 0, 0)


def party_row(party_id, is_global=False, stale=False):
    return SimpleNamespace(
        party_id=party_id,
        name="Friday Night",
        type="global" if is_global else "standard",
        is_global=is_global,
        top_bid=0,
        top_bid_user_id=None,
        top_bid_bid_id=None,
        top_bid_at=None,
        top_user_aggregate=0,
        top_user_aggregate_user_id=None,
        top_user_aggregate_at=None,
        top_user_aggregate_media_id=None,
        top_stale=stale,
    )


def bucket_row(party_id, media_id, user_id, stale=False):
    return SimpleNamespace(
        party_id=party_id,
        media_id=media_id,
        aggregate=800,
        status="queued",
        top_bid=500,
        top_bid_user_id=user_id,
        top_bid_bid_id=uuid4(),
        top_bid_at=AT,
        top_user_aggregate=500,
        top_user_aggregate_user_id=user_id,
        top_user_aggregate_at=AT,
        top_stale=stale,
    )


class TestPlaceBid:
    """Test bid placement as one unit of work."""

    @pytest.mark.asyncio
    async def test_commits_and_returns_bid(self, mock_db, ids):
        service = BidService(mock_db)
        bid = SimpleNamespace(bid_id=uuid4())

        with patch.object(service.ledger, "append", AsyncMock(return_value=(bid, AppliedDelta()))):
            result = await service.place_bid(ids.u1, ids.p1, ids.m1, 100)

        assert result is bid
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settling_raised_after_commit(self, mock_db, ids):
        """A bid whose tops did not settle is still committed."""
        service = BidService(mock_db)
        bid = SimpleNamespace(bid_id=uuid4())
        unsettled = StaleTopComparisonError(LAYER_BUCKET, (ids.p1, ids.m1), bid.bid_id)

        with patch.object(
            service.ledger, "append", AsyncMock(return_value=(bid, AppliedDelta(unsettled=unsettled)))
        ):
            with pytest.raises(StaleTopComparisonError) as exc_info:
                await service.place_bid(ids.u1, ids.p1, ids.m1, 100)

        assert exc_info.value.bid_id == bid.bid_id
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, mock_db, ids):
        service = BidService(mock_db)

        with patch.object(
            service.ledger, "append", AsyncMock(side_effect=BidReferenceError("Media", ids.m1))
        ):
            with pytest.raises(BidReferenceError):
                await service.place_bid(ids.u1, ids.p1, ids.m1, 100)

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()


class TestBucketTransitions:
    """Test played and veto for a whole bucket."""

    @pytest.mark.asyncio
    async def test_veto_moves_active_bids(self, mock_db, ids, make_bid):
        service = BidService(mock_db)
        bids = [make_bid(ids.u1, ids.p1, ids.m1, 100), make_bid(ids.u2, ids.p1, ids.m1, 200)]
        mock_db.execute.side_effect = [scalars_result(bids), first_result(SimpleNamespace())]

        with patch.object(service.ledger, "transition", AsyncMock()) as transition:
            count = await service.veto_bucket(ids.p1, ids.m1)

        assert count == 2
        assert [c.args for c in transition.await_args_list] == [
            (bids[0], BidStatus.VETOED),
            (bids[1], BidStatus.VETOED),
        ]
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_bucket(self, mock_db, ids):
        service = BidService(mock_db)
        mock_db.execute.side_effect = [scalars_result([]), first_result(None)]

        with pytest.raises(NotFoundError):
            await service.mark_bucket_played(ids.p1, ids.m1)

        mock_db.rollback.assert_awaited_once()


class TestBucketAggregates:
    """Test reading one bucket's aggregates."""

    @pytest.mark.asyncio
    async def test_unknown_party(self, mock_db, mock_redis, ids):
        service = RankingService(mock_db, RedisService(mock_redis))

        with pytest.raises(PartyNotFoundError):
            await service.get_bucket_aggregates(ids.p1, ids.m1)

    @pytest.mark.asyncio
    async def test_pair_without_bids_is_zero(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.p1)
        mock_db.execute.return_value = scalar_result(None)
        service = RankingService(mock_db, RedisService(mock_redis))

        result = await service.get_bucket_aggregates(ids.p1, ids.m1)

        assert result["aggregate"] == 0
        assert result["top_bid"] == 0
        assert result["top_bid_user_id"] is None
        assert result["stale"] is False

    @pytest.mark.asyncio
    async def test_stale_bucket_refreshed_on_read(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.p1)
        mock_db.execute.return_value = scalar_result(bucket_row(ids.p1, ids.m1, ids.u1, stale=True))
        service = RankingService(mock_db, RedisService(mock_redis))
        fresh = BucketSnapshot(
            party_id=ids.p1,
            media_id=ids.m1,
            aggregate=800,
            top_bid=TopEntry(value=300, user_id=ids.u2, at=AT),
            top_user_aggregate=TopEntry(value=300, user_id=ids.u2, at=AT),
        )

        with patch.object(service.maintainer, "refresh_bucket", AsyncMock(return_value=fresh)):
            result = await service.get_bucket_aggregates(ids.p1, ids.m1)

        assert result["top_bid"] == 300
        assert result["top_bid_user_id"] == ids.u2
        assert result["aggregate"] == 800
        assert result["stale"] is False
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_contended_bucket_served_stale(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.p1)
        mock_db.execute.return_value = scalar_result(bucket_row(ids.p1, ids.m1, ids.u1, stale=True))
        service = RankingService(mock_db, RedisService(mock_redis))

        with patch.object(
            service.maintainer,
            "refresh_bucket",
            AsyncMock(side_effect=StaleTopComparisonError(LAYER_BUCKET, "k")),
        ):
            result = await service.get_bucket_aggregates(ids.p1, ids.m1)

        assert result["stale"] is True
        assert result["top_bid"] == 500
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_global_party_projected(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.global_party, is_global=True)
        service = RankingService(mock_db, RedisService(mock_redis))
        projection = MediaProjection(
            media_id=ids.m1,
            global_aggregate=1300,
            top_bid=TopEntry(value=1000, user_id=ids.u1, at=AT),
            bid_count=2,
        )

        with patch.object(
            service.projector, "get_media_projection", AsyncMock(return_value=projection)
        ):
            result = await service.get_bucket_aggregates(ids.global_party, ids.m1)

        assert result["aggregate"] == 1300
        assert result["top_bid"] == 1000
        mock_db.execute.assert_not_awaited()


class TestPartyAggregates:
    """Test reading party-level tops."""

    @pytest.mark.asyncio
    async def test_stale_party_refreshed(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.p1, stale=True)
        mock_db.execute.return_value = scalar_result(2)
        service = RankingService(mock_db, RedisService(mock_redis))
        tops = PartyTops(
            top_bid=TopEntry(value=700, user_id=ids.u1, at=AT),
            top_user_aggregate=TopEntry(value=900, user_id=ids.u2, at=AT, ref_id=ids.m2),
        )

        with patch.object(service.maintainer, "refresh_party", AsyncMock(return_value=tops)):
            result = await service.get_party_aggregates(ids.p1)

        assert result["top_bid"] == 700
        assert result["top_user_aggregate_user_id"] == ids.u2
        assert result["top_user_aggregate_media_id"] == ids.m2
        assert result["bucket_count"] == 2
        assert result["stale"] is False

    @pytest.mark.asyncio
    async def test_global_party(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = party_row(ids.global_party, is_global=True)
        service = RankingService(mock_db, RedisService(mock_redis))
        tops = PartyTops(top_bid=TopEntry(value=300, user_id=ids.u2, at=AT))

        with patch.object(
            service.projector, "get_global_party_aggregates", AsyncMock(return_value=(tops, 4))
        ):
            result = await service.get_party_aggregates(ids.global_party)

        assert result["type"] == "global"
        assert result["top_bid"] == 300
        assert result["bucket_count"] == 4


class TestUserAggregates:
    """Test a user's totals and top bids read from the ledger."""

    @pytest.mark.asyncio
    async def test_totals_per_party_and_overall(self, mock_db, mock_redis, ids, make_bid):
        mock_db.get.return_value = SimpleNamespace(user_id=ids.u1)
        in_p1 = make_bid(ids.u1, ids.p1, ids.m1, 500)
        in_p2 = make_bid(ids.u1, ids.p2, ids.m2, 1200)
        mock_db.execute.side_effect = [
            rows_result([(ids.p1, 800, 2), (ids.p2, 1200, 1)]),
            scalars_result([in_p1, in_p2]),
        ]
        service = RankingService(mock_db, RedisService(mock_redis))

        result = await service.get_user_aggregates(ids.u1)

        assert result["total"] == 2000
        assert result["bid_count"] == 3
        assert result["top_bid"] == 1200
        assert result["top_bid_bid_id"] == in_p2.bid_id
        assert result["top_bid_party_id"] == ids.p2
        assert [entry["party_id"] for entry in result["parties"]] == [ids.p2, ids.p1]
        assert result["parties"][1]["total"] == 800
        assert result["parties"][1]["top_bid"] == 500
        assert result["parties"][1]["top_bid_media_id"] == ids.m1

        grouped, picked = (call.args[0] for call in mock_db.execute.await_args_list)
        assert "GROUP BY bids.party_id" in compiled(grouped)
        assert "DISTINCT ON (bids.party_id)" in compiled(picked)
        assert "bids.status IN" in compiled(picked)

    @pytest.mark.asyncio
    async def test_equal_tops_go_to_the_earliest_bid(self, mock_db, mock_redis, ids, make_bid):
        mock_db.get.return_value = SimpleNamespace(user_id=ids.u1)
        earlier = make_bid(ids.u1, ids.p1, ids.m1, 500)
        later = make_bid(ids.u1, ids.p2, ids.m2, 500)
        mock_db.execute.side_effect = [
            rows_result([(ids.p1, 500, 1), (ids.p2, 500, 1)]),
            scalars_result([later, earlier]),
        ]
        service = RankingService(mock_db, RedisService(mock_redis))

        result = await service.get_user_aggregates(ids.u1)

        assert result["top_bid_bid_id"] == earlier.bid_id
        assert result["top_bid_party_id"] == ids.p1

    @pytest.mark.asyncio
    async def test_party_filter_narrows_the_list(self, mock_db, mock_redis, ids, make_bid):
        mock_db.get.side_effect = [SimpleNamespace(user_id=ids.u1), party_row(ids.p1)]
        mock_db.execute.side_effect = [
            rows_result([(ids.p1, 800, 2), (ids.p2, 1200, 1)]),
            scalars_result(
                [make_bid(ids.u1, ids.p1, ids.m1, 500), make_bid(ids.u1, ids.p2, ids.m2, 1200)]
            ),
        ]
        service = RankingService(mock_db, RedisService(mock_redis))

        result = await service.get_user_aggregates(ids.u1, party_id=ids.p1)

        assert [entry["party_id"] for entry in result["parties"]] == [ids.p1]
        assert result["total"] == 2000
        assert result["top_bid_party_id"] == ids.p2

    @pytest.mark.asyncio
    async def test_user_without_bids(self, mock_db, mock_redis, ids):
        mock_db.get.return_value = SimpleNamespace(user_id=ids.u3)
        mock_db.execute.side_effect = [rows_result([]), scalars_result([])]
        service = RankingService(mock_db, RedisService(mock_redis))

        result = await service.get_user_aggregates(ids.u3)

        assert result["total"] == 0
        assert result["bid_count"] == 0
        assert result["top_bid"] == 0
        assert result["top_bid_party_id"] is None
        assert result["parties"] == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, mock_db, mock_redis, ids):
        service = RankingService(mock_db, RedisService(mock_redis))

        with pytest.raises(NotFoundError):
            await service.get_user_aggregates(ids.u1)

        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_party_filter(self, mock_db, mock_redis, ids):
        mock_db.get.side_effect = [SimpleNamespace(user_id=ids.u1), None]
        service = RankingService(mock_db, RedisService(mock_redis))

        with pytest.raises(PartyNotFoundError):
            await service.get_user_aggregates(ids.u1, party_id=ids.p2)
