"""Tests for the aggregation maintainer's deltas and top compare-and-set."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from helpers import compiled, first_result
from partybids.core.exceptions import StaleTopComparisonError
from partybids.models.bid import BidScope, BidStatus
from partybids.models.bucket import PartyMedia
from partybids.models.party import Party
from partybids.services.aggregation import EMPTY_TOP, UserTotal, bid_entry
from partybids.services.aggregation_service import (
    LAYER_BUCKET,
    LAYER_PARTY,
    AggregationMaintainer,
    BidFacts,
    TopState,
    top_values,
)


def top_state(revision=4, stale=False, top_bid=EMPTY_TOP, top_user=EMPTY_TOP) -> TopState:
    return TopState(revision=revision, stale=stale, top_bid=top_bid, top_user_aggregate=top_user)


class TestTopCompareAndSet:
    """Test bounded compare-and-set on top fields."""

    @pytest.mark.asyncio
    async def test_new_holder_written_at_seen_revision(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db, max_retries=3)
        candidate = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 500))

        with patch.object(maintainer, "_load_tops", AsyncMock(return_value=top_state(revision=7))), \
                patch.object(maintainer, "_compare_and_set", AsyncMock(return_value=True)) as cas:
            await maintainer._offer_tops(LAYER_BUCKET, "k", PartyMedia, None, candidate, EMPTY_TOP)

        cas.assert_awaited_once()
        _, _, seen_revision, values = cas.await_args.args
        assert seen_revision == 7
        assert values["top_bid"] == 500
        assert values["top_bid_user_id"] == ids.u1
        assert "top_user_aggregate" not in values

    @pytest.mark.asyncio
    async def test_lost_race_is_retried(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db, max_retries=3)
        candidate = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 500))
        states = [top_state(revision=1), top_state(revision=2)]

        with patch.object(maintainer, "_load_tops", AsyncMock(side_effect=states)), \
                patch.object(maintainer, "_compare_and_set", AsyncMock(side_effect=[False, True])) as cas, \
                patch.object(maintainer, "_mark_stale", AsyncMock()) as mark_stale:
            await maintainer._offer_tops(LAYER_BUCKET, "k", PartyMedia, None, candidate, EMPTY_TOP)

        assert cas.await_count == 2
        assert cas.await_args_list[1].args[2] == 2
        mark_stale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_retries_flag_stale(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db, max_retries=2)
        candidate = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 500))

        with patch.object(maintainer, "_load_tops", AsyncMock(return_value=top_state())), \
                patch.object(maintainer, "_compare_and_set", AsyncMock(return_value=False)) as cas, \
                patch.object(maintainer, "_mark_stale", AsyncMock()) as mark_stale:
            with pytest.raises(StaleTopComparisonError) as exc_info:
                await maintainer._offer_tops(LAYER_PARTY, ids.p1, Party, None, candidate, EMPTY_TOP)

        assert cas.await_count == 3
        mark_stale.assert_awaited_once()
        assert exc_info.value.layer == LAYER_PARTY

    @pytest.mark.asyncio
    async def test_weaker_candidate_writes_nothing(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        holder = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 500))
        tied_later = bid_entry(make_bid(ids.u2, ids.p1, ids.m1, 500))

        with patch.object(maintainer, "_load_tops", AsyncMock(return_value=top_state(top_bid=holder))), \
                patch.object(maintainer, "_compare_and_set", AsyncMock()) as cas:
            await maintainer._offer_tops(LAYER_BUCKET, "k", PartyMedia, None, tied_later, EMPTY_TOP)

        cas.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_row_waits_for_recompute(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        candidate = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 10_000))

        with patch.object(maintainer, "_load_tops", AsyncMock(return_value=top_state(stale=True))), \
                patch.object(maintainer, "_compare_and_set", AsyncMock()) as cas:
            await maintainer._offer_tops(LAYER_BUCKET, "k", PartyMedia, None, candidate, EMPTY_TOP)

        cas.assert_not_awaited()


class TestForwardDelta:
    """Test applying a new counted bid."""

    @pytest.mark.asyncio
    async def test_party_bid_touches_every_layer(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 400)
        total = UserTotal(total=700, first_bid_at=bid.created_at)

        with patch.object(maintainer, "_add_to_bucket", AsyncMock(return_value=False)), \
                patch.object(maintainer, "_add_to_user_total", AsyncMock(return_value=total)), \
                patch.object(maintainer, "_shift_media", AsyncMock()) as shift_media, \
                patch.object(maintainer, "_offer_tops", AsyncMock()) as offer:
            applied = await maintainer.apply_addition(bid)

        assert applied.bucket_created is False
        assert applied.bucket_user_total == 700
        assert applied.unsettled is None
        shift_media.assert_awaited_once_with(ids.m1, 400, global_scope=False)
        assert [c.args[0] for c in offer.await_args_list] == [LAYER_BUCKET, LAYER_PARTY]
        # The bidder's whole bucket total is the user candidate
        assert offer.await_args_list[0].args[5].value == 700
        assert offer.await_args_list[1].args[5].ref_id == ids.m1

    @pytest.mark.asyncio
    async def test_global_scope_bid_touches_media_only(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.global_party, ids.m1, 300, scope=BidScope.GLOBAL)

        with patch.object(maintainer, "_add_to_bucket", AsyncMock()) as add_to_bucket, \
                patch.object(maintainer, "_shift_media", AsyncMock()) as shift_media:
            applied = await maintainer.apply_addition(bid)

        add_to_bucket.assert_not_awaited()
        shift_media.assert_awaited_once_with(ids.m1, 300, global_scope=True)
        assert applied.bucket_user_total is None

    @pytest.mark.asyncio
    async def test_unsettled_tops_are_returned(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 400)
        total = UserTotal(total=400, first_bid_at=bid.created_at)
        offer = AsyncMock(side_effect=[StaleTopComparisonError(LAYER_BUCKET, "k"), None])

        with patch.object(maintainer, "_add_to_bucket", AsyncMock(return_value=True)), \
                patch.object(maintainer, "_add_to_user_total", AsyncMock(return_value=total)), \
                patch.object(maintainer, "_shift_media", AsyncMock()), \
                patch.object(maintainer, "_offer_tops", offer):
            applied = await maintainer.apply_addition(bid)

        # Party layer is still offered after the bucket gave up
        assert offer.await_count == 2
        assert applied.bucket_created is True
        assert isinstance(applied.unsettled, StaleTopComparisonError)
        assert applied.unsettled.bid_id == bid.bid_id
        assert applied.unsettled.layer == LAYER_BUCKET


class TestInverseDelta:
    """Test removing a bid's contribution."""

    @pytest.mark.asyncio
    async def test_removal_of_party_bid(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 250, status=BidStatus.REFUNDED)

        with patch.object(maintainer, "_remove_from_bucket", AsyncMock()) as remove, \
                patch.object(maintainer, "_shift_media", AsyncMock()) as shift_media, \
                patch.object(maintainer, "_flag_party_if_holder", AsyncMock()) as flag_party:
            await maintainer.apply_removal(bid)

        remove.assert_awaited_once_with(BidFacts.from_bid(bid))
        shift_media.assert_awaited_once_with(ids.m1, -250, global_scope=False)
        flag_party.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_removal_of_global_scope_bid(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.global_party, ids.m1, 300, scope=BidScope.GLOBAL)

        with patch.object(maintainer, "_remove_from_bucket", AsyncMock()) as remove, \
                patch.object(maintainer, "_shift_media", AsyncMock()) as shift_media:
            await maintainer.apply_removal(bid)

        remove.assert_not_awaited()
        shift_media.assert_awaited_once_with(ids.m1, -300, global_scope=True)

    @pytest.mark.asyncio
    async def test_removing_top_holder_flags_bucket(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 900)
        mock_db.execute.return_value = first_result(
            SimpleNamespace(top_bid_bid_id=bid.bid_id, top_user_aggregate_user_id=ids.u2)
        )

        with patch.object(maintainer, "_recompute_user_total", AsyncMock()) as recompute, \
                patch.object(maintainer, "_mark_stale", AsyncMock()) as mark_stale:
            await maintainer._remove_from_bucket(BidFacts.from_bid(bid))

        recompute.assert_awaited_once_with(ids.p1, ids.m1, ids.u1)
        mark_stale.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_removing_non_holder_keeps_tops(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u3, ids.p1, ids.m1, 100)
        mock_db.execute.return_value = first_result(
            SimpleNamespace(top_bid_bid_id=None, top_user_aggregate_user_id=ids.u2)
        )

        with patch.object(maintainer, "_recompute_user_total", AsyncMock()), \
                patch.object(maintainer, "_mark_stale", AsyncMock()) as mark_stale:
            await maintainer._remove_from_bucket(BidFacts.from_bid(bid))

        mark_stale.assert_not_awaited()


class TestRehome:
    """Test moving a bid's contribution to the Global Party."""

    @pytest.mark.asyncio
    async def test_party_bid_moves_to_global_scope(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 500)

        with patch.object(maintainer, "_remove_from_bucket", AsyncMock()) as remove, \
                patch.object(maintainer, "_flag_party_if_holder", AsyncMock()) as flag_party:
            await maintainer.apply_rehome(bid, BidScope.GLOBAL)

        remove.assert_awaited_once()
        flag_party.assert_awaited_once()
        mock_db.execute.assert_awaited_once()

        # The media total already counts the bid: only its global-scope share moves
        stmt = mock_db.execute.await_args.args[0]
        set_clause = compiled(stmt).split(" WHERE ")[0]
        assert set_clause.startswith("UPDATE media SET ")
        assigned = {
            part.split("=")[0].strip()
            for part in set_clause[len("UPDATE media SET "):].split(", ")
        }
        assert assigned == {"global_scope_aggregate", "revision"}
        assert 500 in stmt.compile().params.values()

    @pytest.mark.asyncio
    async def test_global_bid_keeps_its_split(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.global_party, ids.m1, 500, scope=BidScope.GLOBAL)

        with patch.object(maintainer, "_remove_from_bucket", AsyncMock()) as remove:
            await maintainer.apply_rehome(bid, BidScope.GLOBAL)

        remove.assert_not_awaited()
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_non_counted_bid_moves_nothing(self, mock_db, ids, make_bid):
        maintainer = AggregationMaintainer(mock_db)
        bid = make_bid(ids.u1, ids.p1, ids.m1, 500, status=BidStatus.VETOED)

        with patch.object(maintainer, "_remove_from_bucket", AsyncMock()) as remove:
            await maintainer.apply_rehome(bid, BidScope.GLOBAL)

        remove.assert_not_awaited()
        mock_db.execute.assert_not_awaited()


class TestTopValues:
    """Test column values for top holders."""

    def test_party_level_includes_media(self, ids, make_bid):
        bid = bid_entry(make_bid(ids.u1, ids.p1, ids.m1, 300))
        user = SimpleNamespace(value=600, user_id=ids.u1, at=bid.at, ref_id=ids.m1)

        values = top_values(bid, user, party_level=True)

        assert values["top_bid_bid_id"] == bid.ref_id
        assert values["top_user_aggregate"] == 600
        assert values["top_user_aggregate_media_id"] == ids.m1

    def test_none_leaves_fields_alone(self):
        assert top_values(None, None, party_level=True) == {}
