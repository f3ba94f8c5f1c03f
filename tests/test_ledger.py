"""Tests for the bid ledger: validation, transitions and appends."""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError

from helpers import scalar_result, scalars_result
from partybids.core.exceptions import (
    BidNotFoundError,
    BidReferenceError,
    BidValidationError,
    InvalidTransitionError,
)
from partybids.models.bid import Bid, BidScope, BidStatus
from partybids.models.party import PARTY_TYPE_GLOBAL, PARTY_TYPE_STANDARD
from partybids.services.aggregation_service import AppliedDelta
from partybids.services.ledger_service import (
    BidLedger,
    build_snapshot,
    check_transition,
    iter_bid_batches,
    scope_for_party,
    validate_amount,
)
from partybids.services.reference_resolver import ReferenceResolver


class QueryCanceled(Exception):
    sqlstate = "57014"


class ConnectionLost(Exception):
    sqlstate = "08006"


def make_user(user_id=None):
    return SimpleNamespace(user_id=user_id or uuid4(), username="dj_anna")


def make_party(party_type=PARTY_TYPE_STANDARD, party_id=None):
    return SimpleNamespace(party_id=party_id or uuid4(), name="Friday Night", type=party_type)


def make_media(media_id=None):
    return SimpleNamespace(
        media_id=media_id or uuid4(),
        title="Midnight City",
        artist="M83",
        cover_art="https://img.example/m83.jpg",
        duration_seconds=243,
    )


def make_ledger(db, party, applied=None):
    user, media = make_user(), make_media()
    resolver = MagicMock()
    resolver.resolve_bid_references = AsyncMock(return_value=(user, party, media))
    maintainer = MagicMock()
    maintainer.apply_addition = AsyncMock(return_value=applied or AppliedDelta())
    maintainer.apply_removal = AsyncMock()
    return BidLedger(db, resolver=resolver, maintainer=maintainer), user, media


def ledger_bid(status=BidStatus.ACTIVE):
    return Bid(
        bid_id=uuid4(),
        user_id=uuid4(),
        party_id=uuid4(),
        media_id=uuid4(),
        amount=250,
        status=status,
        bid_scope=BidScope.PARTY,
        created_at=datetime(2026, 3, 2, 20, 0, 0),
    )


class TestAmountValidation:
    """Test bid amount validation."""

    def test_positive_integer_accepted(self):
        assert validate_amount(1) == 1
        assert validate_amount(150000) == 150000

    @pytest.mark.parametrize("amount", [0, -5, 1.5, 100.0, "100", None, True])
    def test_rejected(self, amount):
        with pytest.raises(BidValidationError):
            validate_amount(amount)


class TestTransitions:
    """Test the bid status state machine."""

    @pytest.mark.parametrize(
        "current,requested",
        [
            (BidStatus.ACTIVE, BidStatus.PLAYED),
            (BidStatus.ACTIVE, BidStatus.VETOED),
            (BidStatus.ACTIVE, BidStatus.REFUNDED),
            (BidStatus.VETOED, BidStatus.ACTIVE),
            (BidStatus.VETOED, BidStatus.REFUNDED),
        ],
    )
    def test_allowed(self, current, requested):
        assert check_transition(uuid4(), current, requested) is True

    @pytest.mark.parametrize(
        "current,requested",
        [
            (BidStatus.PLAYED, BidStatus.ACTIVE),
            (BidStatus.PLAYED, BidStatus.REFUNDED),
            (BidStatus.REFUNDED, BidStatus.ACTIVE),
            (BidStatus.REFUNDED, BidStatus.VETOED),
            (BidStatus.VETOED, BidStatus.PLAYED),
        ],
    )
    def test_rejected(self, current, requested):
        with pytest.raises(InvalidTransitionError) as exc_info:
            check_transition(uuid4(), current, requested)

        assert exc_info.value.current == current
        assert exc_info.value.requested == requested

    def test_same_status_is_noop(self):
        assert check_transition(uuid4(), BidStatus.REFUNDED, BidStatus.REFUNDED) is False

    def test_unknown_status(self):
        with pytest.raises(BidValidationError):
            check_transition(uuid4(), BidStatus.ACTIVE, "cancelled")


class TestScopeAndSnapshot:
    """Test scope derivation and snapshot capture."""

    def test_scope_for_party(self):
        assert scope_for_party(make_party(PARTY_TYPE_STANDARD)) == BidScope.PARTY
        assert scope_for_party(make_party(PARTY_TYPE_GLOBAL)) == BidScope.GLOBAL

    def test_build_snapshot(self):
        placed_at = datetime(2026, 3, 6, 23, 15, 0)  # a Friday

        snapshot = build_snapshot(make_user(), make_party(), make_media(), placed_at)

        assert snapshot["username"] == "dj_anna"
        assert snapshot["party_name"] == "Friday Night"
        assert snapshot["party_type"] == PARTY_TYPE_STANDARD
        assert snapshot["media_title"] == "Midnight City"
        assert snapshot["media_artist"] == "M83"
        assert snapshot["media_duration"] == 243
        assert snapshot["day_of_week"] == 4
        assert snapshot["hour_of_day"] == 23


class TestAppend:
    """Test recording new bids."""

    @pytest.mark.asyncio
    async def test_party_bid(self, mock_db):
        party = make_party()
        applied = AppliedDelta(bucket_created=True, bucket_user_total=250)
        ledger, user, media = make_ledger(mock_db, party, applied)
        mock_db.execute.return_value = scalar_result(900)

        bid, result = await ledger.append(user.user_id, party.party_id, media.media_id, 250)

        assert result is applied
        assert bid.status == BidStatus.ACTIVE
        assert bid.bid_scope == BidScope.PARTY
        assert bid.amount == 250
        assert bid.username == "dj_anna"
        assert bid.media_title == "Midnight City"
        assert bid.is_initial_bid is True
        assert bid.party_aggregate_bid_value == 250
        assert bid.global_aggregate_bid_value == 900
        mock_db.add.assert_called_once_with(bid)
        ledger.maintainer.apply_addition.assert_awaited_once_with(bid)

    @pytest.mark.asyncio
    async def test_global_party_bid(self, mock_db):
        party = make_party(PARTY_TYPE_GLOBAL)
        ledger, user, media = make_ledger(mock_db, party)
        # first-on-media count, party sum, global sum
        mock_db.execute.side_effect = [scalar_result(1), scalar_result(300), scalar_result(1300)]

        bid, _ = await ledger.append(user.user_id, party.party_id, media.media_id, 300)

        assert bid.bid_scope == BidScope.GLOBAL
        assert bid.is_initial_bid is True
        assert bid.party_aggregate_bid_value == 300
        assert bid.global_aggregate_bid_value == 1300

    @pytest.mark.asyncio
    async def test_invalid_amount_looks_nothing_up(self, mock_db):
        ledger, user, media = make_ledger(mock_db, make_party())

        with pytest.raises(BidValidationError):
            await ledger.append(user.user_id, uuid4(), media.media_id, 0)

        ledger.resolver.resolve_bid_references.assert_not_awaited()
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unresolved_reference_writes_nothing(self, mock_db):
        ledger, user, media = make_ledger(mock_db, make_party())
        ledger.resolver.resolve_bid_references.side_effect = BidReferenceError("Party", "p-404")

        with pytest.raises(BidReferenceError):
            await ledger.append(user.user_id, uuid4(), media.media_id, 100)

        mock_db.add.assert_not_called()
        ledger.maintainer.apply_addition.assert_not_awaited()


class TestStatusChange:
    """Test status transitions and the deltas they apply."""

    @pytest.mark.asyncio
    async def test_refund_applies_removal(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        bid = ledger_bid()

        applied = await ledger.transition(bid, BidStatus.REFUNDED)

        assert applied is None
        assert bid.status == BidStatus.REFUNDED
        ledger.maintainer.apply_removal.assert_awaited_once_with(bid)
        ledger.maintainer.apply_addition.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unveto_applies_addition(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        bid = ledger_bid(BidStatus.VETOED)

        applied = await ledger.transition(bid, BidStatus.ACTIVE)

        assert isinstance(applied, AppliedDelta)
        ledger.maintainer.apply_addition.assert_awaited_once_with(bid)

    @pytest.mark.asyncio
    async def test_played_keeps_aggregates(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        bid = ledger_bid()

        await ledger.transition(bid, BidStatus.PLAYED)

        assert bid.status == BidStatus.PLAYED
        ledger.maintainer.apply_addition.assert_not_awaited()
        ledger.maintainer.apply_removal.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_illegal_transition_mutates_nothing(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        bid = ledger_bid(BidStatus.PLAYED)

        with pytest.raises(InvalidTransitionError):
            await ledger.transition(bid, BidStatus.ACTIVE)

        assert bid.status == BidStatus.PLAYED
        mock_db.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        bid = ledger_bid(BidStatus.REFUNDED)

        assert await ledger.transition(bid, BidStatus.REFUNDED) is None
        mock_db.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_bid(self, mock_db):
        ledger, _, _ = make_ledger(mock_db, make_party())
        mock_db.execute.return_value = scalar_result(None)

        with pytest.raises(BidNotFoundError):
            await ledger.set_status(uuid4(), BidStatus.REFUNDED)


class TestKeysetScan:
    """Test keyset-paged ledger scans."""

    @pytest.mark.asyncio
    async def test_pages_until_short_batch(self, mock_db, ids, make_bid):
        bids = [make_bid(ids.u1, ids.p1, ids.m1, 10) for _ in range(5)]
        mock_db.execute.side_effect = [scalars_result(bids[:2]), scalars_result(bids[2:4]), scalars_result(bids[4:])]

        batches = [batch async for batch in iter_bid_batches(mock_db, 2)]

        assert [len(b) for b in batches] == [2, 2, 1]
        assert mock_db.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_consumer_may_drop_rows(self, mock_db, ids, make_bid):
        bids = [make_bid(ids.u1, ids.p1, ids.m1, 10) for _ in range(2)]
        mock_db.execute.side_effect = [scalars_result(bids), scalars_result([])]

        seen = []
        async for batch in iter_bid_batches(mock_db, 2):
            seen.extend(b.bid_id for b in batch)
            batch.clear()

        assert seen == [b.bid_id for b in bids]


class TestReferenceResolver:
    """Test bounded reference lookups."""

    @pytest.mark.asyncio
    async def test_missing_reference(self, mock_db):
        resolver = ReferenceResolver(mock_db, timeout=1.0)

        with pytest.raises(BidReferenceError) as exc_info:
            await resolver.resolve_user(uuid4())

        assert exc_info.value.entity == "User"

    @pytest.mark.asyncio
    async def test_cancelled_lookup_times_out(self, mock_db):
        """Postgres cancelling the lookup (statement_timeout) is a reference error."""
        mock_db.get = AsyncMock(side_effect=DBAPIError("SELECT", {}, QueryCanceled()))
        resolver = ReferenceResolver(mock_db, timeout=0.25)

        with pytest.raises(BidReferenceError) as exc_info:
            await resolver.resolve_media(uuid4())

        assert exc_info.value.details["reason"] == "lookup timed out"
        statement, params = mock_db.execute.await_args_list[0].args
        assert "statement_timeout" in str(statement)
        assert params == {"value": "250ms"}
        # The aborted transaction is left for the caller to roll back
        mock_db.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_database_errors_propagate(self, mock_db):
        mock_db.get = AsyncMock(side_effect=DBAPIError("SELECT", {}, ConnectionLost()))
        resolver = ReferenceResolver(mock_db)

        with pytest.raises(DBAPIError):
            await resolver.resolve_user(uuid4())

    @pytest.mark.asyncio
    async def test_resolves_in_order(self, mock_db):
        user, party, media = make_user(), make_party(), make_media()
        mock_db.get = AsyncMock(side_effect=[user, party, media])
        resolver = ReferenceResolver(mock_db)

        resolved = await resolver.resolve_bid_references(user.user_id, party.party_id, media.media_id)

        assert resolved == (user, party, media)
        # One bounded window for all three lookups, then the default is restored
        statements = [str(c.args[0]) for c in mock_db.execute.await_args_list]
        assert len(statements) == 2
        assert "set_config('statement_timeout'" in statements[0]
        assert statements[1] == "SET LOCAL statement_timeout TO DEFAULT"
