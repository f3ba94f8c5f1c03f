"""Pytest configuration and fixtures for testing."""

from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Callable
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from helpers import async_iter
from partybids.models.bid import BidScope, BidStatus
from partybids.services.reference_resolver import clear_global_party_cache

BASE_TIME = datetime(2026, 3, 2, 20, 0, 0)  # a Monday


@pytest.fixture(autouse=True)
def _reset_global_party_cache():
    clear_global_party_cache()
    yield
    clear_global_party_cache()


# Mock Redis client fixture
@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client."""
    redis = AsyncMock()

    # Mock common Redis operations
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.setex = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.scan_iter = MagicMock(side_effect=lambda match=None: async_iter([]))

    # Lua scripts: register_script is synchronous and returns an awaitable script
    redis.script_result = AsyncMock(return_value=1)
    redis.register_script = MagicMock(return_value=redis.script_result)

    return redis


# Mock database session fixture
@pytest.fixture
def mock_db() -> MagicMock:
    """Create a mock AsyncSession."""
    db = MagicMock()
    db.execute = AsyncMock()
    db.get = AsyncMock(return_value=None)
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.delete = AsyncMock()
    db.add = MagicMock()
    return db


@pytest.fixture
def ids() -> SimpleNamespace:
    """A fixed cast of users, parties and media."""
    return SimpleNamespace(
        u1=uuid4(),
        u2=uuid4(),
        u3=uuid4(),
        p1=uuid4(),
        p2=uuid4(),
        global_party=uuid4(),
        m1=uuid4(),
        m2=uuid4(),
    )


@pytest.fixture
def make_bid() -> Callable[..., SimpleNamespace]:
    """Factory for ledger rows; each call is one second after the previous."""
    counter = {"n": 0}

    def _make(
        user_id,
        party_id,
        media_id,
        amount,
        status=BidStatus.ACTIVE,
        scope=BidScope.PARTY,
        created_at=None,
        **extra,
    ) -> SimpleNamespace:
        counter["n"] += 1
        fields = {
            "bid_id": uuid4(),
            "user_id": user_id,
            "party_id": party_id,
            "media_id": media_id,
            "amount": amount,
            "status": status,
            "bid_scope": scope,
            "created_at": created_at or BASE_TIME + timedelta(seconds=counter["n"]),
            "username": None,
            "party_name": None,
            "party_type": None,
            "media_title": None,
            "media_artist": None,
            "media_cover_art": None,
            "media_duration": None,
            "day_of_week": None,
            "hour_of_day": None,
            "party_aggregate_bid_value": 0,
            "global_aggregate_bid_value": 0,
        }
        fields.update(extra)
        return SimpleNamespace(**fields)

    return _make
