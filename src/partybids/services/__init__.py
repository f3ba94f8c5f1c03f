"""Business logic services."""

from partybids.services.aggregation_service import AggregationMaintainer
from partybids.services.backfill_service import BackfillEngine
from partybids.services.bid_service import BidService
from partybids.services.global_view_service import GlobalViewProjector
from partybids.services.ledger_service import BidLedger
from partybids.services.ranking_service import RankingService
from partybids.services.redis_service import RedisService
from partybids.services.reference_resolver import ReferenceResolver
from partybids.services.sweep_service import ReferentialIntegritySweeper

__all__ = [
    "AggregationMaintainer",
    "BackfillEngine",
    "BidLedger",
    "BidService",
    "GlobalViewProjector",
    "RankingService",
    "RedisService",
    "ReferenceResolver",
    "ReferentialIntegritySweeper",
]
