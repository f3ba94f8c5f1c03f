"""Error taxonomy of the bid aggregation engine.

Every error carries a stable ``code`` so the HTTP layer (and scripts) can
report it without string matching on messages.
"""

from typing import Any, Dict, Optional
from uuid import UUID


class BidEngineError(Exception):
    """Base class for all engine errors."""

    code = "BID_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class BidValidationError(BidEngineError):
    """Bad input rejected before any write (e.g. non-positive amount)."""

    code = "VALIDATION_ERROR"


class BidReferenceError(BidEngineError):
    """A user, party or media identifier could not be resolved at call time."""

    code = "REFERENCE_ERROR"

    def __init__(self, entity: str, entity_id: Any, reason: str = "not found"):
        super().__init__(
            f"{entity} {entity_id} could not be resolved: {reason}",
            {"entity": entity, "id": str(entity_id), "reason": reason},
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(BidEngineError):
    """Illegal bid status change. Nothing is mutated."""

    code = "INVALID_TRANSITION"

    def __init__(self, bid_id: UUID, current: str, requested: str):
        super().__init__(
            f"Bid {bid_id} cannot move from {current} to {requested}",
            {"bid_id": str(bid_id), "current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class NotFoundError(BidEngineError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(
            f"{entity} {entity_id} not found",
            {"entity": entity, "id": str(entity_id)},
        )
        self.entity = entity
        self.entity_id = entity_id


class BidNotFoundError(NotFoundError):
    def __init__(self, bid_id: Any):
        super().__init__("Bid", bid_id)


class PartyNotFoundError(NotFoundError):
    def __init__(self, party_id: Any):
        super().__init__("Party", party_id)


class StaleTopComparisonError(BidEngineError):
    """A top-field compare-and-set lost against a concurrent writer.

    Raised internally and retried by the maintainer. When it escapes the
    maintainer the bid is already recorded and ``bid_id`` is set; the affected
    cache rows are flagged stale and settle on the next read or drift repair.
    """

    code = "TOP_COMPARISON_STALE"

    def __init__(self, layer: str, key: Any, bid_id: Optional[UUID] = None):
        super().__init__(
            f"Top comparison on {layer} {key} kept losing to concurrent writers",
            {"layer": layer, "key": str(key)},
        )
        self.layer = layer
        self.key = key
        self.bid_id = bid_id


class MaintenanceLockError(BidEngineError):
    """Another sweeper/backfill run currently holds the maintenance lock."""

    code = "MAINTENANCE_LOCKED"
