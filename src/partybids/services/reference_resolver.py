"""Resolution of user/party/media identifiers with bounded lookups."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from cachetools import TTLCache
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from partybids.core.config import settings
from partybids.core.exceptions import BidReferenceError
from partybids.models.media import Media
from partybids.models.party import PARTY_TYPE_GLOBAL, Party
from partybids.models.user import User

logger = logging.getLogger(__name__)

# SQLSTATE query_canceled, raised when statement_timeout elapses
QUERY_CANCELED = "57014"

# The Global Party is found by its type, never by a fixed id. The id found
# by the last query is memoised briefly to keep it off the bid hot path.
_global_party_cache: TTLCache = TTLCache(maxsize=1, ttl=settings.GLOBAL_PARTY_CACHE_TTL)
_GLOBAL_PARTY_KEY = "global_party_id"


def clear_global_party_cache() -> None:
    _global_party_cache.clear()


def is_statement_timeout(exc: DBAPIError) -> bool:
    orig = exc.orig
    return QUERY_CANCELED in (getattr(orig, "sqlstate", None), getattr(orig, "pgcode", None))


class ReferenceResolver:
    """Looks up the entities a bid references.

    Every lookup is bounded by ``REFERENCE_LOOKUP_TIMEOUT`` through a
    transaction-local ``statement_timeout``, so Postgres cancels a slow
    query itself and the connection stays usable. A miss or a timeout
    surfaces as ``BidReferenceError`` and is never retried here.
    """

    def __init__(self, db: AsyncSession, timeout: float | None = None):
        self.db = db
        self.timeout = timeout if timeout is not None else settings.REFERENCE_LOOKUP_TIMEOUT

    @asynccontextmanager
    async def _lookup_timeout(self) -> AsyncIterator[None]:
        await self.db.execute(
            text("SELECT set_config('statement_timeout', :value, true)"),
            {"value": f"{int(self.timeout * 1000)}ms"},
        )
        # Not restored on error: a cancelled statement aborts the transaction anyway
        yield
        await self.db.execute(text("SET LOCAL statement_timeout TO DEFAULT"))

    async def _lookup(self, entity: str, model, entity_id: UUID):
        try:
            found = await self.db.get(model, entity_id)
        except DBAPIError as exc:
            if not is_statement_timeout(exc):
                raise
            logger.warning(f"{entity} lookup for {entity_id} timed out after {self.timeout}s")
            raise BidReferenceError(entity, entity_id, "lookup timed out") from exc
        if found is None:
            raise BidReferenceError(entity, entity_id)
        return found

    async def resolve_user(self, user_id: UUID) -> User:
        async with self._lookup_timeout():
            return await self._lookup("User", User, user_id)

    async def resolve_party(self, party_id: UUID) -> Party:
        async with self._lookup_timeout():
            return await self._lookup("Party", Party, party_id)

    async def resolve_media(self, media_id: UUID) -> Media:
        async with self._lookup_timeout():
            return await self._lookup("Media", Media, media_id)

    async def resolve_bid_references(
        self, user_id: UUID, party_id: UUID, media_id: UUID
    ) -> tuple[User, Party, Media]:
        """Resolve all three references of a new bid, in order."""
        async with self._lookup_timeout():
            user = await self._lookup("User", User, user_id)
            party = await self._lookup("Party", Party, party_id)
            media = await self._lookup("Media", Media, media_id)
        return user, party, media

    async def get_global_party(self) -> Party | None:
        """Find the Global Party by type. None when the deployment has none."""
        cached_id = _global_party_cache.get(_GLOBAL_PARTY_KEY)
        if cached_id is not None:
            party = await self.db.get(Party, cached_id)
            if party is not None and party.type == PARTY_TYPE_GLOBAL:
                return party
            _global_party_cache.pop(_GLOBAL_PARTY_KEY, None)

        result = await self.db.execute(
            select(Party)
            .where(Party.type == PARTY_TYPE_GLOBAL)
            .order_by(Party.created_at, Party.party_id)
            .limit(1)
        )
        party = result.scalar_one_or_none()
        if party is not None:
            _global_party_cache[_GLOBAL_PARTY_KEY] = party.party_id
        return party
