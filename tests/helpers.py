"""Small builders for mocked SQLAlchemy results and Redis iterators."""

from unittest.mock import MagicMock

from sqlalchemy.dialects import postgresql


def async_iter(items):
    """Async iterator over ``items`` (stands in for redis scan_iter)."""

    async def _gen():
        for item in items:
            yield item

    return _gen()


def scalar_result(value) -> MagicMock:
    """Result whose scalar accessors return ``value``."""
    result = MagicMock()
    result.scalar_one.return_value = value
    result.scalar_one_or_none.return_value = value
    return result


def scalars_result(rows) -> MagicMock:
    """Result whose ``scalars().all()`` returns ``rows``."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(rows)
    return result


def first_result(row) -> MagicMock:
    """Result whose ``first()`` returns ``row`` (None for no match)."""
    result = MagicMock()
    result.first.return_value = row
    return result


def rows_result(rows) -> MagicMock:
    """Result whose ``all()`` returns ``rows`` (multi-column selects)."""
    result = MagicMock()
    result.all.return_value = list(rows)
    return result


def compiled(stmt) -> str:
    """SQL text of a statement as Postgres would receive it."""
    return str(stmt.compile(dialect=postgresql.dialect()))
