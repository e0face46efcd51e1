"""Data source interface shared by the connectors."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from db_feed.config import Settings


class QueryError(Exception):
    """The traversal query failed. The source may or may not still be reachable."""

    def __init__(self, message: str, sql: str | None = None) -> None:
        super().__init__(message)
        self.sql = sql


@runtime_checkable
class DataSource(Protocol):
    """
    A queryable tabular data source.

    ``execute`` runs the configured traversal query and returns one window of
    its result as column name to value dicts, in query order. With ``param``
    set, the incremental query is run with ``param`` bound to ``:value``.
    """

    def execute(self, offset: int, limit: int, param: Any = None) -> list[dict[str, Any]]:
        ...

    def is_reachable(self) -> bool:
        ...

    def close(self) -> None:
        ...


def create_source(settings: "Settings") -> DataSource:
    """Create the data source selected by ``settings.source.type``."""
    from db_feed.config import SourceType

    if settings.source.type == SourceType.D1:
        from db_feed.connectors.d1_client import D1Source

        return D1Source.from_settings(settings)

    from db_feed.connectors.sqlite import SQLiteSource

    return SQLiteSource.from_settings(settings)
