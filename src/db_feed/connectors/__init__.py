"""Data sources for DB Feed."""

from db_feed.connectors.base import DataSource, QueryError, create_source
from db_feed.connectors.d1_client import D1Client, D1Error, D1Source
from db_feed.connectors.sqlite import SQLiteSource

__all__ = [
    "DataSource",
    "QueryError",
    "create_source",
    "SQLiteSource",
    "D1Client",
    "D1Error",
    "D1Source",
]
