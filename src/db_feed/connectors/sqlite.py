"""
SQLite Data Source.

Runs the traversal query against a local SQLite database with:
- Read-only URI connections
- Windowed reads (LIMIT/OFFSET over the wrapped query)
- An incremental mode binding the last seen key as ``:value``
- Schema introspection for the CLI
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generator

from db_feed.connectors.base import QueryError

if TYPE_CHECKING:
    from db_feed.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class ColumnInfo:
    """Information about a table column."""

    name: str
    type: str
    notnull: bool
    is_primary_key: bool


@dataclass
class TableInfo:
    """Information about a database table."""

    name: str
    columns: list[ColumnInfo] = field(default_factory=list)
    row_count: int = 0

    @property
    def primary_keys(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]


class SQLiteSource:
    """
    Data source backed by a SQLite database file.

    The configured query is wrapped so the database does the windowing::

        SELECT * FROM (<query>) LIMIT ? OFFSET ?

    The query should carry an ORDER BY that gives a stable order.

    Example:
        source = SQLiteSource(
            Path("inventory.db"),
            query="SELECT * FROM items ORDER BY id",
        )
        rows = source.execute(offset=0, limit=300)
    """

    def __init__(
        self,
        path: Path | str,
        query: str = "",
        incremental_query: str | None = None,
        timeout: float = 30.0,
        readonly: bool = True,
    ) -> None:
        """
        Initialize SQLite source.

        Args:
            path: Path to local SQLite database file
            query: Traversal query
            incremental_query: Query selecting rows with a key above ``:value``
            timeout: Seconds to wait on a locked database
            readonly: Open in read-only mode
        """
        self.path = Path(path)
        self.query = query.strip().rstrip(";")
        self.incremental_query = (incremental_query or "").strip().rstrip(";") or None
        self.timeout = timeout
        self.readonly = readonly
        self._connection: sqlite3.Connection | None = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "SQLiteSource":
        src = settings.source
        if src.sqlite_path is None:
            raise ValueError("source.sqlite_path is required for the sqlite source")
        return cls(
            src.sqlite_path,
            query=src.query,
            incremental_query=src.incremental_query,
            timeout=src.timeout_seconds,
        )

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection; a failed connection is dropped."""
        if self._connection is None:
            self._connection = self._create_connection()

        try:
            yield self._connection
        except sqlite3.Error:
            self.close()
            raise

    def _create_connection(self) -> sqlite3.Connection:
        """Create a new database connection."""
        if not self.path.exists():
            raise sqlite3.OperationalError(f"Database not found: {self.path}")

        uri = f"file:{self.path}"
        if self.readonly:
            uri += "?mode=ro"

        conn = sqlite3.connect(
            uri,
            uri=True,
            check_same_thread=False,
            timeout=self.timeout,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA cache_size=-64000")  # 64MB cache
        conn.execute("PRAGMA temp_store=MEMORY")
        return conn

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            try:
                self._connection.close()
            finally:
                self._connection = None

    def __enter__(self) -> "SQLiteSource":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def execute(self, offset: int, limit: int, param: Any = None) -> list[dict[str, Any]]:
        """
        Fetch one window of the traversal query.

        Args:
            offset: Rows to skip
            limit: Maximum rows to return
            param: Value bound to ``:value`` in the incremental query

        Returns:
            Rows as ordered column name to value dicts

        Raises:
            QueryError: The query failed
        """
        if param is not None and self.incremental_query:
            sql = f"SELECT * FROM ({self.incremental_query}) LIMIT :limit OFFSET :offset"
            params: dict[str, Any] | tuple[Any, ...] = {
                "value": param,
                "limit": limit,
                "offset": offset,
            }
        else:
            if not self.query:
                raise QueryError("No traversal query configured")
            sql = f"SELECT * FROM ({self.query}) LIMIT ? OFFSET ?"
            params = (limit, offset)

        try:
            with self.connection() as conn:
                cursor = conn.execute(sql, params)
                columns = [d[0] for d in cursor.description or ()]
                return [dict(zip(columns, tuple(row))) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise QueryError(f"Query failed: {e}", sql) from e

    def is_reachable(self) -> bool:
        """Probe the database with ``SELECT 1``."""
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.debug("SQLite probe failed: %s", e)
            return False

    def get_tables(self) -> list[TableInfo]:
        """Get list of all tables with their columns and row counts."""
        tables: list[TableInfo] = []

        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT name FROM sqlite_master
                WHERE type = 'table'
                AND name NOT LIKE 'sqlite_%'
                ORDER BY name
                """
            )
            for row in cursor.fetchall():
                name = row["name"]
                columns = [
                    ColumnInfo(
                        name=col["name"],
                        type=col["type"],
                        notnull=bool(col["notnull"]),
                        is_primary_key=bool(col["pk"]),
                    )
                    for col in conn.execute(f'PRAGMA table_info("{name}")')
                ]
                tables.append(
                    TableInfo(name=name, columns=columns, row_count=self.get_row_count(name))
                )

        return tables

    def get_row_count(self, table: str) -> int:
        """Get the row count for a table."""
        with self.connection() as conn:
            cursor = conn.execute(f'SELECT COUNT(*) as count FROM "{table}"')
            row = cursor.fetchone()
            return row["count"] if row else 0
