"""
Batch Scanner.

Reads the traversal query one window at a time and tells a failed query on
a healthy source apart from a source that is gone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from db_feed.connectors.base import DataSource, QueryError

logger = logging.getLogger(__name__)


class SourceUnavailableError(Exception):
    """The data source cannot be reached. Traversal must stop."""


@dataclass
class ScanBatch:
    """One window of rows read at ``offset``."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    offset: int = 0
    transient: bool = False

    @property
    def exhausted(self) -> bool:
        return not self.rows

    def __len__(self) -> int:
        return len(self.rows)


class BatchScanner:
    """
    Fetches rows from a data source in batches.

    Each query fetches ``batch_hint * prefetch_factor`` rows, so one query
    usually fills several consumer batches. The cursor is owned by the
    caller, who advances it by ``len(batch.rows)``.

    Example:
        scanner = BatchScanner(source, batch_hint=100)
        batch = scanner.next_batch(cursor)
        cursor = batch.offset + len(batch.rows)
    """

    def __init__(self, source: DataSource, batch_hint: int, prefetch_factor: int = 3) -> None:
        if batch_hint < 1:
            raise ValueError("batch_hint must be at least 1")
        self.source = source
        self.batch_hint = batch_hint
        self.prefetch_factor = prefetch_factor

    @property
    def batch_size(self) -> int:
        return self.batch_hint * self.prefetch_factor

    def next_batch(
        self,
        cursor: int,
        batch_size: int | None = None,
        param: Any = None,
    ) -> ScanBatch:
        """
        Fetch the rows at ``cursor``.

        A failed query on a reachable source returns an empty batch marked
        ``transient``; the caller treats it like the end of the data.

        Raises:
            SourceUnavailableError: The query failed and the source is unreachable
        """
        size = batch_size or self.batch_size
        try:
            rows = self.source.execute(cursor, size, param)
        except QueryError as e:
            try:
                reachable = self.source.is_reachable()
            except Exception as probe_error:
                raise SourceUnavailableError(
                    f"Data source probe failed: {probe_error}"
                ) from e
            if not reachable:
                raise SourceUnavailableError(f"Data source unreachable: {e}") from e
            logger.warning("Query failed at offset %d; ending pass early: %s", cursor, e)
            return ScanBatch(rows=[], offset=cursor, transient=True)

        logger.debug("Fetched %d rows at offset %d", len(rows), cursor)
        return ScanBatch(rows=rows, offset=cursor)
