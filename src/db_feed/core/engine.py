"""
Traversal Engine - Main orchestration for a traversal.

Coordinates all components to feed one data source to the consumer:
- Batch scanner for windowed reads of the traversal query
- Record builder for turning rows into records
- Snapshot diff for change detection
- Checkpoint manager for resume/recovery
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from db_feed.config import Settings
from db_feed.connectors.base import DataSource, create_source
from db_feed.core.builder import Record, RecordBuilder, RecordBuildError, create_builder
from db_feed.core.checkpoint import CheckpointManager, TraversalState, resume
from db_feed.core.docid import ValueOrdering, compare_docids, encode_docid
from db_feed.core.scanner import BatchScanner
from db_feed.core.snapshot import ChangeKind, SnapshotDiff
from db_feed.utils.logger import log_event

logger = logging.getLogger(__name__)


@dataclass
class TraversalStats:
    """Statistics for a traversal."""

    rows_scanned: int = 0
    added: int = 0
    changed: int = 0
    unchanged: int = 0
    deleted: int = 0
    skipped: int = 0
    transient_failures: int = 0
    batches: int = 0
    records_sent: int = 0
    passes_completed: int = 0
    start_time: float = 0.0
    end_time: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def rows_per_second(self) -> float:
        """Processing rate."""
        duration = self.duration_seconds
        if duration > 0:
            return self.rows_scanned / duration
        return 0.0

    @property
    def records_queued(self) -> int:
        return self.added + self.changed + self.deleted


# Callback types
ProgressCallback = Callable[[TraversalStats], None]
RecordCallback = Callable[[Record], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedBatch:
    """
    A batch of records for the consumer.

    Iterating hands records out one at a time; each one moves from the
    pending queue to the in-flight list. ``checkpoint()`` saves the state
    and returns the token the consumer passes to ``resume_traversal``.
    """

    def __init__(self, engine: "TraversalEngine", limit: int) -> None:
        self._engine = engine
        self._limit = limit
        self._handed_out = 0

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        record = self.next_record()
        if record is None:
            raise StopIteration
        return record

    def next_record(self) -> Record | None:
        """Hand out the next record, or None when the batch is used up."""
        state = self._engine.state
        if self._handed_out >= self._limit or not state.pending:
            return None
        if not state.in_flight:
            state.in_flight_query_time = state.query_time
        record = state.pending.popleft()
        state.in_flight.append(record)
        self._handed_out += 1
        self._engine.stats.records_sent += 1
        return record

    def checkpoint(self) -> str:
        """Save the traversal state and return the checkpoint token."""
        self._engine.save()
        return self._engine.state.current_token()


class TraversalEngine:
    """
    Main traversal engine for one data source.

    The engine owns the traversal state: the scan position, the snapshot
    maps, and the queue of records for the consumer. Nothing is shared
    between engines.

    Example:
        engine = TraversalEngine(settings)

        batch = engine.start_traversal()
        while batch is not None:
            for record in batch:
                send(record)
            batch = engine.resume_traversal(batch.checkpoint())
    """

    def __init__(
        self,
        settings: Settings,
        source: DataSource | None = None,
        checkpoints: CheckpointManager | None = None,
        builder: RecordBuilder | None = None,
    ) -> None:
        """
        Initialize traversal engine.

        Args:
            settings: Application settings
            source: Data source (created from settings when omitted)
            checkpoints: State persistence (``traversal.state_file`` when omitted)
            builder: Record strategy (chosen from settings when omitted)
        """
        self.settings = settings
        options = settings.traversal
        self.source = source or create_source(settings)
        self.checkpoints = checkpoints or CheckpointManager(options.state_file)
        self.builder = builder or create_builder(settings)
        self.ordering = ValueOrdering(**settings.ordering.model_dump())
        self.scanner = BatchScanner(self.source, options.batch_hint, options.prefetch_factor)
        self.batch_hint = options.batch_hint
        self.checkpoint_interval = options.checkpoint_interval
        self.parameterized = settings.source.parameterized

        self.stats = TraversalStats()
        self.state = self.checkpoints.load()
        self.diff = self._make_diff(self.state)
        self._batches_since_save = 0

    def _make_diff(self, state: TraversalState) -> SnapshotDiff:
        return SnapshotDiff(state.previous, state.current, self.ordering)

    def close(self) -> None:
        self.source.close()

    def __enter__(self) -> "TraversalEngine":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # =========================================================================
    # Consumer interface
    # =========================================================================

    def start_traversal(self) -> FeedBatch | None:
        """
        Start from scratch, discarding any saved state.

        Returns:
            The first batch, or None when the data source has no rows
        """
        logger.info("Starting traversal of %s", self.settings.db_name)
        self.checkpoints.clear()
        self.state = TraversalState()
        self.diff = self._make_diff(self.state)
        return self._traverse()

    def resume_traversal(self, token: str) -> FeedBatch | None:
        """
        Continue from the consumer's checkpoint token.

        Returns:
            The next batch, or None when the pass ended with nothing to send
        """
        match = resume(self.state, token)
        logger.debug("Resuming from %s (%s)", token, match.value)
        return self._traverse()

    def save(self) -> None:
        """Persist the traversal state."""
        self.state.previous = self.diff.previous
        self.state.current = self.diff.current
        self.checkpoints.save(self.state)
        self._batches_since_save = 0

    # =========================================================================
    # Traversal
    # =========================================================================

    def _traverse(self) -> FeedBatch | None:
        while not self.state.pending:
            if self._fill_queue():
                break
        if not self.state.pending:
            return None
        return FeedBatch(self, self.batch_hint)

    def _fill_queue(self) -> bool:
        """Scan one batch of rows into the queue. Returns True when the pass ended."""
        if self.parameterized:
            param = self.state.key_value
            if param is None:
                param = self.settings.source.min_value
            batch = self.scanner.next_batch(0, param=param)
        else:
            batch = self.scanner.next_batch(self.state.cursor)
        self.state.query_time = _now_ms()

        if batch.exhausted:
            if batch.transient:
                self.stats.transient_failures += 1
            self._end_pass(reconcile=not batch.transient)
            return True

        for row in batch.rows:
            self._process_row(row)

        if self.parameterized:
            self.state.key_value = self._highest_key(batch.rows, self.state.key_value)
        else:
            self.state.cursor = batch.offset + len(batch.rows)

        self.stats.batches += 1
        self._batches_since_save += 1
        if self.checkpoint_interval and self._batches_since_save >= self.checkpoint_interval:
            self.save()
        return False

    def _process_row(self, row: dict[str, Any]) -> None:
        self.stats.rows_scanned += 1
        try:
            record = self.builder.build(row)
        except RecordBuildError as e:
            logger.warning("Skipping row: %s", e)
            self.stats.skipped += 1
            self.stats.errors.append(str(e))
            if e.docid:
                self.diff.retain(e.docid)
            return

        if record is None:
            self.stats.skipped += 1
            self.diff.retain(self.builder.docid(row))
            return

        kind = self.diff.observe(record.docid, record.checksum or "")
        if kind == ChangeKind.UNCHANGED:
            self.stats.unchanged += 1
            if record.content is not None:
                record.content.close()
            return

        if kind == ChangeKind.NEW:
            self.stats.added += 1
        else:
            self.stats.changed += 1
        self.state.pending.append(record)

    def _highest_key(self, rows: list[dict[str, Any]], current: Any) -> Any:
        """Highest first-key value among ``rows`` and ``current``."""
        key = self.builder.primary_keys[0]
        best = current
        best_id = encode_docid([current]) if current is not None else None
        for row in rows:
            value = _first_key_value(row, key)
            candidate = encode_docid([value])
            if best_id is None or compare_docids(self.ordering, candidate, best_id) > 0:
                best, best_id = value, candidate
        return best

    def _end_pass(self, reconcile: bool) -> None:
        deletions = self.diff.complete_pass(reconcile=reconcile)
        for docid, checksum in deletions:
            self.state.pending.append(self.builder.delete_record(docid, checksum))
        self.stats.deleted += len(deletions)

        self.state.cursor = 0
        self.state.key_value = None
        self.state.pass_count += 1
        self.stats.passes_completed += 1
        self.save()

        log_event(
            logging.INFO,
            f"Pass {self.state.pass_count} complete: {len(self.diff.previous)} documents, "
            f"{len(deletions)} deleted",
            db_name=self.settings.db_name,
            pass_count=self.state.pass_count,
            documents=len(self.diff.previous),
            deleted=len(deletions),
            reconciled=reconcile,
        )

    # =========================================================================
    # Driver
    # =========================================================================

    def run_pass(
        self,
        on_record: RecordCallback | None = None,
        on_progress: ProgressCallback | None = None,
        token: str | None = None,
        fresh: bool = False,
    ) -> TraversalStats:
        """
        Drive the traversal until the current pass is complete.

        Records handed out are passed to ``on_record`` and acknowledged with
        a checkpoint after each batch.

        Args:
            on_record: Called with every record sent
            on_progress: Called after every batch
            token: Checkpoint to resume from; by default unacknowledged
                records from an earlier run are sent again
            fresh: Discard saved state and start over

        Returns:
            TraversalStats with operation results
        """
        self.stats = TraversalStats(start_time=time.time())
        start_pass = self.state.pass_count

        if fresh:
            batch = self.start_traversal()
        else:
            batch = self.resume_traversal(token if token is not None else self.state.previous_token())

        while batch is not None:
            for record in batch:
                if on_record:
                    on_record(record)
            token = batch.checkpoint()
            if on_progress:
                on_progress(self.stats)
            if self.state.pass_count > start_pass and not self.state.pending:
                break
            batch = self.resume_traversal(token)

        # The last records handed out were acknowledged by the consumer callback
        if self.state.in_flight:
            resume(self.state, self.state.current_token())
            self.save()

        self.stats.end_time = time.time()
        return self.stats

    def get_state_summary(self) -> dict[str, Any]:
        """Get summary of current traversal state."""
        state = self.state
        return {
            "db_name": self.settings.db_name,
            "pass_count": state.pass_count,
            "cursor": state.cursor,
            "key_value": state.key_value,
            "documents_known": len(self.diff.previous),
            "seen_this_pass": len(self.diff.current),
            "pending": len(state.pending),
            "in_flight": len(state.in_flight),
            "checkpoint": state.current_token(),
            "updated_at": state.updated_at,
        }


def _first_key_value(row: dict[str, Any], key: str) -> Any:
    if key in row:
        return row[key]
    lowered = key.lower()
    for column, value in row.items():
        if column.lower() == lowered:
            return value
    return None
