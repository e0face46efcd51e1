"""Core traversal components for DB Feed."""

from db_feed.core.builder import Action, Record, RecordBuildError, create_builder
from db_feed.core.checkpoint import CheckpointManager, TraversalState
from db_feed.core.docid import (
    DocIdError,
    ValueOrdering,
    compare_docids,
    decode_docid,
    encode_docid,
)
from db_feed.core.engine import FeedBatch, TraversalEngine, TraversalStats
from db_feed.core.integrity import IntegrityChecker
from db_feed.core.scanner import BatchScanner, SourceUnavailableError
from db_feed.core.snapshot import ChangeKind, SnapshotDiff

__all__ = [
    "Action",
    "Record",
    "RecordBuildError",
    "create_builder",
    "CheckpointManager",
    "TraversalState",
    "DocIdError",
    "ValueOrdering",
    "compare_docids",
    "decode_docid",
    "encode_docid",
    "FeedBatch",
    "TraversalEngine",
    "TraversalStats",
    "IntegrityChecker",
    "BatchScanner",
    "SourceUnavailableError",
    "ChangeKind",
    "SnapshotDiff",
]
