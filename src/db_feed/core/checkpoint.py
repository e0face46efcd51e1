"""
Checkpoint Manager - Resume and recovery functionality.

Provides persistent state for a traversal:
- Position in the result set (offset cursor or last key value)
- The two snapshot maps used for change detection
- Records queued for the consumer and records handed out but not yet
  acknowledged

A checkpoint token handed to the consumer names the query time of the
pending queue and the identifier of its first record::

    (1718000000000)BF/10/hello+world
    (1718000000000)NO_DOCID

On resume, a token naming the current queue acknowledges everything in
flight. Any other token means the consumer lost those records, so they are
sent again.
"""

from __future__ import annotations

import contextlib
import hashlib
import json
import logging
import os
import re
import tempfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from db_feed.core.builder import Record
from db_feed.core.docid import decode_docid, encode_docid

logger = logging.getLogger(__name__)

STATE_VERSION = 1

# Larger bodies are kept in files beside the state file
INLINE_CONTENT_LIMIT = 64 * 1024

NO_DOCID = "NO_DOCID"
NO_TIMESTAMP = "NO_TIMESTAMP"

_TOKEN = re.compile(r"^\((?P<time>[^)]*)\)(?P<docid>.*)$", re.DOTALL)


class CheckpointError(Exception):
    """The state file cannot be written, or a token cannot be parsed."""


class TokenMatch(str, Enum):
    CURRENT = "current"
    PREVIOUS = "previous"
    NO_RECORD = "no_record"
    UNKNOWN = "unknown"


@dataclass
class TraversalState:
    """Complete traversal state for persistence."""

    cursor: int = 0
    key_value: Any = None
    previous: dict[str, str] = field(default_factory=dict)
    current: dict[str, str] = field(default_factory=dict)
    pending: deque[Record] = field(default_factory=deque)
    in_flight: list[Record] = field(default_factory=list)
    query_time: int | None = None
    in_flight_query_time: int | None = None
    pass_count: int = 0
    version: int = STATE_VERSION
    updated_at: str | None = None

    def current_token(self) -> str:
        """Token naming the head of the pending queue."""
        head = self.pending[0].docid if self.pending else None
        return make_token(self.query_time, head)

    def previous_token(self) -> str:
        """Token naming the head of the in-flight records."""
        head = self.in_flight[0].docid if self.in_flight else None
        return make_token(self.in_flight_query_time, head)

    def to_dict(self, bodies: BodyStore | None = None) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        With ``bodies``, record content above the inline limit is written to
        the body store and referenced by file name.
        """

        def record_dict(record: Record) -> dict[str, Any]:
            if bodies is None:
                return record.to_dict()
            return record.to_dict(content_file=bodies.put(record))

        return {
            "version": self.version,
            "updated_at": self.updated_at,
            "cursor": self.cursor,
            "key_value": None if self.key_value is None else encode_docid([self.key_value]),
            "pass_count": self.pass_count,
            "query_time": self.query_time,
            "in_flight_query_time": self.in_flight_query_time,
            "previous": dict(self.previous),
            "current": dict(self.current),
            "pending": [record_dict(record) for record in self.pending],
            "in_flight": [record_dict(record) for record in self.in_flight],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], body_dir: Path | None = None) -> "TraversalState":
        """
        Create from dictionary. Keys this version does not know are ignored.

        Content stored outside the dictionary is read from ``body_dir``.
        """
        return cls(
            cursor=int(data.get("cursor", 0)),
            key_value=_decode_key_value(data.get("key_value")),
            previous=dict(data.get("previous") or {}),
            current=dict(data.get("current") or {}),
            pending=deque(Record.from_dict(r, body_dir) for r in data.get("pending") or []),
            in_flight=[Record.from_dict(r, body_dir) for r in data.get("in_flight") or []],
            query_time=data.get("query_time"),
            in_flight_query_time=data.get("in_flight_query_time"),
            pass_count=int(data.get("pass_count", 0)),
            version=int(data.get("version", STATE_VERSION)),
            updated_at=data.get("updated_at"),
        )


def _decode_key_value(value: str | None) -> Any:
    if value is None:
        return None
    return decode_docid(value)[0]


def make_token(query_time: int | None, docid: str | None) -> str:
    """Build a checkpoint token."""
    time_part = NO_TIMESTAMP if query_time is None else str(query_time)
    return f"({time_part}){docid if docid is not None else NO_DOCID}"


def parse_token(token: str) -> tuple[int | None, str | None]:
    """
    Split a checkpoint token into query time and identifier.

    Raises:
        CheckpointError: The token is not of the form ``(<time>)<docid>``
    """
    match = _TOKEN.match(token)
    if match is None:
        raise CheckpointError(f"Malformed checkpoint token: {token!r}")
    time_part, docid = match.group("time"), match.group("docid")
    if time_part == NO_TIMESTAMP:
        query_time = None
    else:
        try:
            query_time = int(time_part)
        except ValueError:
            raise CheckpointError(f"Malformed checkpoint time: {time_part!r}") from None
    return query_time, (None if docid == NO_DOCID else docid)


def classify_token(state: TraversalState, token: str) -> TokenMatch:
    """Relate a token from the consumer to the saved state."""
    if token == state.current_token():
        return TokenMatch.CURRENT
    if token == state.previous_token():
        return TokenMatch.PREVIOUS
    try:
        _, docid = parse_token(token)
    except CheckpointError:
        return TokenMatch.UNKNOWN
    if docid is None:
        return TokenMatch.NO_RECORD
    return TokenMatch.UNKNOWN


def resume(state: TraversalState, token: str) -> TokenMatch:
    """
    Apply a consumer token to the state.

    A token naming the current queue acknowledges the in-flight records.
    Anything else puts them back at the front of the queue, in their
    original order, so they are sent again.
    """
    match = classify_token(state, token)
    if match == TokenMatch.CURRENT:
        if state.in_flight:
            logger.debug("Checkpoint acknowledged %d records", len(state.in_flight))
        state.in_flight.clear()
    else:
        if match == TokenMatch.UNKNOWN:
            logger.warning("Unrecognized checkpoint %r; resending in-flight records", token)
        if state.in_flight:
            logger.info("Requeueing %d unacknowledged records", len(state.in_flight))
            state.pending.extendleft(reversed(state.in_flight))
            if state.in_flight_query_time is not None:
                state.query_time = state.in_flight_query_time
        state.in_flight.clear()
    state.in_flight_query_time = None
    return match


class BodyStore:
    """
    Record bodies kept as files beside the state file.

    Bodies up to ``inline_limit`` bytes stay in the state file itself. Larger
    ones are streamed to a temporary file and renamed into place, so a body
    named in a saved state is always complete. Files are named after the
    record's identifier and checksum.
    """

    def __init__(self, directory: Path, inline_limit: int = INLINE_CONTENT_LIMIT) -> None:
        self.directory = directory
        self.inline_limit = inline_limit
        self._names: set[str] = set()

    def begin(self) -> None:
        """Start collecting the bodies of a new save."""
        self._names = set()

    def put(self, record: Record) -> str | None:
        """Store the record's content; returns its file name, or None to keep it inline."""
        content = record.content
        if content is None or content.size <= self.inline_limit:
            return None
        name = hashlib.sha256(f"{record.docid}\n{record.checksum}".encode("utf-8")).hexdigest()
        target = self.directory / name
        if content.path != target:
            self._write(record, target)
        self._names.add(name)
        return name

    def _write(self, record: Record, target: Path) -> None:
        assert record.content is not None
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=self.directory)
        try:
            with os.fdopen(fd, "wb") as f:
                for chunk in record.content.iter_chunks():
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except OSError:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise

    def prune(self) -> None:
        """Delete the files the last save did not name."""
        if not self.directory.is_dir():
            return
        for path in self.directory.iterdir():
            if path.name not in self._names:
                with contextlib.suppress(OSError):
                    path.unlink()
        if not self._names:
            with contextlib.suppress(OSError):
                self.directory.rmdir()


class CheckpointManager:
    """
    State persistence for one traversal.

    Saves are atomic: the state is written to a temporary file in the same
    directory, flushed to disk, then renamed over the state file. Large
    record bodies are written first, to ``<state file>.bodies/``.

    Example:
        checkpoints = CheckpointManager(Path(".db-feed-state.json"))
        state = checkpoints.load()
        ...
        checkpoints.save(state)
    """

    def __init__(self, state_file: Path | str) -> None:
        self.state_file = Path(state_file)
        self.bodies = BodyStore(self.state_file.with_name(f"{self.state_file.name}.bodies"))

    def exists(self) -> bool:
        return self.state_file.exists()

    def load(self) -> TraversalState:
        """Load state from file; a missing or corrupt file gives a fresh state."""
        if not self.state_file.exists():
            return TraversalState()

        try:
            data = json.loads(self.state_file.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("state file does not hold an object")
            return TraversalState.from_dict(data, self.bodies.directory)
        except (ValueError, KeyError, TypeError) as e:
            # Corrupted state file
            logger.warning("Could not load state file %s, starting fresh: %s", self.state_file, e)
            return TraversalState()

    def save(self, state: TraversalState) -> None:
        """Save state to file atomically."""
        state.updated_at = datetime.now(timezone.utc).isoformat()
        self.bodies.begin()
        try:
            payload = json.dumps(state.to_dict(self.bodies), indent=2, default=str)
        except OSError as e:
            raise CheckpointError(
                f"Could not save record bodies to {self.bodies.directory}: {e}"
            ) from e

        directory = self.state_file.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.state_file.name}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.state_file)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise CheckpointError(f"Could not save state to {self.state_file}: {e}") from e
        self.bodies.prune()

    def clear(self) -> None:
        """Delete the state file and any stored bodies."""
        if self.state_file.exists():
            self.state_file.unlink()
        self.bodies.begin()
        self.bodies.prune()
