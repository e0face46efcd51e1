"""JSON Lines feed output used by the CLI in place of an indexing consumer."""

from __future__ import annotations

import json
from pathlib import Path
from typing import IO, Any

from db_feed.core.builder import Record


class JsonlFeedWriter:
    """
    Appends records to a JSON Lines file, one record per line.

    Each line is flushed as it is written, so every record handed to the
    writer is on disk before the traversal checkpoints.

    Example:
        with JsonlFeedWriter(Path("feed.jsonl")) as feed:
            engine.run_pass(on_record=feed.write)
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._file: IO[str] | None = None
        self.count = 0
        self.bytes_written = 0

    def open(self) -> None:
        if self._file is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self.path.open("a", encoding="utf-8")

    def write(self, record: Record) -> None:
        self.open()
        assert self._file is not None
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        self._file.write(line)
        self._file.flush()
        self.count += 1
        self.bytes_written += len(line.encode("utf-8"))

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> "JsonlFeedWriter":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


def read_feed(path: Path | str) -> list[Record]:
    """Read every record back from a feed file."""
    records = []
    with Path(path).open(encoding="utf-8") as f:
        for line in f:
            if line.strip():
                records.append(Record.from_dict(json.loads(line)))
    return records
