"""
Record Builder.

Turns a row into the record sent to the indexing consumer. Which kind of
record depends on how the row is mapped, chosen once per traversal:

- complete URL: the row points at a web document by URL
- document ID + base URL: the URL is ``base_url`` plus a column value
- large object: the row carries a document body in a BLOB/CLOB column
- content: the row itself, serialized as XML, is the document
"""

from __future__ import annotations

import base64
import io
import logging
import tempfile
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, BinaryIO, Iterator, Mapping

import jinja2

from db_feed.config import RecordMode
from db_feed.core.docid import generate_docid
from db_feed.core.integrity import IntegrityChecker
from db_feed.core.mime import SNIFF_BYTES, MimeTypeDetector, MimeTypePolicy
from db_feed.core.xmlrow import StylesheetRenderer, row_to_xml, value_text

if TYPE_CHECKING:
    from db_feed.config import Settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class RecordBuildError(Exception):
    """A single row could not be turned into a record; the row is skipped."""

    def __init__(self, message: str, docid: str | None = None) -> None:
        super().__init__(message)
        self.docid = docid


class LobContentError(RecordBuildError):
    """A large object's character data cannot be encoded."""


class Action(str, Enum):
    ADD = "add"
    DELETE = "delete"


class FeedType(str, Enum):
    CONTENT = "content"
    WEB = "web"


class _SpoolReader(io.RawIOBase):
    """A read-only view of a spool that keeps its own position."""

    def __init__(self, spool: BinaryIO) -> None:
        super().__init__()
        self._spool = spool
        self._pos = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer: Any) -> int:
        self._spool.seek(self._pos)
        data = self._spool.read(len(buffer))
        buffer[: len(data)] = data
        self._pos += len(data)
        return len(data)


class Content:
    """
    A record body, read lazily.

    Small bodies are held as bytes. Streamed large objects are held in a
    spooled temporary file that spills to disk above a size threshold.
    Bodies restored from a checkpoint are read from their file on disk.

    Every ``open()`` returns an independent reader, so several readers can
    work through the same body without disturbing each other.
    """

    def __init__(
        self,
        data: bytes | None = None,
        spool: BinaryIO | None = None,
        size: int = 0,
        path: Path | None = None,
    ) -> None:
        if sum(source is not None for source in (data, spool, path)) != 1:
            raise ValueError("Content needs exactly one of data, spool or path")
        self._data = data
        self._spool = spool
        self._path = path
        self._size = len(data) if data is not None else size

    @classmethod
    def from_bytes(cls, data: bytes) -> "Content":
        return cls(data=bytes(data))

    @classmethod
    def from_spool(cls, spool: BinaryIO, size: int) -> "Content":
        return cls(spool=spool, size=size)

    @classmethod
    def from_file(cls, path: Path) -> "Content":
        return cls(path=path, size=path.stat().st_size)

    @property
    def size(self) -> int:
        return self._size

    @property
    def path(self) -> Path | None:
        """The file holding the body, for bodies restored from disk."""
        return self._path

    def open(self) -> BinaryIO:
        """Return a new stream positioned at the start of the body."""
        if self._data is not None:
            return io.BytesIO(self._data)
        if self._path is not None:
            return self._path.open("rb")
        assert self._spool is not None
        return _SpoolReader(self._spool)

    def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        with self.open() as stream:
            while chunk := stream.read(chunk_size):
                yield chunk

    def read(self) -> bytes:
        if self._data is not None:
            return self._data
        return b"".join(self.iter_chunks())

    def close(self) -> None:
        if self._spool is not None:
            self._spool.close()

    def __repr__(self) -> str:
        return f"Content(size={self._size})"


@dataclass(frozen=True)
class Record:
    """One unit sent to the indexing consumer."""

    docid: str
    action: Action
    checksum: str | None = None
    feed_type: FeedType = FeedType.CONTENT
    content: Content | None = None
    mime_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    title: str | None = None
    last_modified: str | None = None
    display_url: str | None = None
    search_url: str | None = None

    @property
    def is_delete(self) -> bool:
        return self.action == Action.DELETE

    def to_dict(self, content_file: str | None = None) -> dict[str, Any]:
        """
        Convert to a JSON-compatible dict.

        The content is base64 encoded inline, unless ``content_file`` names
        a file already holding it.
        """
        data: dict[str, Any] = {
            "docid": self.docid,
            "action": self.action.value,
            "checksum": self.checksum,
            "feed_type": self.feed_type.value,
            "content": (
                base64.b64encode(self.content.read()).decode("ascii")
                if self.content is not None and content_file is None
                else None
            ),
            "mime_type": self.mime_type,
            "metadata": dict(self.metadata),
            "title": self.title,
            "last_modified": self.last_modified,
            "display_url": self.display_url,
            "search_url": self.search_url,
        }
        if content_file is not None:
            data["content_file"] = content_file
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "Record":
        """
        Create from dict, ignoring keys this version does not know.

        Raises:
            ValueError: The dict names a content file that is not in ``base_dir``
        """
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["action"] = Action(values["action"])
        values["feed_type"] = FeedType(values.get("feed_type") or FeedType.CONTENT.value)
        encoded = values.get("content")
        content_file = data.get("content_file")
        if content_file is not None:
            path = (base_dir or Path(".")) / content_file
            if not path.is_file():
                raise ValueError(f"Content file {path} is missing")
            values["content"] = Content.from_file(path)
        else:
            values["content"] = (
                Content.from_bytes(base64.b64decode(encoded)) if encoded is not None else None
            )
        values["metadata"] = dict(values.get("metadata") or {})
        return cls(**values)


def _lookup(row: Mapping[str, Any], name: str | None) -> Any:
    """Case-insensitive column lookup; missing columns read as null."""
    if not name:
        return None
    if name in row:
        return row[name]
    lowered = name.lower()
    for column, value in row.items():
        if column.lower() == lowered:
            return value
    return None


def _format_timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class RecordBuilder:
    """
    Base class for the record strategies.

    Subclasses implement :meth:`build`. The base class provides the parts
    shared by every strategy: identifiers, metadata, titles and the
    checksum of the serialized row.
    """

    def __init__(self, settings: "Settings", checker: IntegrityChecker | None = None) -> None:
        self.settings = settings
        self.config = settings.record
        self.db_name = settings.db_name
        self.hostname = settings.hostname
        self.primary_keys = list(settings.record.primary_keys)
        self.checker = checker or IntegrityChecker(settings.traversal.checksum_algorithm)
        self.excluded = list(settings.record.exclude_columns)

    def build(self, row: Mapping[str, Any]) -> Record | None:
        """Build the add record for ``row``, or None when there is nothing to send."""
        raise NotImplementedError

    def docid(self, row: Mapping[str, Any]) -> str:
        return generate_docid(self.primary_keys, row)

    def skip_columns(self) -> set[str]:
        """Lower-cased names of columns that never become metadata."""
        cfg = self.config
        names = [
            *self.primary_keys,
            *self.excluded,
            cfg.last_modified_column,
            cfg.title_column,
            cfg.document_url_column,
            cfg.document_id_column,
            cfg.lob_column,
            cfg.mime_type_column,
            cfg.fetch_url_column,
        ]
        return {name.lower() for name in names if name}

    def metadata(self, row: Mapping[str, Any]) -> dict[str, str]:
        skipped = self.skip_columns()
        return {
            column: value_text(value)
            for column, value in row.items()
            if value is not None and column.lower() not in skipped
        }

    def title(self, row: Mapping[str, Any]) -> str | None:
        value = _lookup(row, self.config.title_column)
        return None if value is None else value_text(value)

    def last_modified(self, row: Mapping[str, Any]) -> str | None:
        return _format_timestamp(_lookup(row, self.config.last_modified_column))

    def display_url(self, docid: str) -> str:
        return f"dbconnector://{self.hostname}/{self.db_name}/{docid}"

    def row_xml(self, row: Mapping[str, Any], *skip: str | None) -> str:
        """The row as XML, leaving out excluded columns and ``skip``."""
        return row_to_xml(
            self.db_name,
            row,
            self.primary_keys,
            [*self.excluded, *(name for name in skip if name)],
        )

    def delete_record(self, docid: str, checksum: str | None = None) -> Record:
        return Record(docid=docid, action=Action.DELETE, checksum=checksum)


class ContentRecordBuilder(RecordBuilder):
    """The serialized row is the document."""

    def __init__(self, settings: "Settings", checker: IntegrityChecker | None = None) -> None:
        super().__init__(settings, checker)
        stylesheet = settings.record.resolved_stylesheet()
        self.renderer = StylesheetRenderer(stylesheet) if stylesheet is not None else None

    def build(self, row: Mapping[str, Any]) -> Record | None:
        docid = self.docid(row)
        modified_column = self.config.last_modified_column

        if self.renderer is not None:
            try:
                text = self.renderer.render(
                    self.db_name,
                    row,
                    self.primary_keys,
                    [*self.excluded, *([modified_column] if modified_column else [])],
                )
            except jinja2.TemplateError as e:
                raise RecordBuildError(f"Stylesheet failed for {docid}: {e}", docid) from e
            mime_type = self.renderer.mime_type
        else:
            text = self.row_xml(row, modified_column)
            mime_type = "text/xml"

        return Record(
            docid=docid,
            action=Action.ADD,
            checksum=self.checker.text_checksum(self.row_xml(row)),
            feed_type=FeedType.CONTENT,
            content=Content.from_bytes(text.encode("utf-8")),
            mime_type=mime_type,
            metadata=self.metadata(row),
            title=self.title(row),
            last_modified=self.last_modified(row),
            display_url=self.display_url(docid),
        )


class UrlRecordBuilder(RecordBuilder):
    """
    The row points at a web document.

    With ``complete_url`` the locator is read from ``document_url_column``,
    otherwise it is ``base_url`` followed by ``document_id_column``.
    """

    def __init__(
        self,
        settings: "Settings",
        complete_url: bool,
        checker: IntegrityChecker | None = None,
    ) -> None:
        super().__init__(settings, checker)
        self.complete_url = complete_url

    def locator(self, row: Mapping[str, Any]) -> str | None:
        if self.complete_url:
            value = _lookup(row, self.config.document_url_column)
            prefix = ""
        else:
            value = _lookup(row, self.config.document_id_column)
            prefix = self.config.base_url or ""
        if value is None or not str(value).strip():
            return None
        return prefix + str(value).strip()

    def build(self, row: Mapping[str, Any]) -> Record | None:
        docid = self.docid(row)
        url = self.locator(row)
        if url is None:
            logger.warning("Row %s has no document URL; not sent", docid)
            return None

        return Record(
            docid=docid,
            action=Action.ADD,
            checksum=self.checker.text_checksum(self.row_xml(row)),
            feed_type=FeedType.WEB,
            metadata=self.metadata(row),
            title=self.title(row),
            last_modified=self.last_modified(row),
            display_url=url,
            search_url=url,
        )


@dataclass
class _LobBody:
    content: Content | None = None
    digest: str | None = None
    mime_type: str | None = None


class LobRecordBuilder(RecordBuilder):
    """
    The row carries the document body in a large-object column.

    The checksum covers both the rest of the row and the object's bytes, so a
    change in either is detected.
    """

    def __init__(
        self,
        settings: "Settings",
        checker: IntegrityChecker | None = None,
        detector: MimeTypeDetector | None = None,
    ) -> None:
        super().__init__(settings, checker)
        self.limits = settings.limits
        self.detector = detector or MimeTypeDetector()
        self.policy = MimeTypePolicy(
            settings.limits.supported_mime_types,
            settings.limits.excluded_mime_types,
        )

    def build(self, row: Mapping[str, Any]) -> Record | None:
        docid = self.docid(row)
        row_digest = self.checker.text_checksum(self.row_xml(row, self.config.lob_column))
        body = self._read_lob(docid, _lookup(row, self.config.lob_column))

        declared = _lookup(row, self.config.mime_type_column)
        if declared is not None and str(declared).strip():
            body.mime_type = str(declared).strip()

        if body.content is not None and body.mime_type is not None:
            level = self.policy.support_level(body.mime_type)
            if level <= 0:
                logger.info(
                    "Content of %s not sent: MIME type %s is %s",
                    docid,
                    body.mime_type,
                    "excluded" if level < 0 else "unsupported",
                )
                body.content.close()
                body.content = None

        checksum = (
            self.checker.composite_checksum(row_digest, body.digest)
            if body.digest is not None
            else row_digest
        )
        fetch_url = _lookup(row, self.config.fetch_url_column)
        display_url = (
            str(fetch_url).strip()
            if fetch_url is not None and str(fetch_url).strip()
            else self.display_url(docid)
        )

        return Record(
            docid=docid,
            action=Action.ADD,
            checksum=checksum,
            feed_type=FeedType.CONTENT,
            content=body.content,
            mime_type=body.mime_type,
            metadata=self.metadata(row),
            title=self.title(row),
            last_modified=self.last_modified(row),
            display_url=display_url,
        )

    def _read_lob(self, docid: str, value: Any) -> _LobBody:
        if value is None:
            return _LobBody()
        if isinstance(value, str):
            return self._from_bytes(docid, self._encode(docid, value))
        if isinstance(value, (bytes, bytearray, memoryview)):
            return self._from_bytes(docid, bytes(value))
        if hasattr(value, "read"):
            try:
                return self._from_stream(docid, value)
            except OSError as e:
                logger.warning("Failed to read large object of %s: %s", docid, e)
                return _LobBody()
        return self._from_bytes(docid, self._encode(docid, str(value)))

    @staticmethod
    def _encode(docid: str, text: str) -> bytes:
        try:
            return text.encode("utf-8")
        except UnicodeEncodeError as e:
            raise LobContentError(
                f"Character data of {docid} cannot be encoded: {e}", docid
            ) from e

    def _from_bytes(self, docid: str, data: bytes) -> _LobBody:
        digest = self.checker.checksum(data)
        if len(data) > self.limits.max_document_size:
            logger.warning(
                "Content of %s not sent: %d bytes exceeds the %d byte limit",
                docid,
                len(data),
                self.limits.max_document_size,
            )
            return _LobBody(digest=digest)
        return _LobBody(
            content=Content.from_bytes(data),
            digest=digest,
            mime_type=self.detector.detect(data[:SNIFF_BYTES]),
        )

    def _from_stream(self, docid: str, stream: Any) -> _LobBody:
        """
        Spool a file-like object while digesting it.

        Past the size limit the spool is dropped but the digest still covers
        the whole object.
        """
        limit = self.limits.max_document_size
        spool: BinaryIO | None = tempfile.SpooledTemporaryFile(
            max_size=self.limits.spool_memory_bytes
        )
        digest = self.checker.new_digest()
        head = b""
        size = 0
        try:
            while chunk := stream.read(CHUNK_SIZE):
                if isinstance(chunk, str):
                    chunk = self._encode(docid, chunk)
                size += len(chunk)
                if len(head) < SNIFF_BYTES:
                    head += chunk[: SNIFF_BYTES - len(head)]
                digest.update(chunk)
                if spool is None:
                    continue
                if size > limit:
                    logger.warning(
                        "Content of %s not sent: exceeds the %d byte limit",
                        docid,
                        limit,
                    )
                    spool.close()
                    spool = None
                    continue
                spool.write(chunk)
        except BaseException:
            if spool is not None:
                spool.close()
            raise
        if spool is None:
            return _LobBody(digest=digest.hexdigest())
        return _LobBody(
            content=Content.from_spool(spool, size),
            digest=digest.hexdigest(),
            mime_type=self.detector.detect(head),
        )


def create_builder(settings: "Settings", checker: IntegrityChecker | None = None) -> RecordBuilder:
    """
    Pick the record strategy for the configured column mapping.

    With ``record.mode = auto`` the precedence is complete URL, then
    document ID + base URL, then large object, then content.
    """
    cfg = settings.record
    mode = cfg.mode
    if mode == RecordMode.AUTO:
        if cfg.document_url_column:
            mode = RecordMode.COMPLETE_URL
        elif cfg.document_id_column and cfg.base_url:
            mode = RecordMode.BASE_URL
        elif cfg.lob_column:
            mode = RecordMode.LOB
        else:
            mode = RecordMode.CONTENT

    if mode == RecordMode.COMPLETE_URL:
        return UrlRecordBuilder(settings, complete_url=True, checker=checker)
    if mode == RecordMode.BASE_URL:
        return UrlRecordBuilder(settings, complete_url=False, checker=checker)
    if mode == RecordMode.LOB:
        return LobRecordBuilder(settings, checker=checker)
    return ContentRecordBuilder(settings, checker=checker)
