"""MIME type sniffing and the consumer's MIME support policy."""

from __future__ import annotations

from typing import Iterable

OCTET_STREAM = "application/octet-stream"

# Bytes needed by the longest signature check below
SNIFF_BYTES = 1024

_SIGNATURES: list[tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"{\\rtf", "application/rtf"),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/msword"),
    (b"%!PS", "application/postscript"),
]

_ZIP_MAGIC = b"PK\x03\x04"
_OOXML = [
    (b"word/", "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
    (b"xl/", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    (b"ppt/", "application/vnd.openxmlformats-officedocument.presentationml.presentation"),
]


class MimeTypeDetector:
    """
    Guesses a MIME type from the leading bytes of a document.

    Example:
        MimeTypeDetector().detect(b"%PDF-1.7 ...")  # "application/pdf"
    """

    def detect(self, head: bytes) -> str:
        if not head:
            return OCTET_STREAM

        for magic, mime in _SIGNATURES:
            if head.startswith(magic):
                return mime

        if head.startswith(_ZIP_MAGIC):
            for marker, mime in _OOXML:
                if marker in head:
                    return mime
            return "application/zip"

        text = self._as_text(head)
        if text is None:
            return OCTET_STREAM
        lowered = text.lstrip("\ufeff \t\r\n").lower()
        if lowered.startswith(("<!doctype html", "<html")):
            return "text/html"
        if lowered.startswith("<?xml"):
            return "text/xml"
        return "text/plain"

    @staticmethod
    def _as_text(head: bytes) -> str | None:
        if b"\x00" in head:
            return None
        try:
            return head.decode("utf-8")
        except UnicodeDecodeError as e:
            # A multi-byte character cut off by the sniff window
            if e.start >= len(head) - 3 and e.reason == "unexpected end of data":
                return head[: e.start].decode("utf-8")
            return None


class MimeTypePolicy:
    """
    Which MIME types the consumer accepts content for.

    ``support_level`` returns a positive number for supported types, 0 for
    unsupported ones (the record is sent without content) and a negative
    number for excluded ones.
    """

    def __init__(
        self,
        supported: Iterable[str] = (),
        excluded: Iterable[str] = (),
    ) -> None:
        self.supported = {_base_type(t) for t in supported}
        self.excluded = {_base_type(t) for t in excluded}

    def support_level(self, mime_type: str) -> int:
        mime = _base_type(mime_type)
        if _matches(mime, self.excluded):
            return -1
        if not self.supported or _matches(mime, self.supported):
            return 1
        return 0


def _base_type(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


def _matches(mime: str, patterns: set[str]) -> bool:
    if mime in patterns:
        return True
    major = mime.split("/", 1)[0]
    return f"{major}/*" in patterns
