"""
Document identifier codec.

A document identifier encodes a row's primary key values together with their
types, so that the identifier can be decoded back into typed values and two
identifiers can be ordered the way the data source orders the rows.

Layout: every type tag first, one character per key column, then ``/`` and
the encoded value for each column::

    encode_docid([10, "hello world"])  ->  "BF/10/hello+world"

String values are form-urlencoded, so ``/`` only ever appears as the field
separator. Identifiers without any ``/`` are legacy identifiers: a base64
blob of comma-joined values written by older versions.
"""

from __future__ import annotations

import base64
import binascii
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from enum import Enum
from functools import cmp_to_key
from typing import Any, Callable, Iterable, Mapping, Sequence
from urllib.parse import quote_plus, unquote_plus

SEPARATOR = "/"

_LONG_MIN = -(2**63)
_LONG_MAX = 2**63 - 1


class DocIdError(ValueError):
    """Malformed identifier, or a row that cannot produce one."""


class DocIdType(str, Enum):
    """
    One-character type tags.

    Tags are persisted inside identifiers. New tags may only be appended.
    """

    NULL = "A"
    LONG = "B"
    DOUBLE = "C"
    BIGINT = "D"
    BIGDEC = "E"
    STRING = "F"
    UTILDATE = "G"
    TIMESTAMP = "H"
    DATE = "I"
    TIME = "J"
    BOOL = "K"

    @property
    def is_numeric(self) -> bool:
        return self in _NUMERIC

    @classmethod
    def from_code(cls, code: str) -> "DocIdType":
        try:
            return cls(code)
        except ValueError:
            raise DocIdError(f"Unknown type tag {code!r}") from None


_NUMERIC = frozenset(
    {DocIdType.LONG, DocIdType.DOUBLE, DocIdType.BIGINT, DocIdType.BIGDEC}
)


@dataclass(frozen=True)
class ValueOrdering:
    """
    How the data source orders values.

    Attributes:
        nulls_sorted_low: NULL sorts before every other value
        case_sensitive: Strings differing only in case are distinct
        accent_sensitive: Strings differing only in accents are distinct
    """

    nulls_sorted_low: bool = True
    case_sensitive: bool = True
    accent_sensitive: bool = True

    def collation_key(self, value: str) -> str:
        if not self.accent_sensitive:
            value = "".join(
                ch
                for ch in unicodedata.normalize("NFKD", value)
                if not unicodedata.combining(ch)
            )
        if not self.case_sensitive:
            value = value.casefold()
        return value

    def collate(self, a: str, b: str) -> int:
        """Compare two strings under this ordering. Returns -1, 0 or 1."""
        ka, kb = self.collation_key(a), self.collation_key(b)
        return (ka > kb) - (ka < kb)


DEFAULT_ORDERING = ValueOrdering()


# =============================================================================
# Encoding
# =============================================================================


def _encode_value(value: Any) -> tuple[DocIdType, str]:
    if value is None:
        return DocIdType.NULL, ""
    # bool is an int subclass, and datetime a date subclass
    if isinstance(value, bool):
        return DocIdType.BOOL, "true" if value else "false"
    if isinstance(value, int):
        if _LONG_MIN <= value <= _LONG_MAX:
            return DocIdType.LONG, str(value)
        return DocIdType.BIGINT, str(value)
    if isinstance(value, float):
        return DocIdType.DOUBLE, repr(value)
    if isinstance(value, Decimal):
        # "1E+20" would decode as "1E 20"
        return DocIdType.BIGDEC, str(value).replace("+", "")
    if isinstance(value, datetime):
        return DocIdType.TIMESTAMP, value.isoformat(sep=" ")
    if isinstance(value, date):
        return DocIdType.DATE, value.isoformat()
    if isinstance(value, time):
        return DocIdType.TIME, value.isoformat()
    return DocIdType.STRING, quote_plus(str(value), safe="")


def encode_docid(values: Iterable[Any]) -> str:
    """
    Encode an ordered sequence of key values as an identifier.

    Args:
        values: Primary key values in key order

    Returns:
        The identifier string

    Example:
        >>> encode_docid([10, "hello world"])
        'BF/10/hello+world'
    """
    tags = []
    fields = []
    for value in values:
        tag, text = _encode_value(value)
        tags.append(tag.value)
        fields.append(text)
    if not tags:
        raise DocIdError("Cannot encode an identifier without key values")
    return "".join(tags) + "".join(SEPARATOR + field for field in fields)


def _lookup_column(row: Mapping[str, Any], name: str, columns: Mapping[str, str]) -> Any:
    if name in row:
        return row[name]
    actual = columns.get(name.lower())
    if actual is None:
        raise DocIdError(
            f"Primary key column {name!r} is not in the query result "
            f"(columns: {', '.join(row)})"
        )
    return row[actual]


def generate_docid(primary_keys: Sequence[str], row: Mapping[str, Any]) -> str:
    """
    Build the identifier for ``row``.

    Key names are matched against the row's column names case-insensitively,
    since databases disagree on the case of the names they report.

    Raises:
        DocIdError: No keys configured, or a key column is missing
    """
    if not primary_keys:
        raise DocIdError("No primary key columns configured")
    columns = {column.lower(): column for column in row}
    return encode_docid(_lookup_column(row, key, columns) for key in primary_keys)


# =============================================================================
# Decoding
# =============================================================================


def is_legacy_docid(docid: str) -> bool:
    return SEPARATOR not in docid


def _split(docid: str) -> tuple[list[DocIdType], list[str]]:
    tokens = docid.split(SEPARATOR)
    tags = [DocIdType.from_code(code) for code in tokens[0]]
    fields = tokens[1:]
    if len(tags) != len(fields):
        raise DocIdError(
            f"Identifier {docid!r} has {len(tags)} type tags "
            f"but {len(fields)} values"
        )
    return tags, fields


def _decode_value(tag: DocIdType, text: str) -> Any:
    try:
        if tag is DocIdType.NULL:
            return None
        if tag in (DocIdType.LONG, DocIdType.BIGINT):
            return int(text)
        if tag is DocIdType.DOUBLE:
            return float(text)
        if tag is DocIdType.BIGDEC:
            return Decimal(text)
        if tag is DocIdType.STRING:
            return unquote_plus(text)
        if tag in (DocIdType.TIMESTAMP, DocIdType.UTILDATE):
            return datetime.fromisoformat(text)
        if tag is DocIdType.DATE:
            return date.fromisoformat(text)
        if tag is DocIdType.TIME:
            return time.fromisoformat(text)
        if tag is DocIdType.BOOL:
            if text not in ("true", "false"):
                raise ValueError(text)
            return text == "true"
    except (ValueError, InvalidOperation) as e:
        raise DocIdError(f"Bad {tag.name} value {text!r}") from e
    raise DocIdError(f"Unhandled type tag {tag!r}")


def _decode_legacy(docid: str) -> tuple[str, ...]:
    try:
        raw = base64.b64decode(docid, validate=True)
        return tuple(raw.decode("utf-8").split(","))
    except (binascii.Error, UnicodeDecodeError) as e:
        raise DocIdError(f"Bad legacy identifier {docid!r}") from e


def decode_docid(docid: str) -> tuple[Any, ...]:
    """
    Decode an identifier back into its typed key values.

    Legacy identifiers decode to a tuple of strings.

    Raises:
        DocIdError: The identifier is malformed
    """
    if is_legacy_docid(docid):
        return _decode_legacy(docid)
    tags, fields = _split(docid)
    return tuple(_decode_value(tag, text) for tag, text in zip(tags, fields))


# =============================================================================
# Ordering
# =============================================================================


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def _cmp(a: Any, b: Any) -> int:
    try:
        return (a > b) - (a < b)
    except InvalidOperation:
        # NaN on one side: fall back to the total ordering
        return int(a.compare_total(b))


def _compare_like(ordering: ValueOrdering, tag: DocIdType, a: str, b: str) -> int:
    if tag is DocIdType.NULL:
        return 0
    if tag in (DocIdType.LONG, DocIdType.BIGINT):
        return _cmp(int(a), int(b))
    if tag is DocIdType.DOUBLE:
        return _cmp(float(a), float(b))
    if tag is DocIdType.BIGDEC:
        return _cmp(Decimal(a), Decimal(b))
    if tag is DocIdType.STRING:
        return ordering.collate(unquote_plus(a), unquote_plus(b))
    # ISO 8601 text sorts lexically
    return _cmp(a, b)


def _compare_mixed(
    ordering: ValueOrdering, t1: DocIdType, a: str, t2: DocIdType, b: str
) -> int:
    if t1 is DocIdType.NULL:
        return -1 if ordering.nulls_sorted_low else 1
    if t2 is DocIdType.NULL:
        return 1 if ordering.nulls_sorted_low else -1
    if t1.is_numeric and t2.is_numeric:
        return _cmp(Decimal(a), Decimal(b))
    if t1 is DocIdType.STRING:
        a = unquote_plus(a)
    if t2 is DocIdType.STRING:
        b = unquote_plus(b)
    return ordering.collate(a, b)


def compare_docids(ordering: ValueOrdering, docid1: str, docid2: str) -> int:
    """
    Order two identifiers the way the data source orders their rows.

    Legacy identifiers sort after every typed identifier and compare to
    each other lexically. Typed identifiers compare field by field; when
    one is a prefix of the other the shorter sorts first.

    Returns:
        -1, 0 or 1
    """
    if docid1 == docid2:
        return 0

    legacy1, legacy2 = is_legacy_docid(docid1), is_legacy_docid(docid2)
    if legacy1 or legacy2:
        if legacy1 and legacy2:
            return _cmp(docid1, docid2)
        return 1 if legacy1 else -1

    tags1, fields1 = _split(docid1)
    tags2, fields2 = _split(docid2)
    try:
        for t1, a, t2, b in zip(tags1, fields1, tags2, fields2):
            if t1 is t2:
                result = _compare_like(ordering, t1, a, b)
            else:
                result = _compare_mixed(ordering, t1, a, t2, b)
            if result:
                return _sign(result)
    except (ValueError, InvalidOperation) as e:
        raise DocIdError(f"Cannot compare {docid1!r} with {docid2!r}") from e
    return _sign(len(fields1) - len(fields2))


def docid_sort_key(ordering: ValueOrdering = DEFAULT_ORDERING) -> Callable[[str], Any]:
    """Key function for ``sorted()`` that applies :func:`compare_docids`."""
    return cmp_to_key(lambda a, b: compare_docids(ordering, a, b))
