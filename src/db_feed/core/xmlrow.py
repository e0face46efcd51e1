"""
Row serialization.

A row is rendered as a small XML document named after the database::

    <inventory>
      <title>Database Connector Result id=1</title>
      <id>1</id>
      <name>widget</name>
    </inventory>

The XML is both the checksummed form of the row and, unless a stylesheet is
configured, the content sent for it.
"""

from __future__ import annotations

import base64
import re
import xml.etree.ElementTree as ET
from typing import Any, Iterable, Mapping, Sequence

import jinja2
from jinja2.sandbox import SandboxedEnvironment

TITLE_PREFIX = "Database Connector Result"

_INVALID_NAME_CHARS = re.compile(r"[^\w.\-]", re.UNICODE)
_INVALID_XML_CHARS = re.compile(
    "[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]"
)

DEFAULT_STYLESHEET = """\
<html>
<head><title>{{ title }}</title></head>
<body>
<table border="1">
<tr bgcolor="#9acd32">{% for name, value in columns %}<th>{{ name }}</th>{% endfor %}</tr>
<tr>{% for name, value in columns %}<td>{{ value }}</td>{% endfor %}</tr>
</table>
</body>
</html>
"""


def element_name(name: str) -> str:
    """Turn a column or database name into a valid XML element name."""
    cleaned = _INVALID_NAME_CHARS.sub("_", name.strip()) or "_"
    if not (cleaned[0].isalpha() or cleaned[0] == "_"):
        cleaned = "_" + cleaned
    return cleaned


def value_text(value: Any) -> str:
    """
    Text for a column value; null becomes the empty string.

    Binary values are base64 encoded so that every distinct value has
    distinct text.
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return _INVALID_XML_CHARS.sub("", str(value))


def _find_column(row: Mapping[str, Any], name: str) -> str | None:
    if name in row:
        return name
    lowered = name.lower()
    for column in row:
        if column.lower() == lowered:
            return column
    return None


def row_title(row: Mapping[str, Any], primary_keys: Sequence[str]) -> str:
    """``Database Connector Result`` followed by ``key=value`` for each key."""
    parts = [TITLE_PREFIX]
    for key in primary_keys:
        column = _find_column(row, key)
        if column is not None:
            parts.append(f"{key}={value_text(row[column])}")
    return " ".join(parts)


def visible_columns(
    row: Mapping[str, Any], skip: Iterable[str] = ()
) -> list[tuple[str, str]]:
    """Columns sorted by name, minus ``skip`` (case-insensitive), as text."""
    skipped = {name.lower() for name in skip if name}
    return [
        (column, value_text(row[column]))
        for column in sorted(row)
        if column.lower() not in skipped
    ]


def row_to_xml(
    db_name: str,
    row: Mapping[str, Any],
    primary_keys: Sequence[str],
    skip: Iterable[str] = (),
) -> str:
    """
    Serialize a row as XML.

    Args:
        db_name: Name of the document element
        row: Column name to value mapping
        primary_keys: Key columns named in the title
        skip: Columns left out of the document

    Returns:
        The XML document as a string
    """
    root = ET.Element(element_name(db_name))
    title = ET.SubElement(root, "title")
    title.text = row_title(row, primary_keys)
    for column, text in visible_columns(row, skip):
        ET.SubElement(root, element_name(column)).text = text
    return ET.tostring(root, encoding="unicode")


class StylesheetRenderer:
    """
    Renders rows into HTML through a Jinja2 template.

    The template runs in a sandboxed environment with strict undefined
    handling and sees ``db_name``, ``title``, ``columns`` (a list of
    ``(name, text)`` pairs), ``row`` and ``xml``.

    Example:
        renderer = StylesheetRenderer("")   # built-in HTML table
        html = renderer.render("inventory", row, ["id"], skip=["updated"])
    """

    mime_type = "text/html"

    def __init__(self, stylesheet: str) -> None:
        self._env = SandboxedEnvironment(
            autoescape=True,
            undefined=jinja2.StrictUndefined,
        )
        source = stylesheet if stylesheet.strip() else DEFAULT_STYLESHEET
        try:
            self._template = self._env.from_string(source)
        except jinja2.TemplateSyntaxError as e:
            raise ValueError(f"Invalid stylesheet template: {e}") from e

    def render(
        self,
        db_name: str,
        row: Mapping[str, Any],
        primary_keys: Sequence[str],
        skip: Iterable[str] = (),
    ) -> str:
        skip = list(skip)
        return self._template.render(
            db_name=db_name,
            title=row_title(row, primary_keys),
            columns=visible_columns(row, skip),
            row={name: value_text(value) for name, value in row.items()},
            xml=row_to_xml(db_name, row, primary_keys, skip),
        )
