"""
Reader for tag-dump XML feeds.

Database GUI exports emit one ``<row>`` per record::

    <resultset>
      <row>
        <field name="ContactId">42</field>
        <field name="Tag">Newsletter</field>
      </row>
    </resultset>

Rows are read incrementally with ``iterparse`` and cleared once consumed so
large dumps do not build a full tree.
"""

from __future__ import annotations

import hashlib
import io
import json
import xml.etree.ElementTree as ET

from .csv_scanner import ParsedFile, ParsedRow, decode_content
from .errors import SchemaContractError


def compute_checksum(payload: dict[str, object | None]) -> str:
    """Return a stable checksum for a payload."""

    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def xml_content_hash(content: bytes | str) -> str:
    text = decode_content(content)
    lines = (line.rstrip("\r") for line in text.split("\n"))
    return hashlib.sha256("\n".join(line for line in lines if line.strip()).encode("utf-8")).hexdigest()


def parse_xml_rows(content: bytes | str) -> ParsedFile:
    """
    Parse ``<row><field name=...>`` records into a ``ParsedFile``.

    The header is the ordered union of field names. Rows without any named
    field are treated like blank CSV lines and skipped. The content hash is
    taken over non-blank lines so trailing whitespace changes do not force a
    reload.
    """

    raw = content if isinstance(content, bytes) else content.encode("utf-8")
    content_hash = xml_content_hash(content)

    header: list[str] = []
    known: set[str] = set()
    parsed = ParsedFile(header=header, content_hash=content_hash)
    row_num = 0

    try:
        for _event, element in ET.iterparse(io.BytesIO(raw), events=("end",)):
            if _local_name(element.tag) != "row":
                continue
            payload: dict[str, str] = {}
            for child in element:
                if _local_name(child.tag) != "field":
                    continue
                name = (child.get("name") or "").strip()
                if not name:
                    continue
                payload[name] = "".join(child.itertext()).strip()
                if name not in known:
                    known.add(name)
                    header.append(name)
            element.clear()
            if not payload:
                continue
            row_num += 1
            parsed.rows.append(ParsedRow(row_num=row_num, values=payload, record_hash=compute_checksum(payload)))
    except ET.ParseError as exc:
        raise SchemaContractError(f"Malformed XML: {exc}") from exc

    if not header:
        raise SchemaContractError("XML document contains no <row><field> records")
    return parsed
