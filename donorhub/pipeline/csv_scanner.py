"""
Quote-aware scanner for delimited exports.

Source exports carry multi-line notes inside quoted cells, so rows cannot be
found by splitting on newlines. ``scan_rows`` walks the text once with a small
state machine and yields logical rows together with the exact source text that
produced them (used for the per-row audit hash).

The stdlib ``csv`` reader is not used because it hands back parsed fields
only; the raw text span of a multi-line row is lost, and the hash has to be
taken over that exact text.

Rules:

* a field that opens with ``"`` (leading blanks allowed) is quoted; inside it
  the delimiter, CR and LF are literal and ``""`` is one ``"``;
* a ``"`` anywhere else in a field is literal;
* unquoted fields are trimmed, quoted content is kept verbatim;
* rows end at LF, CRLF or a lone CR outside quotes.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Iterator

from .errors import SchemaContractError

_FIELD_START = 0
_UNQUOTED = 1
_QUOTED = 2
_AFTER_QUOTE = 3


@dataclass(frozen=True)
class LogicalRow:
    fields: list[str]
    raw_text: str
    line_no: int

    @property
    def is_blank(self) -> bool:
        return not self.raw_text.strip()


@dataclass(frozen=True)
class ParsedRow:
    row_num: int
    values: dict[str, str]
    record_hash: str


@dataclass
class ParsedFile:
    header: list[str]
    rows: list[ParsedRow] = field(default_factory=list)
    content_hash: str = ""

    @property
    def row_count(self) -> int:
        return len(self.rows)


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def decode_content(content: bytes | str) -> str:
    if isinstance(content, str):
        return content.lstrip("\ufeff")
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("latin-1")


def scan_rows(text: str, delimiter: str = ",", quote: str = '"') -> Iterator[LogicalRow]:
    """Yield every logical row in ``text``, blank ones included."""

    length = len(text)
    fields: list[str] = []
    buffer: list[str] = []
    state = _FIELD_START
    row_start = 0
    line_no = 1
    row_line = 1
    i = 0

    def finish_field() -> str:
        value = "".join(buffer)
        return value if state in (_QUOTED, _AFTER_QUOTE) else value.strip()

    while i < length:
        ch = text[i]

        if state == _QUOTED:
            if ch == quote:
                if i + 1 < length and text[i + 1] == quote:
                    buffer.append(quote)
                    i += 2
                    continue
                state = _AFTER_QUOTE
            else:
                if ch == "\n":
                    line_no += 1
                buffer.append(ch)
            i += 1
            continue

        if ch == delimiter:
            fields.append(finish_field())
            buffer = []
            state = _FIELD_START
            i += 1
            continue

        if ch == "\n" or ch == "\r":
            end = i
            if ch == "\r" and i + 1 < length and text[i + 1] == "\n":
                i += 1
            i += 1
            fields.append(finish_field())
            yield LogicalRow(fields, text[row_start:end], row_line)
            fields = []
            buffer = []
            state = _FIELD_START
            row_start = i
            line_no += 1
            row_line = line_no
            continue

        if state == _FIELD_START:
            if ch == quote:
                buffer = []
                state = _QUOTED
            elif ch.isspace():
                buffer.append(ch)
            else:
                buffer.append(ch)
                state = _UNQUOTED
        elif state == _AFTER_QUOTE:
            # Text after a closing quote is kept, surrounding blanks are not.
            if not ch.isspace():
                buffer.append(ch)
        else:
            buffer.append(ch)
        i += 1

    if state == _QUOTED:
        raise SchemaContractError(f"Unterminated quoted field starting on line {row_line}")
    if row_start < length:
        fields.append(finish_field())
        yield LogicalRow(fields, text[row_start:], row_line)


def normalize_header(cells: list[str]) -> list[str]:
    """
    Build column names from a header row.

    Trailing blank cells are dropped; interior blanks become ``col_N``
    (1-based position) and repeated names get a ``_2``, ``_3`` ... suffix.
    """

    names = [cell.strip().lstrip("\ufeff") for cell in cells]
    while names and not names[-1]:
        names.pop()

    header: list[str] = []
    seen: dict[str, int] = {}
    for position, name in enumerate(names, start=1):
        name = name or f"col_{position}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        header.append(name)
    return header


def row_payload(header: list[str], values: list[str]) -> dict[str, str]:
    payload = {name: (values[index] if index < len(values) else "") for index, name in enumerate(header)}
    for index in range(len(header), len(values)):
        if values[index] != "":
            payload[f"col_{index + 1}"] = values[index]
    return payload


def _hash_rows(rows: list[LogicalRow]) -> str:
    return sha256_text("\n".join(row.raw_text for row in rows))


def delimited_content_hash(content: bytes | str, delimiter: str = ",") -> str:
    """Hash of the non-blank logical rows, without building payloads."""

    text = decode_content(content)
    return _hash_rows([row for row in scan_rows(text, delimiter) if not row.is_blank])


def parse_delimited(
    content: bytes | str,
    *,
    header_row: int = 0,
    delimiter: str = ",",
) -> ParsedFile:
    """
    Parse a delimited export into header + payload rows.

    ``header_row`` counts non-blank logical rows from zero, so exports that
    prepend instructions can point past them; anything above the header is
    ignored. Data rows are numbered from 1 among the non-blank rows that follow
    the header. The content hash covers only non-blank rows, which makes a
    re-upload that differs by blank lines hash identically.
    """

    text = decode_content(content)
    non_blank = [row for row in scan_rows(text, delimiter) if not row.is_blank]
    content_hash = _hash_rows(non_blank)

    if len(non_blank) <= header_row:
        raise SchemaContractError(
            f"File has {len(non_blank)} non-blank rows; header expected at row index {header_row}"
        )
    header = normalize_header(non_blank[header_row].fields)
    if not header:
        raise SchemaContractError("Header row is empty")

    parsed = ParsedFile(header=header, content_hash=content_hash)
    for row_num, row in enumerate(non_blank[header_row + 1 :], start=1):
        parsed.rows.append(
            ParsedRow(
                row_num=row_num,
                values=row_payload(header, row.fields),
                record_hash=sha256_text(row.raw_text),
            )
        )
    return parsed
