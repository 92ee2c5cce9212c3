"""
Guarded, read-only SQL execution against the serving layer.

This is the only way code outside the pipeline is meant to touch the
warehouse. A statement must be a single ``SELECT``/``WITH`` query over
``serving_*`` objects (or its own CTEs); it is capped in rows and time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from flask import current_app, has_app_context
from sqlalchemy import text

from donorhub.models import db

from .db import statement_timeout
from .errors import QueryRejected
from .metrics import record_query_rejection
from .serving import SERVING_VIEWS
from .settings import PipelineSettings

BLOCKED_KEYWORDS = (
    "DROP",
    "ALTER",
    "CREATE",
    "TRUNCATE",
    "INSERT",
    "UPDATE",
    "DELETE",
    "MERGE",
    "EXEC",
    "EXECUTE",
    "GRANT",
    "REVOKE",
    "DENY",
    "INTO",
    "ATTACH",
    "DETACH",
    "PRAGMA",
    "VACUUM",
    "COPY",
)

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")
_BLOCKED = re.compile(r"\b(" + "|".join(BLOCKED_KEYWORDS) + r")\b", re.IGNORECASE)
_PROCEDURE = re.compile(r"\b(xp_|sp_)\w*", re.IGNORECASE)
_LEADING = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_JOINED = re.compile(r"\bJOIN\s+(\"?[\w.]+\"?)", re.IGNORECASE)
_FROM = re.compile(r"\bFROM\b", re.IGNORECASE)
_FROM_LIST_END = re.compile(
    r"(WHERE|GROUP|ORDER|HAVING|LIMIT|OFFSET|UNION|INTERSECT|EXCEPT|WINDOW|JOIN|LEFT|RIGHT|INNER|FULL|CROSS|NATURAL|ON|USING)\b",
    re.IGNORECASE,
)
_LEADING_NAME = re.compile(r"\"?[\w.]+\"?")
_CTE_NAME = re.compile(r"\b(\w+)\s+AS\s*\(", re.IGNORECASE)
_INTERNAL = re.compile(r"\b(raw_|silver_|meta_|sqlite_|pg_|information_schema)\w*", re.IGNORECASE)
_LIMIT = re.compile(r"\bLIMIT\s+(\d+)\s*(OFFSET\s+\d+\s*)?$", re.IGNORECASE)


@dataclass
class QueryResult:
    sql: str
    columns: list[str] = field(default_factory=list)
    rows: list[tuple] = field(default_factory=list)
    truncated: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def records(self) -> list[dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


def _reject(sql: str, reason: str) -> QueryRejected:
    record_query_rejection()
    if has_app_context():
        current_app.logger.warning(
            "Rejected query: %s",
            reason,
            extra={"pipeline_stage": "query", "query_excerpt": sql[:200]},
        )
    return QueryRejected(reason)


def _from_list_relations(scrubbed: str) -> list[str]:
    """
    Leading name of every item in every ``FROM`` list, comma joins included.

    Subquery items are skipped here; their own ``FROM`` is scanned separately.
    """

    relations = []
    for match in _FROM.finditer(scrubbed):
        depth = 0
        start = pos = match.end()
        items = []
        while pos < len(scrubbed):
            char = scrubbed[pos]
            if char == "(":
                depth += 1
            elif char == ")":
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0:
                if char == ",":
                    items.append(scrubbed[start:pos])
                    start = pos + 1
                elif not (scrubbed[pos - 1].isalnum() or scrubbed[pos - 1] == "_") and _FROM_LIST_END.match(
                    scrubbed, pos
                ):
                    break
            pos += 1
        items.append(scrubbed[start:pos])
        for item in items:
            name = _LEADING_NAME.match(item.strip())
            if name:
                relations.append(name.group(0))
    return relations


def allowed_relations() -> frozenset[str]:
    return frozenset(view.table_name for view in SERVING_VIEWS)


def validate_query(sql: str, *, max_rows: int) -> str:
    """
    Return the statement to execute (with a ``LIMIT`` appended when absent)
    or raise ``QueryRejected``.
    """

    if not sql or not sql.strip():
        raise _reject(sql or "", "Empty query")
    statement = sql.strip()
    while statement.endswith(";"):
        statement = statement[:-1].rstrip()

    # Keywords inside string literals are data, not SQL.
    scrubbed = _STRING_LITERAL.sub("''", statement)
    if "--" in scrubbed or "/*" in scrubbed or "*/" in scrubbed:
        raise _reject(statement, "SQL comments are not allowed")
    if ";" in scrubbed:
        raise _reject(statement, "Only a single statement is allowed")
    if not _LEADING.match(scrubbed):
        raise _reject(statement, "Only SELECT or WITH queries are allowed")
    blocked = _BLOCKED.search(scrubbed)
    if blocked:
        raise _reject(statement, f"Keyword {blocked.group(1).upper()} is not allowed")
    if _PROCEDURE.search(scrubbed):
        raise _reject(statement, "Stored procedure calls are not allowed")
    internal = _INTERNAL.search(scrubbed)
    if internal:
        raise _reject(statement, f"Object {internal.group(0)} is not part of the serving layer")

    ctes = {name.lower() for name in _CTE_NAME.findall(scrubbed)}
    allowed = allowed_relations()
    for relation in [*_from_list_relations(scrubbed), *_JOINED.findall(scrubbed)]:
        name = relation.strip('"').lower()
        if name in ctes or name in allowed:
            continue
        raise _reject(statement, f"Object {name} is not part of the serving layer")

    if not _LIMIT.search(scrubbed):
        statement = f"{statement} LIMIT {max_rows}"
    return statement


class GuardedQuery:
    def __init__(self, settings: PipelineSettings):
        self.settings = settings

    def execute(
        self,
        sql: str,
        *,
        params: Mapping[str, Any] | None = None,
        max_rows: int | None = None,
        timeout_seconds: int | None = None,
    ) -> QueryResult:
        """Validate and run ``sql`` read-only; the transaction is always rolled back."""

        cap = self.settings.query_max_rows
        limit = min(max_rows, cap) if max_rows and max_rows > 0 else cap
        timeout = timeout_seconds or self.settings.query_timeout_seconds
        statement = validate_query(sql, max_rows=limit)
        try:
            with statement_timeout(timeout):
                result = db.session.execute(text(statement), dict(params or {}))
                columns = list(result.keys())
                rows = [tuple(row) for row in result.fetchmany(limit + 1)]
        finally:
            db.session.rollback()
        truncated = len(rows) > limit
        return QueryResult(statement, columns, rows[:limit], truncated)
