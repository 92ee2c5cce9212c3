"""
View materializer: serving views -> indexed physical tables.

Per serving object the materializer walks an explicit state machine::

    VIEW_ONLY -> COPYING -> TABLE_NO_INDEX -> TABLE_INDEXED

``COPYING`` is observable as "the view still exists next to a ``_tmp``
table"; a later run discards the temp table and copies again. The swap (drop
view, rename temp table) happens in a single transaction together with the
drop/recreate of dependent views, so the name never disappears half-way.
Index builds run one per transaction; a failed index is logged and left for
the next run.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from flask import current_app, has_app_context
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from donorhub.models import db

from .db import statement_timeout
from .errors import InvariantViolation, PipelineError, truncate_error
from .metrics import record_materialization
from .retry import retry_with_backoff
from .serving import (
    SERVING_VIEWS,
    VIEW_ORDER,
    ServingView,
    count_rows,
    create_view,
    dependents_of,
    get_view,
    object_kind,
    quote,
)
from .settings import PipelineSettings


class MaterializeState(str, enum.Enum):
    MISSING = "missing"
    VIEW_ONLY = "view_only"
    COPYING = "copying"
    TABLE_NO_INDEX = "table_no_index"
    TABLE_INDEXED = "table_indexed"


@dataclass
class MaterializeResult:
    view: str
    status: str
    state_before: MaterializeState
    state_after: MaterializeState
    rows: int = 0
    index_failures: list[str] = field(default_factory=list)
    error: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "view": self.view,
            "status": self.status,
            "state_before": self.state_before.value,
            "state_after": self.state_after.value,
            "rows": self.rows,
            "index_failures": list(self.index_failures),
            "error": self.error,
        }


@dataclass
class MaterializeSummary:
    results: list[MaterializeResult] = field(default_factory=list)

    @property
    def failed(self) -> list[MaterializeResult]:
        return [result for result in self.results if result.status == "failed"]

    def counts(self) -> dict[str, int]:
        tally: dict[str, int] = {}
        for result in self.results:
            tally[result.status] = tally.get(result.status, 0) + 1
        tally["rows"] = sum(result.rows for result in self.results)
        return tally

    def as_dict(self) -> dict[str, object]:
        return {"counts": self.counts(), "views": [result.as_dict() for result in self.results]}


def _log(level: str, message: str, *args, **extra) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args, extra={"pipeline_stage": "materialize", **extra})


def existing_indexes(name: str) -> set[str]:
    inspector = sa_inspect(db.session.connection())
    return {index["name"] for index in inspector.get_indexes(name) if index.get("name")}


def detect_state(view: ServingView) -> MaterializeState:
    connection = db.session.connection()
    kind = object_kind(view.table_name, connection)
    if kind is None:
        return MaterializeState.MISSING
    if kind == "view":
        if object_kind(view.temp_name, connection) == "table":
            return MaterializeState.COPYING
        return MaterializeState.VIEW_ONLY
    wanted = {view.index_name(column) for column in view.indexes}
    if wanted - existing_indexes(view.table_name):
        return MaterializeState.TABLE_NO_INDEX
    return MaterializeState.TABLE_INDEXED


class ViewMaterializer:
    """Strictly sequential; never run two materializers against one database."""

    def __init__(self, settings: PipelineSettings, *, sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.sleep = sleep

    # -- transitions -------------------------------------------------------

    def _check_dependencies(self, view: ServingView, allow_views: Iterable[str] = ()) -> None:
        connection = db.session.connection()
        for dependency in view.depends_on:
            if dependency in allow_views:
                continue
            kind = object_kind(get_view(dependency).table_name, connection)
            if kind != "table":
                raise InvariantViolation(
                    f"Cannot materialize {view.name} before {dependency} "
                    f"({dependency} is {kind or 'missing'}, expected a table)"
                )

    def _discard_temp(self, view: ServingView) -> None:
        connection = db.session.connection()
        if object_kind(view.temp_name, connection) == "table":
            connection.exec_driver_sql(f"DROP TABLE {quote(connection, view.temp_name)}")
            db.session.commit()
            _log("warning", "Discarded leftover %s", view.temp_name, pipeline_view=view.name)

    def _copy(self, view: ServingView) -> None:
        """VIEW_ONLY -> COPYING: snapshot the view into the temp table."""

        def _write() -> None:
            connection = db.session.connection()
            with statement_timeout(self.settings.bulk_timeout_seconds):
                connection.exec_driver_sql(
                    f"CREATE TABLE {quote(connection, view.temp_name)} AS "
                    f"SELECT * FROM {quote(connection, view.table_name)}"
                )
            db.session.commit()

        retry_with_backoff(_write, settings=self.settings, label=f"materialize:{view.name}:copy", sleep=self.sleep)

    def _swap(self, view: ServingView) -> None:
        """COPYING -> TABLE_NO_INDEX in one transaction."""

        connection = db.session.connection()
        dependents = [
            dependent
            for dependent in dependents_of(view.name)
            if object_kind(dependent.table_name, connection) == "view"
        ]
        try:
            with statement_timeout(self.settings.bulk_timeout_seconds):
                for dependent in reversed(dependents):
                    connection.exec_driver_sql(f"DROP VIEW {quote(connection, dependent.table_name)}")
                connection.exec_driver_sql(f"DROP VIEW {quote(connection, view.table_name)}")
                connection.exec_driver_sql(
                    f"ALTER TABLE {quote(connection, view.temp_name)} "
                    f"RENAME TO {quote(connection, view.table_name)}"
                )
                for dependent in dependents:
                    create_view(connection, dependent)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise

    def _build_indexes(self, view: ServingView) -> list[str]:
        """TABLE_NO_INDEX -> TABLE_INDEXED; failures are reported, not raised."""

        failures = []
        present = existing_indexes(view.table_name)
        for column in view.indexes:
            index_name = view.index_name(column)
            if index_name in present:
                continue
            try:
                connection = db.session.connection()
                with statement_timeout(self.settings.bulk_timeout_seconds):
                    connection.exec_driver_sql(
                        f"CREATE INDEX {quote(connection, index_name)} "
                        f"ON {quote(connection, view.table_name)} ({quote(connection, column)})"
                    )
                db.session.commit()
            except SQLAlchemyError as exc:
                db.session.rollback()
                failures.append(index_name)
                _log(
                    "warning",
                    "Index %s on %s failed: %s",
                    index_name,
                    view.table_name,
                    truncate_error(exc, 160),
                    pipeline_view=view.name,
                )
        return failures

    # -- public ------------------------------------------------------------

    def materialize(self, name: str, *, allow_view_dependencies: Iterable[str] = ()) -> MaterializeResult:
        """
        Bring one serving object to ``TABLE_INDEXED`` and return its row count.

        An object that is already a table is not copied again; only missing
        indexes are (re)built. Dependencies must already be tables unless named
        in ``allow_view_dependencies`` (views deliberately left unmaterialized).
        """

        view = get_view(name)
        before = detect_state(view)

        if before is MaterializeState.MISSING:
            raise InvariantViolation(f"{view.table_name} does not exist; build the serving views first")

        if before in (MaterializeState.TABLE_INDEXED, MaterializeState.TABLE_NO_INDEX):
            failures = self._build_indexes(view) if before is MaterializeState.TABLE_NO_INDEX else []
            rows = count_rows(db.session.connection(), view.table_name)
            after = detect_state(view)
            status = "skipped" if before is MaterializeState.TABLE_INDEXED else "indexed"
            record_materialization(view.name, status)
            _log("info", "%s already materialized (%s rows)", view.table_name, rows, pipeline_view=view.name)
            return MaterializeResult(view.name, status, before, after, rows=rows, index_failures=failures)

        self._check_dependencies(view, allow_view_dependencies)
        if before is MaterializeState.COPYING:
            self._discard_temp(view)

        started = time.perf_counter()
        try:
            self._copy(view)
            self._swap(view)
        except (SQLAlchemyError, PipelineError):
            record_materialization(view.name, "failed")
            raise

        failures = self._build_indexes(view)
        rows = count_rows(db.session.connection(), view.table_name)
        after = detect_state(view)
        record_materialization(view.name, "materialized")
        _log(
            "info",
            "Materialized %s: %s rows in %.1fs (%s index failures)",
            view.table_name,
            rows,
            time.perf_counter() - started,
            len(failures),
            pipeline_view=view.name,
        )
        return MaterializeResult(view.name, "materialized", before, after, rows=rows, index_failures=failures)

    def materialize_all(
        self,
        *,
        only: Iterable[str] | None = None,
        skip: Iterable[str] = (),
        from_view: str | None = None,
        on_result: Callable[[MaterializeResult], None] | None = None,
    ) -> MaterializeSummary:
        """
        Materialize serving objects in dependency order, stopping at the first
        failure. Skipped names are reported but left untouched.
        """

        only_names = {get_view(name).name for name in only} if only else None
        skip_names = {get_view(name).name for name in skip}
        start = VIEW_ORDER.index(get_view(from_view).name) if from_view else 0

        summary = MaterializeSummary()
        for position, view in enumerate(SERVING_VIEWS):
            if position < start or (only_names is not None and view.name not in only_names):
                continue
            if view.name in skip_names:
                state = detect_state(view)
                summary.results.append(MaterializeResult(view.name, "excluded", state, state))
                continue
            try:
                result = self.materialize(view.name, allow_view_dependencies=skip_names)
            except (SQLAlchemyError, PipelineError) as exc:
                db.session.rollback()
                state = detect_state(view)
                result = MaterializeResult(
                    view.name, "failed", state, state, error=truncate_error(exc)
                )
                _log("error", "Materializing %s failed: %s", view.table_name, result.error, pipeline_view=view.name)
                summary.results.append(result)
                if on_result:
                    on_result(result)
                break
            summary.results.append(result)
            if on_result:
                on_result(result)
            if result.status == "materialized" and self.settings.materialize_delay_ms:
                self.sleep(self.settings.materialize_delay_ms / 1000.0)
        return summary
