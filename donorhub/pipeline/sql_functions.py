"""
Portable SQL functions used by the serving view definitions.

Each function compiles to the native spelling of the target dialect so one
view definition runs on SQLite (development, tests) and PostgreSQL.
"""

from __future__ import annotations

from sqlalchemy import Date, Integer, String
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import GenericFunction


class month_bucket(GenericFunction):
    """``YYYY-MM`` text bucket of a timestamp."""

    type = String()
    inherit_cache = True


class year_of(GenericFunction):
    type = Integer()
    inherit_cache = True


class day_of(GenericFunction):
    """Calendar day of a timestamp."""

    type = Date()
    inherit_cache = True


class days_since(GenericFunction):
    """Whole days between a timestamp and today."""

    type = Integer()
    inherit_cache = True


class distinct_list(GenericFunction):
    """Comma separated, de-duplicated list aggregate."""

    type = String()
    inherit_cache = True


def _arg(compiler, element, **kw) -> str:
    return compiler.process(element.clauses, **kw)


@compiles(month_bucket)
def _month_bucket_default(element, compiler, **kw):
    return f"to_char({_arg(compiler, element, **kw)}, 'YYYY-MM')"


@compiles(month_bucket, "sqlite")
def _month_bucket_sqlite(element, compiler, **kw):
    return f"strftime('%Y-%m', {_arg(compiler, element, **kw)})"


@compiles(year_of)
def _year_of_default(element, compiler, **kw):
    return f"CAST(EXTRACT(YEAR FROM {_arg(compiler, element, **kw)}) AS INTEGER)"


@compiles(year_of, "sqlite")
def _year_of_sqlite(element, compiler, **kw):
    return f"CAST(strftime('%Y', {_arg(compiler, element, **kw)}) AS INTEGER)"


@compiles(day_of)
def _day_of_default(element, compiler, **kw):
    return f"CAST({_arg(compiler, element, **kw)} AS DATE)"


@compiles(day_of, "sqlite")
def _day_of_sqlite(element, compiler, **kw):
    return f"date({_arg(compiler, element, **kw)})"


@compiles(days_since)
def _days_since_default(element, compiler, **kw):
    return f"(CURRENT_DATE - CAST({_arg(compiler, element, **kw)} AS DATE))"


@compiles(days_since, "sqlite")
def _days_since_sqlite(element, compiler, **kw):
    return f"CAST(julianday('now') - julianday({_arg(compiler, element, **kw)}) AS INTEGER)"


@compiles(distinct_list)
def _distinct_list_default(element, compiler, **kw):
    arg = _arg(compiler, element, **kw)
    return f"string_agg(DISTINCT {arg}, ',' ORDER BY {arg})"


@compiles(distinct_list, "sqlite")
def _distinct_list_sqlite(element, compiler, **kw):
    return f"group_concat(DISTINCT {_arg(compiler, element, **kw)})"
