"""
Warehouse blueprint: health, Prometheus metrics and the guarded query endpoint.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from http import HTTPStatus

from flask import Blueprint, Response, current_app, jsonify, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from .celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY
from .errors import QueryRejected, truncate_error
from .query_guard import GuardedQuery
from .serving import SERVING_VIEWS, object_kind
from .settings import PipelineSettings

warehouse_blueprint = Blueprint("warehouse", __name__, url_prefix="/warehouse")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _json_value(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return value


@warehouse_blueprint.get("/health")
def warehouse_healthcheck():
    state = current_app.extensions.get(EXTENSION_KEY, {})
    views = {view.table_name: object_kind(view.table_name) for view in SERVING_VIEWS}
    return (
        jsonify(
            {
                "status": "ok",
                "worker_enabled": state.get("worker_enabled", False),
                "queue": DEFAULT_QUEUE_NAME,
                "serving": views,
            }
        ),
        200,
    )


@warehouse_blueprint.get("/metrics")
def warehouse_metrics():
    if not current_app.config.get("METRICS_ENABLED", True):
        return _json_error("Metrics are disabled.", HTTPStatus.NOT_FOUND)
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@warehouse_blueprint.post("/query")
def warehouse_query():
    payload = request.get_json(silent=True) or {}
    sql = payload.get("sql")
    if not isinstance(sql, str) or not sql.strip():
        return _json_error("Request body must include a non-empty 'sql' string.", HTTPStatus.BAD_REQUEST)
    max_rows = payload.get("max_rows")
    if max_rows is not None and (not isinstance(max_rows, int) or max_rows <= 0):
        return _json_error("'max_rows' must be a positive integer.", HTTPStatus.BAD_REQUEST)

    guard = GuardedQuery(PipelineSettings.from_app(current_app))
    try:
        result = guard.execute(sql, params=payload.get("params") or {}, max_rows=max_rows)
    except QueryRejected as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    except SQLAlchemyError as exc:
        current_app.logger.warning("Guarded query failed: %s", truncate_error(exc), extra={"pipeline_stage": "query"})
        return _json_error(truncate_error(exc), HTTPStatus.UNPROCESSABLE_ENTITY)

    return (
        jsonify(
            {
                "columns": result.columns,
                "rows": [[_json_value(value) for value in row] for row in result.rows],
                "row_count": result.row_count,
                "truncated": result.truncated,
            }
        ),
        200,
    )
