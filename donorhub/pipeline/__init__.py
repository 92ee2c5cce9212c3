"""
Warehouse pipeline: ingestion, transformation, identity resolution, serving
views and their materialization.

``init_pipeline(app)`` mounts the ``pipeline`` CLI group, the ``/warehouse``
blueprint and (when enabled) the Celery worker.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import pipeline_cli
from .errors import (
    InvariantViolation,
    PipelineError,
    QueryRejected,
    SchemaContractError,
    StageFailed,
    TransientPipelineError,
)
from .query_guard import GuardedQuery, QueryResult
from .settings import PipelineSettings
from .views import warehouse_blueprint

__all__ = [
    "init_pipeline",
    "get_celery_app",
    "EXTENSION_KEY",
    "PipelineSettings",
    "GuardedQuery",
    "QueryResult",
    "PipelineError",
    "TransientPipelineError",
    "SchemaContractError",
    "InvariantViolation",
    "QueryRejected",
    "StageFailed",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "worker_enabled": False,
            "celery_app": None,
            "sources": (),
        },
    )


def _set_cli(app: Flask) -> None:
    # Avoid duplicate registrations when running tests
    if pipeline_cli.name in app.cli.commands:
        app.cli.commands.pop(pipeline_cli.name)
    app.cli.add_command(pipeline_cli)


def init_pipeline(app: Flask) -> None:
    """
    Mount the pipeline CLI and blueprint and record extension state in
    ``app.extensions['pipeline']``.
    """
    settings = PipelineSettings.from_app(app)
    state = _ensure_extension_state(app)
    worker_enabled = bool(app.config.get("PIPELINE_WORKER_ENABLED", False))
    state.update(
        {
            "worker_enabled": worker_enabled,
            "sources": tuple(policy.name for policy in settings.active_sources()),
        }
    )
    if worker_enabled:
        ensure_celery_app(app, state)

    if warehouse_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(warehouse_blueprint)
    elif warehouse_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Warehouse blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app)

    app.logger.info("Pipeline enabled with sources: %s", ", ".join(state["sources"]) or "none")
