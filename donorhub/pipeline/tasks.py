"""
Pipeline Celery tasks.

``pipeline ingest --queue`` fans out one ``pipeline.ingest_blob`` per candidate
blob; every task of one CLI invocation shares the batch id.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from .raw_loader import RawIngestionLoader
from .settings import PipelineSettings
from .storage import get_blob_store


@shared_task(name="pipeline.healthcheck", bind=True)
def pipeline_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``pipeline worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="pipeline.ingest_blob", bind=True)
def ingest_blob(self, *, blob_path: str, batch_id: str | None = None) -> dict[str, Any]:
    app = current_app._get_current_object()
    settings = PipelineSettings.from_app(app)
    loader = RawIngestionLoader(get_blob_store(app), settings, batch_id=batch_id)
    result = loader.ingest(blob_path)
    app.logger.info(
        "Worker ingested %s: %s",
        blob_path,
        result.status,
        extra={
            "pipeline_stage": "ingest",
            "pipeline_blob": blob_path,
            "pipeline_task_id": self.request.id,
            "pipeline_batch_id": loader.batch_id,
        },
    )
    payload = result.as_dict()
    payload["batch_id"] = loader.batch_id
    return payload
