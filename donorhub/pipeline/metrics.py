"""Prometheus metrics helpers for the warehouse pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_files_counter = Counter(
    "pipeline_ingest_files_total",
    "Blobs seen by the raw loader, by outcome.",
    ["source", "outcome"],
)
_raw_rows_counter = Counter(
    "pipeline_raw_rows_inserted_total",
    "Raw records inserted by source.",
    ["source"],
)
_batch_retry_counter = Counter(
    "pipeline_batch_retries_total",
    "Retried database batches by stage.",
    ["stage"],
)
_batch_duration = Histogram(
    "pipeline_batch_duration_seconds",
    "Duration of one insert batch in seconds.",
    ["stage"],
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 120),
)
_materialize_counter = Counter(
    "pipeline_materialize_total",
    "Serving view materialization attempts by outcome.",
    ["view", "outcome"],
)
_query_rejections = Counter(
    "pipeline_query_rejections_total",
    "Guarded queries rejected before execution.",
)


def record_ingest_file(source: str, outcome: Literal["loaded", "skipped", "failed"]) -> None:
    _files_counter.labels(source=source, outcome=outcome).inc()


def record_raw_rows(source: str, count: int) -> None:
    if count:
        _raw_rows_counter.labels(source=source).inc(count)


def record_batch_retry(stage: str) -> None:
    _batch_retry_counter.labels(stage=stage).inc()


def record_batch_duration(stage: str, duration_seconds: float) -> None:
    _batch_duration.labels(stage=stage).observe(duration_seconds)


def record_materialization(view: str, outcome: str) -> None:
    """Count a materializer outcome (``materialized``, ``skipped``, ``failed``...)."""

    _materialize_counter.labels(view=view, outcome=outcome).inc()


def record_query_rejection() -> None:
    _query_rejections.inc()
