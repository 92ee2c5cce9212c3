"""
Explicit pipeline settings.

Stages receive a frozen ``PipelineSettings`` rather than reading
``current_app.config`` ad hoc, so a stage can be exercised with a tweaked copy
(``dataclasses.replace``) without touching global state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from flask import Flask

from config.sources import SourcePolicy, load_source_registry


@dataclass(frozen=True)
class PipelineSettings:
    batch_size: int = 2000
    batch_delay_ms: int = 500
    max_retries: int = 5
    retry_base_ms: int = 15000
    retry_max_ms: int = 60000
    ingest_workers: int = 4
    bulk_timeout_seconds: int = 600
    point_timeout_seconds: int = 15
    materialize_delay_ms: int = 1000
    resolver_max_key_fanout: int = 0
    query_max_rows: int = 500
    query_timeout_seconds: int = 30
    enabled_sources: tuple[str, ...] = ()
    sources: Mapping[str, SourcePolicy] = field(default_factory=dict)

    @classmethod
    def from_app(cls, app: Flask) -> "PipelineSettings":
        config = app.config
        registry = load_source_registry(config.get("PIPELINE_SOURCES_PATH"))
        return cls(
            batch_size=int(config.get("PIPELINE_BATCH_SIZE", 2000)),
            batch_delay_ms=int(config.get("PIPELINE_BATCH_DELAY_MS", 500)),
            max_retries=int(config.get("PIPELINE_MAX_RETRIES", 5)),
            retry_base_ms=int(config.get("PIPELINE_RETRY_BASE_MS", 15000)),
            retry_max_ms=int(config.get("PIPELINE_RETRY_MAX_MS", 60000)),
            ingest_workers=int(config.get("PIPELINE_INGEST_WORKERS", 4)),
            bulk_timeout_seconds=int(config.get("PIPELINE_BULK_TIMEOUT_SECONDS", 600)),
            point_timeout_seconds=int(config.get("PIPELINE_POINT_TIMEOUT_SECONDS", 15)),
            materialize_delay_ms=int(config.get("PIPELINE_MATERIALIZE_DELAY_MS", 1000)),
            resolver_max_key_fanout=int(config.get("PIPELINE_RESOLVER_MAX_KEY_FANOUT", 0)),
            query_max_rows=int(config.get("QUERY_MAX_ROWS", 500)),
            query_timeout_seconds=int(config.get("QUERY_TIMEOUT_SECONDS", 30)),
            enabled_sources=tuple(config.get("PIPELINE_SOURCES") or ()),
            sources=registry,
        )

    def policy_for(self, source: str) -> SourcePolicy | None:
        return self.sources.get(source)

    def active_sources(self) -> list[SourcePolicy]:
        """Registered sources, narrowed to ``PIPELINE_SOURCES`` when that is set."""

        if not self.enabled_sources:
            return list(self.sources.values())
        return [self.sources[name] for name in self.enabled_sources if name in self.sources]
