"""
Metadata tables: source registry, file lineage and pipeline run bookkeeping.

Lineage rows are the idempotence ledger for raw ingestion. A blob path plus
its content hash identifies one load; a ``loaded`` row for that pair means the
file must never be ingested again.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


def new_uuid() -> str:
    return str(uuid.uuid4())


class SourceSystem(BaseModel):
    """A registered origin of data (``keap``, ``givebutter`` ...)."""

    __tablename__ = "meta_source_systems"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True)
    name: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    title: Mapped[str | None] = mapped_column(db.String(128), nullable=True)

    lineages = relationship("FileLineage", back_populates="source")

    def __repr__(self) -> str:
        return f"<SourceSystem {self.id}:{self.name}>"


class LineageStatus(str, enum.Enum):
    """Lifecycle of one ingested file."""

    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class FileLineage(BaseModel):
    """One row per ingested blob."""

    __tablename__ = "meta_file_lineage"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=new_uuid)
    batch_id: Mapped[str] = mapped_column(db.String(36), nullable=False, index=True)
    source_id: Mapped[int] = mapped_column(ForeignKey("meta_source_systems.id"), nullable=False, index=True)
    blob_path: Mapped[str] = mapped_column(db.String(1024), nullable=False)
    content_hash: Mapped[str] = mapped_column(db.String(64), nullable=False)
    row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[LineageStatus] = mapped_column(
        Enum(LineageStatus, name="lineage_status_enum"),
        nullable=False,
        default=LineageStatus.LOADING,
        index=True,
    )
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    loaded_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    source = relationship("SourceSystem", back_populates="lineages")

    __table_args__ = (Index("idx_file_lineage_blob_hash", "blob_path", "content_hash"),)

    def __repr__(self) -> str:
        return f"<FileLineage {self.id} {self.blob_path} {self.status.value}>"


class PipelineRunStatus(str, enum.Enum):
    """Lifecycle states for a pipeline stage execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineRun(BaseModel):
    """Bookkeeping for one stage of a pipeline batch."""

    __tablename__ = "meta_pipeline_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(db.String(36), nullable=False, index=True)
    stage: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    status: Mapped[PipelineRunStatus] = mapped_column(
        Enum(PipelineRunStatus, name="pipeline_run_status_enum"),
        nullable=False,
        default=PipelineRunStatus.PENDING,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    params_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (Index("idx_pipeline_runs_batch_stage", "batch_id", "stage"),)
