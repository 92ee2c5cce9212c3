"""
File lineage tracking.

The lineage ledger is the idempotence key for raw ingestion: ``(blob_path,
content_hash)`` with status ``loaded`` means the file has already been fully
written to ``raw_records``. Rows stuck in ``loading`` (crash mid-file) or
``failed`` (retries exhausted) are inconclusive; the loader discards them and
their partial rows before trying the blob again.
"""

from __future__ import annotations

from typing import Iterable

from flask import current_app, has_app_context
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from config.sources import SourcePolicy
from donorhub.models import FileLineage, LineageStatus, RawRecord, SourceSystem, db, utcnow

from .db import statement_timeout
from .errors import InvariantViolation, truncate_error
from .settings import PipelineSettings



POINT_TIMEOUT_SECONDS = PipelineSettings.point_timeout_seconds


def seed_source_systems(
    policies: Iterable[SourcePolicy],
    session: Session | None = None,
    *,
    timeout_seconds: float = POINT_TIMEOUT_SECONDS,
) -> dict[str, int]:
    """
    Make sure every registered source has a ``meta_source_systems`` row.

    Existing rows are left alone so ids stay stable across runs.
    """

    session = session or db.session
    with statement_timeout(timeout_seconds, session):
        existing = {row.name: row for row in session.scalars(select(SourceSystem))}
        created = False
        for policy in policies:
            if policy.name in existing:
                continue
            source = SourceSystem(name=policy.name, title=policy.title)
            session.add(source)
            existing[policy.name] = source
            created = True
        if created:
            session.flush()
    if created:
        session.commit()
    return {name: row.id for name, row in existing.items()}


class FileLineageTracker:
    """
    Reads and writes ``meta_file_lineage`` for the raw loader.

    Every statement runs under the point-lookup timeout from ``settings``.
    """

    def __init__(self, settings: PipelineSettings | None = None, session: Session | None = None):
        self.session = session or db.session
        self.timeout_seconds = settings.point_timeout_seconds if settings else POINT_TIMEOUT_SECONDS

    def _bounded(self):
        return statement_timeout(self.timeout_seconds, self.session)

    def source_id_for(self, name: str) -> int | None:
        with self._bounded():
            return self.session.scalar(select(SourceSystem.id).where(SourceSystem.name == name))

    def is_already_loaded(self, blob_path: str, content_hash: str) -> bool:
        with self._bounded():
            found = self.session.scalar(
                select(FileLineage.id)
                .where(
                    FileLineage.blob_path == blob_path,
                    FileLineage.content_hash == content_hash,
                    FileLineage.status == LineageStatus.LOADED,
                )
                .limit(1)
            )
        return found is not None

    def find_inconclusive(self, blob_path: str) -> list[FileLineage]:
        with self._bounded():
            return list(
                self.session.scalars(
                    select(FileLineage)
                    .where(
                        FileLineage.blob_path == blob_path,
                        FileLineage.status.in_([LineageStatus.LOADING, LineageStatus.FAILED]),
                    )
                    .order_by(FileLineage.started_at)
                )
            )

    def discard(self, lineage: FileLineage) -> int:
        """Delete an inconclusive lineage row together with its partial raw rows."""

        if lineage.status == LineageStatus.LOADED:
            raise InvariantViolation(f"Refusing to discard loaded lineage {lineage.id}")
        with self._bounded():
            result = self.session.execute(delete(RawRecord).where(RawRecord.lineage_id == lineage.id))
            removed = result.rowcount or 0
            if has_app_context():
                current_app.logger.warning(
                    "Discarding inconclusive lineage %s for %s (%s, %s partial rows)",
                    lineage.id,
                    lineage.blob_path,
                    lineage.status.value,
                    removed,
                    extra={"pipeline_lineage_id": lineage.id, "pipeline_blob": lineage.blob_path},
                )
            self.session.delete(lineage)
            self.session.flush()
        self.session.commit()
        return removed

    def record_file_start(
        self,
        source_id: int,
        blob_path: str,
        content_hash: str,
        row_count: int,
        *,
        batch_id: str,
    ) -> str:
        lineage = FileLineage(
            batch_id=batch_id,
            source_id=source_id,
            blob_path=blob_path,
            content_hash=content_hash,
            row_count=row_count,
            status=LineageStatus.LOADING,
            started_at=utcnow(),
        )
        with self._bounded():
            self.session.add(lineage)
            self.session.flush()
        self.session.commit()
        return lineage.id

    def mark_loaded(self, lineage_id: str) -> None:
        with self._bounded():
            lineage = self.session.get(FileLineage, lineage_id)
            if lineage is None:
                raise LookupError(f"Lineage {lineage_id} does not exist")
            lineage.status = LineageStatus.LOADED
            lineage.loaded_at = utcnow()
            lineage.error_summary = None
            self.session.flush()
        self.session.commit()

    def mark_failed(self, lineage_id: str, error: BaseException | str) -> None:
        with self._bounded():
            lineage = self.session.get(FileLineage, lineage_id)
            if lineage is None:
                return
            lineage.status = LineageStatus.FAILED
            lineage.error_summary = truncate_error(error, 1000)
            self.session.flush()
        self.session.commit()

    def loaded_row_count(self, lineage_id: str) -> int:
        with self._bounded():
            return self.session.scalar(
                select(func.count()).select_from(RawRecord).where(RawRecord.lineage_id == lineage_id)
            ) or 0
