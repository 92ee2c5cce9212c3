"""
Raw ingestion: blob storage -> ``raw_records``.

Each blob is downloaded in full, fingerprinted, checked against the lineage
ledger and only then parsed. Rows are inserted in fixed-size batches, one
commit per batch, with a configurable pause between batches so concurrent
workers do not saturate a small shared database.
"""

from __future__ import annotations

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from botocore.exceptions import BotoCoreError, ClientError
from flask import Flask, current_app, has_app_context
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError

from config.sources import SourcePolicy

from donorhub.models import RawRecord, db

from .csv_scanner import ParsedFile, delimited_content_hash, parse_delimited
from .db import statement_timeout
from .errors import SchemaContractError, TransientPipelineError, truncate_error
from .lineage import FileLineageTracker, seed_source_systems
from .metrics import record_batch_duration, record_ingest_file, record_raw_rows
from .retry import retry_with_backoff
from .settings import PipelineSettings
from .storage import BlobInfo, BlobStore
from .xml_reader import parse_xml_rows, xml_content_hash

STATUS_LOADED = "loaded"
STATUS_SKIPPED = "skipped"
STATUS_REJECTED = "rejected"
STATUS_FAILED = "failed"

T = TypeVar("T")

_MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "404"})


@dataclass
class IngestResult:
    blob_path: str
    source: str
    status: str
    rows_inserted: int = 0
    skip_reason: str | None = None
    error: str | None = None
    lineage_id: str | None = None
    discarded_lineages: int = 0

    def as_dict(self) -> dict[str, object]:
        return {
            "blob_path": self.blob_path,
            "source": self.source,
            "status": self.status,
            "rows_inserted": self.rows_inserted,
            "skip_reason": self.skip_reason,
            "error": self.error,
            "lineage_id": self.lineage_id,
            "discarded_lineages": self.discarded_lineages,
        }


@dataclass
class IngestSummary:
    batch_id: str
    results: list[IngestResult] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def files_loaded(self) -> int:
        return self._count(STATUS_LOADED)

    @property
    def files_skipped(self) -> int:
        return self._count(STATUS_SKIPPED)

    @property
    def files_rejected(self) -> int:
        return self._count(STATUS_REJECTED)

    @property
    def files_failed(self) -> int:
        return self._count(STATUS_FAILED)

    @property
    def rows_inserted(self) -> int:
        return sum(result.rows_inserted for result in self.results)

    def counts(self) -> dict[str, int]:
        return {
            "files_loaded": self.files_loaded,
            "files_skipped": self.files_skipped,
            "files_rejected": self.files_rejected,
            "files_failed": self.files_failed,
            "rows_inserted": self.rows_inserted,
        }

    def as_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "counts": self.counts(),
            "files": [result.as_dict() for result in self.results],
        }


@dataclass
class _Download:
    blob: BlobInfo
    policy: SourcePolicy
    content: bytes
    content_hash: str

    @property
    def is_xml(self) -> bool:
        return self.blob.path.lower().endswith(".xml")


def _is_missing_object(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _MISSING_OBJECT_CODES


def _log(level: str, message: str, *args, **extra) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args, extra=extra)


class RawIngestionLoader:
    """Streams blobs into the raw layer; one instance per batch."""

    def __init__(
        self,
        store: BlobStore,
        settings: PipelineSettings,
        *,
        batch_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings
        self.batch_id = batch_id or str(uuid.uuid4())
        self.sleep = sleep

    # -- listing -----------------------------------------------------------

    def candidate_blobs(self, source: str | None = None) -> tuple[list[BlobInfo], list[IngestResult]]:
        """
        Split the store listing into ingestible blobs and policy skips.

        Blobs under an unregistered source folder are reported as rejected.
        """

        candidates: list[BlobInfo] = []
        skipped: list[IngestResult] = []
        active = {policy.name for policy in self.settings.active_sources()}
        for blob in self.store.list_blobs(source):
            policy = self.settings.policy_for(blob.source)
            if policy is None:
                skipped.append(
                    IngestResult(blob.path, blob.source, STATUS_REJECTED, error=f"unknown source '{blob.source}'")
                )
                continue
            if blob.source not in active:
                skipped.append(IngestResult(blob.path, blob.source, STATUS_SKIPPED, skip_reason="source disabled"))
                continue
            reason = policy.skip_reason(blob.relative_name)
            if reason:
                skipped.append(IngestResult(blob.path, blob.source, STATUS_SKIPPED, skip_reason=reason))
                continue
            candidates.append(blob)
        return candidates, skipped

    # -- single file -------------------------------------------------------

    def ingest(self, blob: BlobInfo | str) -> IngestResult:
        """Load one blob; returns rows inserted or the reason it was skipped."""

        if isinstance(blob, str):
            blob = BlobInfo(blob)
        fetched = self._guarded(blob, lambda: self._fetch(blob))
        if isinstance(fetched, _Download):
            return self._finish(self._guarded(blob, lambda: self._load(fetched)))
        return self._finish(fetched)

    def _guarded(self, blob: BlobInfo, step: Callable[[], T]) -> T | IngestResult:
        """
        Run one step of a file load, turning every per-file error into a result.

        A file that fails never raises out of here, so the rest of the batch
        keeps going. Missing objects and contract violations are rejections;
        storage and database errors are failures.
        """

        try:
            return step()
        except SchemaContractError as exc:
            return self._rejected(blob, exc)
        except ClientError as exc:
            if _is_missing_object(exc):
                return self._rejected(blob, exc)
            return self._failed(blob, exc)
        except (TransientPipelineError, SQLAlchemyError, BotoCoreError) as exc:
            db.session.rollback()
            return self._failed(blob, exc)

    def _rejected(self, blob: BlobInfo, exc: BaseException) -> IngestResult:
        result = IngestResult(blob.path, blob.source, STATUS_REJECTED, error=truncate_error(exc))
        _log("warning", "Rejected %s: %s", blob.path, result.error, pipeline_stage="ingest", pipeline_blob=blob.path)
        return result

    def _failed(self, blob: BlobInfo, exc: BaseException) -> IngestResult:
        result = IngestResult(blob.path, blob.source, STATUS_FAILED, error=truncate_error(exc))
        _log("error", "Failed %s: %s", blob.path, result.error, pipeline_stage="ingest", pipeline_blob=blob.path)
        return result

    @staticmethod
    def _finish(result: IngestResult) -> IngestResult:
        record_ingest_file(result.source, "failed" if result.status in (STATUS_FAILED, STATUS_REJECTED) else result.status)
        return result

    def _with_retry(self, fn: Callable[[], T], label: str) -> T:
        return retry_with_backoff(fn, settings=self.settings, label=label, sleep=self.sleep)

    def _fetch(self, blob: BlobInfo) -> _Download | IngestResult:
        """Download and fingerprint a blob; touches storage only, never the database."""

        policy = self.settings.policy_for(blob.source)
        if policy is None:
            raise SchemaContractError(f"unknown source '{blob.source}'", blob_path=blob.path)
        reason = policy.skip_reason(blob.relative_name)
        if reason:
            return IngestResult(blob.path, blob.source, STATUS_SKIPPED, skip_reason=reason)

        content = self._with_retry(lambda: self.store.read_bytes(blob.path), f"download:{blob.path}")
        if blob.path.lower().endswith(".xml"):
            content_hash = xml_content_hash(content)
        else:
            content_hash = delimited_content_hash(content, policy.delimiter)
        return _Download(blob, policy, content, content_hash)

    def _load(self, download: _Download) -> IngestResult:
        blob, policy = download.blob, download.policy
        tracker = FileLineageTracker(self.settings)
        label = f"lineage:{blob.path}"

        if self._with_retry(lambda: tracker.is_already_loaded(blob.path, download.content_hash), label):
            _log("info", "Skipping %s (already loaded)", blob.path, pipeline_stage="ingest", pipeline_blob=blob.path)
            return IngestResult(blob.path, blob.source, STATUS_SKIPPED, skip_reason="already loaded")

        discarded = 0
        for stale in self._with_retry(lambda: tracker.find_inconclusive(blob.path), label):
            self._with_retry(lambda stale=stale: tracker.discard(stale), label)
            discarded += 1

        if download.is_xml:
            parsed = parse_xml_rows(download.content)
        else:
            parsed = parse_delimited(
                download.content,
                header_row=policy.header_row_for(blob.relative_name),
                delimiter=policy.delimiter,
            )

        source_id = self._with_retry(lambda: tracker.source_id_for(blob.source), label)
        if source_id is None:
            source_id = self._with_retry(
                lambda: seed_source_systems([policy], timeout_seconds=self.settings.point_timeout_seconds)[policy.name],
                label,
            )

        lineage_id = self._with_retry(
            lambda: tracker.record_file_start(
                source_id,
                blob.path,
                parsed.content_hash,
                parsed.row_count,
                batch_id=self.batch_id,
            ),
            label,
        )
        _log(
            "info",
            "Loading %s (%s rows)",
            blob.path,
            parsed.row_count,
            pipeline_stage="ingest",
            pipeline_blob=blob.path,
            pipeline_lineage_id=lineage_id,
        )

        try:
            inserted = self._insert_rows(parsed, lineage_id=lineage_id, source_id=source_id, label=blob.path)
            self._with_retry(lambda: tracker.mark_loaded(lineage_id), label)
        except (TransientPipelineError, SQLAlchemyError) as exc:
            db.session.rollback()
            error = truncate_error(exc)
            self._with_retry(lambda: tracker.mark_failed(lineage_id, exc), label)
            _log(
                "error",
                "Failed %s: %s",
                blob.path,
                error,
                pipeline_stage="ingest",
                pipeline_blob=blob.path,
                pipeline_lineage_id=lineage_id,
            )
            return IngestResult(
                blob.path,
                blob.source,
                STATUS_FAILED,
                error=error,
                lineage_id=lineage_id,
                discarded_lineages=discarded,
            )

        record_raw_rows(blob.source, inserted)
        return IngestResult(
            blob.path,
            blob.source,
            STATUS_LOADED,
            rows_inserted=inserted,
            lineage_id=lineage_id,
            discarded_lineages=discarded,
        )

    def _insert_rows(self, parsed: ParsedFile, *, lineage_id: str, source_id: int, label: str) -> int:
        batch_size = self.settings.batch_size
        inserted = 0
        total = parsed.row_count
        for start in range(0, total, batch_size):
            chunk = parsed.rows[start : start + batch_size]
            rows = [
                {
                    "lineage_id": lineage_id,
                    "source_id": source_id,
                    "row_num": row.row_num,
                    "record_hash": row.record_hash,
                    "payload_json": row.values,
                }
                for row in chunk
            ]

            def _write_batch(rows=rows) -> None:
                with statement_timeout(self.settings.bulk_timeout_seconds):
                    db.session.execute(insert(RawRecord), rows)
                db.session.commit()

            started = time.perf_counter()
            retry_with_backoff(
                _write_batch,
                settings=self.settings,
                label=f"ingest:{label}#{start // batch_size + 1}",
                sleep=self.sleep,
            )
            record_batch_duration("ingest", time.perf_counter() - started)
            inserted += len(rows)
            if start + batch_size < total and self.settings.batch_delay_ms:
                self.sleep(self.settings.batch_delay_ms / 1000.0)
        return inserted

    # -- many files --------------------------------------------------------

    def ingest_all(
        self,
        *,
        source: str | None = None,
        only: str | None = None,
        offset: int = 0,
        workers: int | None = None,
        on_result: Callable[[IngestResult], None] | None = None,
    ) -> IngestSummary:
        """
        Ingest every candidate blob, up to ``workers`` files at a time.

        ``offset`` skips that many candidates (resume after an interrupted
        run); ``only`` restricts the run to one blob path. SQLite allows a
        single writer, so there the workers only download and the calling
        thread does the database work.
        """

        summary = IngestSummary(batch_id=self.batch_id)
        seed_source_systems(self.settings.active_sources(), timeout_seconds=self.settings.point_timeout_seconds)
        candidates, skipped = self.candidate_blobs(source)
        if only:
            candidates = [blob for blob in candidates if blob.path == only]
            skipped = [result for result in skipped if result.blob_path == only]
        candidates = candidates[offset:] if offset else candidates

        def _collect(result: IngestResult) -> None:
            summary.results.append(result)
            if on_result:
                on_result(result)

        for result in skipped:
            _collect(result)

        worker_count = max(1, workers or self.settings.ingest_workers)
        if worker_count == 1 or len(candidates) <= 1:
            for blob in candidates:
                _collect(self.ingest(blob))
            return summary

        app = current_app._get_current_object()
        with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="ingest") as executor:
            if db.engine.dialect.name == "sqlite":
                self._ingest_single_writer(app, executor, candidates, worker_count, _collect)
                return summary

            def _run(blob: BlobInfo) -> IngestResult:
                with app.app_context():
                    return self.ingest(blob)

            for result in executor.map(_run, candidates):
                _collect(result)
        return summary

    def _ingest_single_writer(
        self,
        app: Flask,
        executor: ThreadPoolExecutor,
        candidates: list[BlobInfo],
        window: int,
        collect: Callable[[IngestResult], None],
    ) -> None:
        # At most ``window`` downloaded files are held in memory at a time.
        def _fetch(blob: BlobInfo) -> _Download | IngestResult:
            with app.app_context():
                return self._guarded(blob, lambda: self._fetch(blob))

        for start in range(0, len(candidates), window):
            chunk = candidates[start : start + window]
            for blob, fetched in zip(chunk, executor.map(_fetch, chunk)):
                if isinstance(fetched, _Download):
                    fetched = self._guarded(blob, lambda: self._load(fetched))
                collect(self._finish(fetched))
