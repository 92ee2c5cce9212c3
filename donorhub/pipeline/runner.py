"""
Sequential orchestration of the pipeline stages with run bookkeeping.

Each stage records a ``meta_pipeline_runs`` row (running -> succeeded or
failed). ``run_all`` stops at the first failed stage; downstream stages never
run on stale input.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import current_app, has_app_context

from donorhub.models import PipelineRun, PipelineRunStatus, db

from .db import statement_timeout
from .errors import PipelineError, StageFailed, truncate_error
from .integrity import IntegrityReport, build_integrity_report
from .materializer import ViewMaterializer
from .raw_loader import RawIngestionLoader
from .resolver import IdentityResolver
from .serving import ServingViewBuilder
from .settings import PipelineSettings
from .storage import BlobStore
from .transform import EntityTransformer

STAGES = ("ingest", "transform", "resolve", "build-views", "materialize")


@dataclass
class StageOutcome:
    stage: str
    succeeded: bool
    counts: dict[str, object] = field(default_factory=dict)
    error: str | None = None
    run_id: int | None = None
    duration_seconds: float = 0.0

    def as_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "status": "succeeded" if self.succeeded else "failed",
            "counts": dict(self.counts),
            "error": self.error,
            "run_id": self.run_id,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class PipelineRunSummary:
    batch_id: str
    stages: list[StageOutcome] = field(default_factory=list)
    integrity: IntegrityReport | None = None

    @property
    def succeeded(self) -> bool:
        return len(self.stages) > 0 and all(outcome.succeeded for outcome in self.stages)

    @property
    def failed_stage(self) -> StageOutcome | None:
        return next((outcome for outcome in self.stages if not outcome.succeeded), None)

    def as_dict(self) -> dict[str, object]:
        return {
            "batch_id": self.batch_id,
            "succeeded": self.succeeded,
            "stages": [outcome.as_dict() for outcome in self.stages],
            "integrity": self.integrity.as_dict() if self.integrity else None,
        }


def _log(level: str, message: str, *args, exc_info: bool = False, **extra) -> None:
    if has_app_context():
        getattr(current_app.logger, level)(message, *args, exc_info=exc_info, extra=extra)


class PipelineRunner:
    def __init__(
        self,
        settings: PipelineSettings,
        store: BlobStore,
        *,
        batch_id: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_stage: Callable[[StageOutcome], None] | None = None,
    ):
        self.settings = settings
        self.store = store
        self.batch_id = batch_id or str(uuid.uuid4())
        self.sleep = sleep
        self.on_stage = on_stage

    # -- stages ------------------------------------------------------------

    def _ingest(self) -> dict[str, object]:
        loader = RawIngestionLoader(self.store, self.settings, batch_id=self.batch_id, sleep=self.sleep)
        summary = loader.ingest_all()
        if summary.files_failed:
            failed = [result.blob_path for result in summary.results if result.status == "failed"]
            raise StageFailed("ingest", f"{summary.files_failed} file(s) failed: {', '.join(failed[:5])}")
        return summary.counts()

    def _transform(self) -> dict[str, object]:
        return EntityTransformer(self.settings, sleep=self.sleep).transform_all().counts()

    def _resolve(self) -> dict[str, object]:
        return IdentityResolver(self.settings, sleep=self.sleep).resolve_identities().counts()

    def _build_views(self) -> dict[str, object]:
        summary = ServingViewBuilder(self.settings).define_views()
        if summary.failed:
            raise StageFailed("build-views", f"{summary.failed[0].view}: {summary.failed[0].error}")
        return summary.counts()

    def _materialize(self) -> dict[str, object]:
        summary = ViewMaterializer(self.settings, sleep=self.sleep).materialize_all()
        if summary.failed:
            raise StageFailed("materialize", f"{summary.failed[0].view}: {summary.failed[0].error}")
        return summary.counts()

    def _handler(self, stage: str) -> Callable[[], dict[str, object]]:
        handlers = {
            "ingest": self._ingest,
            "transform": self._transform,
            "resolve": self._resolve,
            "build-views": self._build_views,
            "materialize": self._materialize,
        }
        try:
            return handlers[stage]
        except KeyError:
            raise ValueError(f"Unknown stage '{stage}'. Expected one of: {', '.join(STAGES)}") from None

    # -- bookkeeping -------------------------------------------------------

    def _record_run(self, run_id: int, status: PipelineRunStatus, **values) -> None:
        with statement_timeout(self.settings.point_timeout_seconds):
            run = db.session.get(PipelineRun, run_id)
            if run is None:
                return
            run.status = status
            run.finished_at = datetime.now(timezone.utc)
            for name, value in values.items():
                setattr(run, name, value)
            db.session.flush()
        db.session.commit()

    def run_stage(self, stage: str) -> StageOutcome:
        """Run one stage; failures are recorded and returned, never raised."""

        handler = self._handler(stage)
        run = PipelineRun(
            batch_id=self.batch_id,
            stage=stage,
            status=PipelineRunStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
            params_json={"batch_id": self.batch_id},
        )
        with statement_timeout(self.settings.point_timeout_seconds):
            db.session.add(run)
            db.session.flush()
        db.session.commit()
        run_id = run.id

        started = time.perf_counter()
        _log("info", "Stage %s started", stage, pipeline_stage=stage, pipeline_batch_id=self.batch_id)
        try:
            counts = handler()
        except Exception as exc:
            # Any stage error ends up on the run row, not only in a traceback.
            db.session.rollback()
            outcome = StageOutcome(
                stage,
                False,
                error=truncate_error(exc),
                run_id=run_id,
                duration_seconds=time.perf_counter() - started,
            )
            self._record_run(run_id, PipelineRunStatus.FAILED, error_summary=outcome.error)
            _log(
                "error",
                "Stage %s failed: %s",
                stage,
                outcome.error,
                exc_info=not isinstance(exc, PipelineError),
                pipeline_stage=stage,
            )
        else:
            outcome = StageOutcome(
                stage,
                True,
                counts=counts,
                run_id=run_id,
                duration_seconds=time.perf_counter() - started,
            )
            self._record_run(run_id, PipelineRunStatus.SUCCEEDED, counts_json=counts)
            _log(
                "info",
                "Stage %s finished in %.1fs",
                stage,
                outcome.duration_seconds,
                pipeline_stage=stage,
                pipeline_counts=counts,
            )
        if self.on_stage:
            self.on_stage(outcome)
        return outcome

    def run_all(self, from_stage: str | None = None) -> PipelineRunSummary:
        """
        Run ``ingest -> transform -> resolve -> build-views -> materialize``.

        ``from_stage`` resumes at a later stage. The integrity report is
        attached whether or not every stage succeeded.
        """

        if from_stage is not None and from_stage not in STAGES:
            raise ValueError(f"Unknown stage '{from_stage}'. Expected one of: {', '.join(STAGES)}")
        start = STAGES.index(from_stage) if from_stage else 0

        summary = PipelineRunSummary(batch_id=self.batch_id)
        for stage in STAGES[start:]:
            outcome = self.run_stage(stage)
            summary.stages.append(outcome)
            if not outcome.succeeded:
                _log("warning", "Stopping pipeline after failed stage %s", stage, pipeline_stage=stage)
                break
        summary.integrity = build_integrity_report(self.settings)
        return summary
