from unittest.mock import patch

import pytest
from botocore.exceptions import ClientError
from sqlalchemy import select

from donorhub.models import PipelineRun, PipelineRunStatus, db
from donorhub.pipeline.errors import TransientPipelineError
from donorhub.pipeline.runner import STAGES, PipelineRunner

DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,b@x.com,20\n"


def _runner(settings, blob_store, **kwargs):
    return PipelineRunner(settings, blob_store, batch_id="batch-1", sleep=lambda _seconds: None, **kwargs)


def _runs():
    return list(db.session.scalars(select(PipelineRun).order_by(PipelineRun.id)))


def test_run_all_records_every_stage(settings, blob_store, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    seen = []

    summary = _runner(settings, blob_store, on_stage=seen.append).run_all()

    assert summary.succeeded
    assert [outcome.stage for outcome in summary.stages] == list(STAGES)
    assert [outcome.stage for outcome in seen] == list(STAGES)
    runs = _runs()
    assert [run.stage for run in runs] == list(STAGES)
    assert {run.status for run in runs} == {PipelineRunStatus.SUCCEEDED}
    assert all(run.batch_id == "batch-1" and run.finished_at for run in runs)
    assert runs[0].counts_json["files_loaded"] == 1
    assert summary.integrity is not None
    assert summary.integrity.passed
    assert summary.as_dict()["stages"][0]["status"] == "succeeded"


def test_run_all_stops_at_first_failure(settings, blob_store, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    with patch(
        "donorhub.pipeline.runner.EntityTransformer.transform_all",
        side_effect=TransientPipelineError("database went away"),
    ):
        summary = _runner(settings, blob_store).run_all()

    assert not summary.succeeded
    assert [outcome.stage for outcome in summary.stages] == ["ingest", "transform"]
    assert summary.failed_stage.stage == "transform"
    assert "database went away" in summary.failed_stage.error
    runs = _runs()
    assert runs[-1].status == PipelineRunStatus.FAILED
    assert "database went away" in runs[-1].error_summary
    assert summary.integrity is not None
    assert not summary.integrity.passed


def test_failed_ingest_file_fails_the_stage(settings, blob_store, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    with patch.object(blob_store, "read_bytes", side_effect=TransientPipelineError("timed out")):
        outcome = _runner(settings, blob_store).run_stage("ingest")

    assert not outcome.succeeded
    assert "csv/donors.csv" in outcome.error


def test_resume_from_later_stage(settings, blob_store, ingest):
    ingest("csv/donors.csv", DONORS_CSV)

    summary = _runner(settings, blob_store).run_all(from_stage="transform")

    assert [outcome.stage for outcome in summary.stages] == list(STAGES[1:])
    assert summary.succeeded


def test_unknown_stage_is_rejected(settings, blob_store):
    runner = _runner(settings, blob_store)

    with pytest.raises(ValueError, match="Unknown stage 'publish'"):
        runner.run_all(from_stage="publish")
    with pytest.raises(ValueError, match="Unknown stage"):
        runner.run_stage("publish")
    assert _runs() == []


def test_unexpected_stage_error_is_recorded(settings, blob_store, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    with patch(
        "donorhub.pipeline.runner.IdentityResolver.resolve_identities",
        side_effect=RuntimeError("kaboom"),
    ):
        summary = _runner(settings, blob_store).run_all()

    assert [outcome.stage for outcome in summary.stages] == ["ingest", "transform", "resolve"]
    assert summary.failed_stage.error == "kaboom"
    runs = _runs()
    assert runs[-1].stage == "resolve"
    assert runs[-1].status == PipelineRunStatus.FAILED
    assert runs[-1].finished_at is not None
    assert PipelineRunStatus.RUNNING not in {run.status for run in runs}


def test_storage_client_error_fails_ingest_without_raising(settings, blob_store, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject")

    with patch.object(blob_store, "read_bytes", side_effect=denied):
        outcome = _runner(settings, blob_store).run_stage("ingest")

    assert not outcome.succeeded
    assert "csv/donors.csv" in outcome.error
    (run,) = _runs()
    assert run.status == PipelineRunStatus.FAILED
    assert "csv/donors.csv" in run.error_summary
