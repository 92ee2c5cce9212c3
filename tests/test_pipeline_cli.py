import json
from unittest.mock import Mock, patch

from sqlalchemy import func, select

from donorhub.models import PipelineRun, RawRecord, db
from donorhub.pipeline.errors import InvariantViolation

DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,b@x.com,20\n"


def _invoke(runner, *args):
    return runner.invoke(args=["pipeline", *args])


def test_group_lists_stages(runner):
    result = _invoke(runner)

    assert result.exit_code == 0, result.output
    assert "Pipeline stages:" in result.output
    assert "  - build-views" in result.output


def test_sources_lists_and_seeds_registry(runner):
    result = _invoke(runner, "sources")

    assert result.exit_code == 0, result.output
    assert "givebutter" in result.output
    assert "excluded prefixes" in result.output


def test_ingest_loads_blobs(runner, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    result = _invoke(runner, "ingest", "--summary-json")

    assert result.exit_code == 0, result.output
    assert "csv/donors.csv rows=2" in result.output
    assert '"files_loaded": 1' in result.output
    assert db.session.scalar(select(func.count()).select_from(RawRecord)) == 2


def test_ingest_rejects_unknown_source(runner, blob_store):
    result = _invoke(runner, "ingest", "--source", "nope")

    assert result.exit_code == 1
    assert "Unknown source 'nope'." in result.output


def test_ingest_queue_sends_one_task_per_blob(runner, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    write_blob("csv/more.csv", DONORS_CSV)
    celery_app = Mock()
    celery_app.send_task.side_effect = [Mock(id="task-1"), Mock(id="task-2")]

    with patch("donorhub.pipeline.cli.get_celery_app", return_value=celery_app):
        result = _invoke(runner, "ingest", "--queue", "--source", "csv")

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip().splitlines()[-1])
    assert payload["status"] == "queued"
    assert [task["task_id"] for task in payload["tasks"]] == ["task-1", "task-2"]
    celery_app.send_task.assert_any_call(
        "pipeline.ingest_blob",
        kwargs={"blob_path": "csv/donors.csv", "batch_id": payload["batch_id"]},
    )
    assert db.session.scalar(select(func.count()).select_from(RawRecord)) == 0


def test_transform_resolve_and_build_views(runner, ingest):
    ingest("csv/donors.csv", DONORS_CSV)

    transformed = _invoke(runner, "transform")
    resolved = _invoke(runner, "resolve")
    built = _invoke(runner, "build-views")

    assert transformed.exit_code == 0, transformed.output
    assert "csv.contacts" in transformed.output
    assert resolved.exit_code == 0, resolved.output
    assert "masters" in resolved.output
    assert built.exit_code == 0, built.output
    assert "person_360" in built.output


def test_materialize_reports_each_view(runner, ingest, build_serving):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()

    result = _invoke(runner, "materialize", "--only", "tag_detail")

    assert result.exit_code == 0, result.output
    assert "[materialized] tag_detail" in result.output


def test_materialize_failure_exits_non_zero(runner):
    result = _invoke(runner, "materialize", "--only", "donation_detail")

    assert result.exit_code == 1
    assert "Materializing donation_detail failed:" in result.output


def test_validate_strict_fails_without_serving_views(runner):
    lenient = _invoke(runner, "validate")
    strict = _invoke(runner, "validate", "--strict")

    assert lenient.exit_code == 0, lenient.output
    assert strict.exit_code == 1
    assert "Integrity checks failed:" in strict.output
    assert "serving_views_present" in strict.output


def test_run_all_runs_every_stage(runner, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    result = _invoke(runner, "run-all")

    assert result.exit_code == 0, result.output
    assert "Pipeline batch" in result.output
    assert "== ingest: ok" in result.output
    assert "== materialize: ok" in result.output
    assert db.session.scalar(select(func.count()).select_from(PipelineRun)) == 5


def test_run_all_stops_at_failed_stage(runner, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    with patch(
        "donorhub.pipeline.runner.IdentityResolver.resolve_identities",
        side_effect=InvariantViolation("boom"),
    ):
        result = _invoke(runner, "run-all")

    assert result.exit_code == 1
    assert "== resolve: FAILED" in result.output
    assert "Pipeline stopped at resolve: boom" in result.output
    assert db.session.scalar(select(func.count()).select_from(PipelineRun)) == 3


def test_query_prints_rows(runner, ingest, build_serving):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()

    result = _invoke(runner, "query", "SELECT email FROM serving_donor_summary ORDER BY email", "--max-rows", "1")

    assert result.exit_code == 0, result.output
    assert "a@x.com" in result.output
    assert "b@x.com" not in result.output
    assert "1 row(s)" in result.output


def test_query_rejection_is_reported(runner):
    result = _invoke(runner, "query", "DELETE FROM serving_donor_summary")

    assert result.exit_code == 1
    assert "Query rejected:" in result.output
