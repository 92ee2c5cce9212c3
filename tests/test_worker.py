import json
from typing import Any, Dict

from flask import Flask

from donorhub.pipeline import get_celery_app, init_pipeline
from donorhub.pipeline.celery_app import DEFAULT_QUEUE_NAME
from donorhub.pipeline.tasks import ingest_blob

EAGER = {"task_always_eager": True, "task_eager_propagates": True}


def build_pipeline_app(tmp_path, **overrides) -> Flask:
    """
    Construct a minimal Flask app with the pipeline mounted for worker tests.
    """
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir(exist_ok=True)
    app = Flask(__name__, instance_path=str(instance_dir))
    app.config.update(SECRET_KEY="test-secret", TESTING=True)
    app.config.update(overrides)
    init_pipeline(app)
    return app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    sqlite_path = tmp_path / "instance" / "custom.sqlite"

    app = build_pipeline_app(tmp_path, CELERY_SQLITE_PATH=str(sqlite_path), CELERY_CONFIG=EAGER)

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_acks_late is True


def test_celery_config_accepts_json_string(tmp_path):
    app = build_pipeline_app(
        tmp_path,
        CELERY_BROKER_URL="memory://",
        CELERY_RESULT_BACKEND="cache+memory://",
        CELERY_CONFIG=json.dumps({"worker_prefetch_multiplier": 4}),
    )

    celery_app = get_celery_app(app)

    assert celery_app.conf.broker_url == "memory://"
    assert celery_app.conf.worker_prefetch_multiplier == 4


def test_worker_enabled_builds_celery_eagerly(tmp_path):
    app = build_pipeline_app(tmp_path, PIPELINE_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)

    state = app.extensions["pipeline"]
    assert state["worker_enabled"] is True
    assert state["celery_app"] is not None
    assert "csv" in state["sources"]


def test_worker_ping_cli(tmp_path):
    app = build_pipeline_app(tmp_path, PIPELINE_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)

    runner = app.test_cli_runner()
    result = runner.invoke(args=["pipeline", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(tmp_path, monkeypatch):
    app = build_pipeline_app(tmp_path, PIPELINE_WORKER_ENABLED=True, CELERY_CONFIG=EAGER)
    celery_app = get_celery_app(app)
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(celery_app, "worker_main", fake_worker_main)

    runner = app.test_cli_runner()
    result = runner.invoke(
        args=["pipeline", "worker", "run", "--loglevel", "debug", "--concurrency", "2", "--pool", "solo"]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        DEFAULT_QUEUE_NAME,
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]
    assert app.extensions["pipeline"]["worker_enabled"] is True


def test_worker_group_warns_when_disabled(tmp_path, monkeypatch):
    app = build_pipeline_app(tmp_path, CELERY_CONFIG=EAGER)
    monkeypatch.setattr(get_celery_app(app), "worker_main", lambda argv=None: None)

    result = app.test_cli_runner().invoke(args=["pipeline", "worker", "run"])

    assert result.exit_code == 0, result.output
    assert "PIPELINE_WORKER_ENABLED is false" in result.output


def test_ingest_blob_task_loads_one_file(write_blob):
    write_blob("csv/donors.csv", "id,email\n1,a@x.com\n2,b@x.com\n")

    payload = ingest_blob.run(blob_path="csv/donors.csv", batch_id="batch-7")

    assert payload["status"] == "loaded"
    assert payload["rows_inserted"] == 2
    assert payload["batch_id"] == "batch-7"


def test_ingest_blob_task_skips_loaded_file(write_blob):
    write_blob("csv/donors.csv", "id,email\n1,a@x.com\n")
    ingest_blob.run(blob_path="csv/donors.csv")

    payload = ingest_blob.run(blob_path="csv/donors.csv")

    assert payload["status"] == "skipped"
    assert payload["skip_reason"] == "already loaded"
