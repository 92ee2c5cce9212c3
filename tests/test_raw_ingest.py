import dataclasses
from unittest.mock import MagicMock, Mock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from flask import Flask
from sqlalchemy import func, select
from sqlalchemy.exc import DataError, OperationalError

from config.sources import load_source_registry
from donorhub.models import FileLineage, LineageStatus, RawRecord, SourceSystem, db
from donorhub.pipeline.errors import InvariantViolation, SchemaContractError
from donorhub.pipeline.lineage import FileLineageTracker
from donorhub.pipeline.raw_loader import (
    STATUS_FAILED,
    STATUS_LOADED,
    STATUS_REJECTED,
    STATUS_SKIPPED,
    RawIngestionLoader,
)
from donorhub.pipeline.storage import BlobInfo, S3BlobStore

DONORS_CSV = "id,first_name,email\n1,Ann,ann@example.org\n2,Bob,bob@example.org\n3,Cy,cy@example.org\n"


def _raw_rows(lineage_id=None):
    stmt = select(RawRecord).order_by(RawRecord.id)
    if lineage_id:
        stmt = stmt.where(RawRecord.lineage_id == lineage_id)
    return list(db.session.scalars(stmt))


def _loader(blob_store, settings, **kwargs):
    return RawIngestionLoader(blob_store, settings, sleep=Mock(), **kwargs)


def test_ingest_loads_rows_in_file_order(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)

    result = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert result.status == STATUS_LOADED
    assert result.rows_inserted == 3
    rows = _raw_rows()
    assert [row.row_num for row in rows] == [1, 2, 3]
    assert [row.payload_json["first_name"] for row in rows] == ["Ann", "Bob", "Cy"]
    lineage = db.session.get(FileLineage, result.lineage_id)
    assert lineage.status == LineageStatus.LOADED
    assert lineage.row_count == 3
    assert lineage.loaded_at is not None
    assert FileLineageTracker().loaded_row_count(result.lineage_id) == 3


def test_reingest_same_content_is_skipped(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    _loader(blob_store, settings).ingest("csv/donors.csv")

    again = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert again.status == STATUS_SKIPPED
    assert again.skip_reason == "already loaded"
    assert len(_raw_rows()) == 3


def test_trailing_blank_lines_do_not_force_reload(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    _loader(blob_store, settings).ingest("csv/donors.csv")

    write_blob("csv/donors.csv", DONORS_CSV + "\n\n")
    again = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert again.status == STATUS_SKIPPED
    assert db.session.scalar(select(func.count()).select_from(FileLineage)) == 1


def test_changed_content_loads_a_new_lineage(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    first = _loader(blob_store, settings).ingest("csv/donors.csv")

    write_blob("csv/donors.csv", DONORS_CSV + "4,Dee,dee@example.org\n")
    second = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert second.status == STATUS_LOADED
    assert second.lineage_id != first.lineage_id
    assert len(_raw_rows(second.lineage_id)) == 4


def test_header_only_file_loads_zero_rows(blob_store, settings, write_blob):
    write_blob("csv/empty.csv", "id,email\n")

    result = _loader(blob_store, settings).ingest("csv/empty.csv")

    assert result.status == STATUS_LOADED
    assert result.rows_inserted == 0
    assert db.session.get(FileLineage, result.lineage_id).status == LineageStatus.LOADED


def test_unknown_source_is_rejected(blob_store, settings, write_blob):
    write_blob("nowhere/file.csv", DONORS_CSV)

    result = _loader(blob_store, settings).ingest("nowhere/file.csv")

    assert result.status == STATUS_REJECTED
    assert "unknown source" in result.error
    assert _raw_rows() == []


def test_malformed_file_is_rejected_without_lineage(blob_store, settings, write_blob):
    write_blob("csv/broken.csv", 'id,note\n1,"never closed\n')

    result = _loader(blob_store, settings).ingest("csv/broken.csv")

    assert result.status == STATUS_REJECTED
    assert db.session.scalar(select(func.count()).select_from(FileLineage)) == 0


def test_duplicate_pass_files_are_skipped(blob_store, settings, write_blob):
    write_blob("keap/pass_2_contacts.csv", DONORS_CSV)
    write_blob("keap/contacts.csv.xlsx", "binary")
    write_blob("keap/__notes.csv", DONORS_CSV)

    summary = _loader(blob_store, settings).ingest_all(source="keap")

    reasons = {result.blob_path: result.skip_reason for result in summary.results}
    assert reasons["keap/pass_2_contacts.csv"].startswith("duplicate pass")
    assert reasons["keap/contacts.csv.xlsx"].startswith("excluded suffix")
    assert reasons["keap/__notes.csv"] == "hidden"
    assert summary.files_loaded == 0


def test_ingest_all_counts_and_seeds_sources(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    write_blob("csv/more.csv", "id\n9\n")
    write_blob("mystery/file.csv", "id\n1\n")
    seen = []

    summary = _loader(blob_store, settings).ingest_all(on_result=seen.append)

    assert summary.counts() == {
        "files_loaded": 2,
        "files_skipped": 0,
        "files_rejected": 1,
        "files_failed": 0,
        "rows_inserted": 4,
    }
    assert len(seen) == 3
    names = set(db.session.scalars(select(SourceSystem.name)))
    assert {"csv", "keap", "stripe"} <= names


def test_ingest_all_only_and_offset(blob_store, settings, write_blob):
    write_blob("csv/a.csv", "id\n1\n")
    write_blob("csv/b.csv", "id\n2\n")
    write_blob("csv/c.csv", "id\n3\n")

    only = _loader(blob_store, settings).ingest_all(only="csv/b.csv")
    resumed = _loader(blob_store, settings).ingest_all(source="csv", offset=2)

    assert [result.blob_path for result in only.results] == ["csv/b.csv"]
    assert [result.blob_path for result in resumed.results] == ["csv/c.csv"]


def test_disabled_source_is_skipped(app, blob_store, settings, write_blob):
    narrowed = dataclasses.replace(settings, enabled_sources=("stripe",))
    write_blob("csv/a.csv", "id\n1\n")

    summary = _loader(blob_store, narrowed).ingest_all()

    assert summary.results[0].skip_reason == "source disabled"


def test_header_row_override_from_policy(blob_store, settings, write_blob, tmp_path):
    registry_file = tmp_path / "sources.yaml"
    registry_file.write_text(
        "sources:\n  - name: keap\n    header_rows:\n      'Orders*.csv': 1\n",
        encoding="utf-8",
    )
    tuned = dataclasses.replace(settings, sources=load_source_registry(registry_file))
    write_blob("keap/Orders 2024.csv", "Keap export\nid,total\n5,12.50\n")

    result = _loader(blob_store, tuned).ingest("keap/Orders 2024.csv")

    assert result.rows_inserted == 1
    assert _raw_rows()[0].payload_json == {"id": "5", "total": "12.50"}


def test_xml_blob_is_loaded(blob_store, settings, write_blob):
    write_blob(
        "keap/tags.xml",
        '<resultset><row><field name="ContactId">1</field><field name="Tag">VIP</field></row></resultset>',
    )

    result = _loader(blob_store, settings).ingest("keap/tags.xml")

    assert result.status == STATUS_LOADED
    assert _raw_rows()[0].payload_json == {"ContactId": "1", "Tag": "VIP"}


def test_exhausted_batch_retries_mark_lineage_failed(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    locked = OperationalError("INSERT", {}, Exception("database is locked"))

    with patch("donorhub.pipeline.raw_loader.statement_timeout", side_effect=locked):
        result = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert result.status == STATUS_FAILED
    assert "after 3 attempts" in result.error
    lineage = db.session.get(FileLineage, result.lineage_id)
    assert lineage.status == LineageStatus.FAILED
    assert lineage.error_summary


def test_failed_lineage_is_discarded_before_reload(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    locked = OperationalError("INSERT", {}, Exception("database is locked"))
    with patch("donorhub.pipeline.raw_loader.statement_timeout", side_effect=locked):
        failed = _loader(blob_store, settings).ingest("csv/donors.csv")

    retried = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert retried.status == STATUS_LOADED
    assert retried.discarded_lineages == 1
    assert db.session.get(FileLineage, failed.lineage_id) is None
    assert len(_raw_rows()) == 3


def test_loading_lineage_with_partial_rows_is_discarded(blob_store, settings, write_blob, seeded_sources):
    write_blob("csv/donors.csv", DONORS_CSV)
    tracker = FileLineageTracker()
    stale_id = tracker.record_file_start(seeded_sources["csv"], "csv/donors.csv", "stale", 3, batch_id="crashed")
    db.session.add(
        RawRecord(
            lineage_id=stale_id,
            source_id=seeded_sources["csv"],
            row_num=1,
            record_hash="x" * 64,
            payload_json={"id": "1"},
        )
    )
    db.session.commit()

    result = _loader(blob_store, settings).ingest("csv/donors.csv")

    assert result.discarded_lineages == 1
    rows = _raw_rows()
    assert len(rows) == 3
    assert all(row.lineage_id == result.lineage_id for row in rows)


def test_download_failure_is_reported_as_failed(settings):
    store = Mock()
    store.read_bytes.side_effect = ConnectionError("reset by peer")

    result = RawIngestionLoader(store, settings, sleep=Mock()).ingest("csv/donors.csv")

    assert result.status == STATUS_FAILED
    assert store.read_bytes.call_count == settings.max_retries


def test_discard_refuses_loaded_lineage(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    result = _loader(blob_store, settings).ingest("csv/donors.csv")

    with pytest.raises(InvariantViolation, match="Refusing to discard"):
        FileLineageTracker().discard(db.session.get(FileLineage, result.lineage_id))


def test_batch_delay_pauses_between_batches(blob_store, settings, write_blob):
    write_blob("csv/donors.csv", DONORS_CSV)
    sleep = Mock()
    paced = dataclasses.replace(settings, batch_delay_ms=250)

    RawIngestionLoader(blob_store, paced, sleep=sleep).ingest("csv/donors.csv")

    # 3 rows in batches of 2: one pause between the two batches
    sleep.assert_called_once_with(0.25)


def test_local_store_refuses_paths_outside_root(blob_store):
    with pytest.raises(SchemaContractError):
        blob_store.read_bytes("csv/../../etc/passwd")


def test_s3_store_lists_under_prefix():
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "Contents": [
                {"Key": "exports/stripe/b.csv", "Size": 10},
                {"Key": "exports/stripe/", "Size": 0},
                {"Key": "exports/stripe/a.csv", "Size": 5},
            ]
        }
    ]
    store = S3BlobStore("bucket", "exports/", client=client)

    blobs = store.list_blobs("stripe")

    client.get_paginator.return_value.paginate.assert_called_once_with(Bucket="bucket", Prefix="exports/stripe/")
    assert blobs == [BlobInfo("stripe/a.csv", 5), BlobInfo("stripe/b.csv", 10)]


def _lineage_status(blob_path):
    return db.session.scalar(select(FileLineage.status).where(FileLineage.blob_path == blob_path))


def _reads_failing_for(blob_store, failing_path, exc):
    original = blob_store.read_bytes

    def _read(path):
        if path == failing_path:
            raise exc
        return original(path)

    return patch.object(blob_store, "read_bytes", side_effect=_read)


def _inserts_failing_for(failing_path):
    original = RawIngestionLoader._insert_rows

    def _insert(self, parsed, *, lineage_id, source_id, label):
        if label == failing_path:
            raise DataError("INSERT INTO raw_records", {}, Exception("value too long for column"))
        return original(self, parsed, lineage_id=lineage_id, source_id=source_id, label=label)

    return patch.object(RawIngestionLoader, "_insert_rows", autospec=True, side_effect=_insert)


def test_missing_object_is_rejected_and_the_batch_continues(blob_store, settings, write_blob):
    write_blob("csv/a.csv", "id\n1\n")
    write_blob("csv/b.csv", "id\n2\n")
    gone = ClientError({"Error": {"Code": "NoSuchKey", "Message": "gone"}}, "GetObject")

    with _reads_failing_for(blob_store, "csv/a.csv", gone):
        summary = _loader(blob_store, settings).ingest_all(source="csv")

    statuses = {result.blob_path: result.status for result in summary.results}
    assert statuses == {"csv/a.csv": STATUS_REJECTED, "csv/b.csv": STATUS_LOADED}
    assert _lineage_status("csv/a.csv") is None
    assert _lineage_status("csv/b.csv") == LineageStatus.LOADED


def test_storage_client_error_fails_only_that_file(blob_store, settings, write_blob):
    write_blob("csv/a.csv", "id\n1\n")
    write_blob("csv/b.csv", "id\n2\n")
    denied = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject")

    with _reads_failing_for(blob_store, "csv/a.csv", denied):
        summary = _loader(blob_store, settings).ingest_all(source="csv")

    assert summary.files_failed == 1
    assert summary.files_loaded == 1
    assert "AccessDenied" in summary.results[0].error


def test_unreachable_storage_endpoint_is_retried(blob_store, settings, write_blob):
    write_blob("csv/a.csv", "id\n1\n")
    write_blob("csv/b.csv", "id\n2\n")
    unreachable = EndpointConnectionError(endpoint_url="https://s3.example.test")

    with _reads_failing_for(blob_store, "csv/a.csv", unreachable) as read_bytes:
        summary = _loader(blob_store, settings).ingest_all(source="csv")

    attempts = [call for call in read_bytes.call_args_list if call.args == ("csv/a.csv",)]
    assert len(attempts) == settings.max_retries
    assert [result.status for result in summary.results] == [STATUS_FAILED, STATUS_LOADED]


def test_non_transient_insert_error_marks_lineage_failed(blob_store, settings, write_blob):
    write_blob("csv/a.csv", "id\n1\n")
    write_blob("csv/b.csv", "id\n2\n")

    with _inserts_failing_for("csv/a.csv"):
        summary = _loader(blob_store, settings).ingest_all(source="csv")

    failed, loaded = summary.results
    assert failed.status == STATUS_FAILED
    assert "value too long" in failed.error
    assert failed.lineage_id is not None
    assert _lineage_status("csv/a.csv") == LineageStatus.FAILED
    assert loaded.status == STATUS_LOADED
    assert _lineage_status("csv/b.csv") == LineageStatus.LOADED


def test_concurrent_ingest_keeps_order_and_isolates_failures(blob_store, settings, write_blob):
    paths = [write_blob(f"csv/part_{index}.csv", f"id,email\n{index},p{index}@x.com\n") for index in range(5)]
    concurrent = dataclasses.replace(settings, ingest_workers=3)

    with _inserts_failing_for("csv/part_1.csv"):
        summary = _loader(blob_store, concurrent).ingest_all(source="csv")

    assert [result.blob_path for result in summary.results] == paths
    assert summary.files_loaded == 4
    assert summary.files_failed == 1
    assert _lineage_status("csv/part_1.csv") == LineageStatus.FAILED
    assert db.session.scalar(select(func.count()).select_from(RawRecord)) == 4


@pytest.fixture
def file_backed_app(tmp_path):
    """A second app bound to an on-disk SQLite database."""
    file_app = Flask(__name__, instance_path=str(tmp_path / "instance"))
    file_app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'warehouse.sqlite'}",
    )
    db.init_app(file_app)
    with file_app.app_context():
        db.create_all()
        yield file_app
        db.session.remove()
        db.drop_all()


def test_concurrent_ingest_on_file_backed_sqlite(file_backed_app, blob_store, settings, write_blob):
    for index in range(8):
        write_blob(f"csv/part_{index}.csv", f"id,email\n{index},p{index}@x.com\n")
    concurrent = dataclasses.replace(settings, ingest_workers=4)

    summary = _loader(blob_store, concurrent).ingest_all(source="csv")

    assert summary.files_loaded == 8
    assert summary.files_failed == 0
    assert set(db.session.scalars(select(FileLineage.status))) == {LineageStatus.LOADED}
    assert db.session.scalar(select(func.count()).select_from(RawRecord)) == 8
