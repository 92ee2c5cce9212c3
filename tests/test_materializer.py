import dataclasses

import pytest
from sqlalchemy import text

from donorhub.models import db
from donorhub.pipeline.errors import InvariantViolation
from donorhub.pipeline.materializer import MaterializeState, ViewMaterializer, detect_state
from donorhub.pipeline.serving import SERVING_VIEWS, VIEW_ORDER, get_view, object_kind

DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,b@x.com,20\n"
UNMATERIALIZED_360_INPUTS = ("order_detail", "subscription_detail", "tag_detail", "communication_detail")


@pytest.fixture
def materializer(settings):
    return ViewMaterializer(settings, sleep=lambda _seconds: None)


@pytest.fixture
def served(ingest, build_serving):
    ingest("csv/donors.csv", DONORS_CSV)
    return build_serving()


def test_materialize_all_reaches_indexed_tables(served, materializer):
    summary = materializer.materialize_all()

    assert [result.view for result in summary.results] == list(VIEW_ORDER)
    assert {result.status for result in summary.results} == {"materialized"}
    assert all(result.state_before is MaterializeState.VIEW_ONLY for result in summary.results)
    assert all(result.state_after is MaterializeState.TABLE_INDEXED for result in summary.results)
    assert all(object_kind(view.table_name) == "table" for view in SERVING_VIEWS)
    rows = {result.view: result.rows for result in summary.results}
    assert rows["donation_detail"] == 2
    assert rows["person_360"] == 2
    assert summary.counts()["materialized"] == len(SERVING_VIEWS)


def test_second_run_skips_indexed_tables(served, materializer):
    materializer.materialize_all()

    again = materializer.materialize_all()

    assert {result.status for result in again.results} == {"skipped"}
    assert again.counts()["rows"] > 0


def test_missing_index_is_rebuilt_without_copying(served, materializer):
    materializer.materialize_all()
    db.session.connection().exec_driver_sql("DROP INDEX idx_donor_summary_total_given")
    db.session.commit()

    result = materializer.materialize("donor_summary")

    assert result.status == "indexed"
    assert result.state_before is MaterializeState.TABLE_NO_INDEX
    assert result.state_after is MaterializeState.TABLE_INDEXED
    assert result.rows == 2


def test_dependents_survive_the_swap(served, materializer):
    materializer.materialize("donation_detail")

    assert object_kind("serving_donation_detail") == "table"
    assert object_kind("serving_donor_summary") == "view"
    total = db.session.execute(text("SELECT SUM(total_given) FROM serving_donor_summary")).scalar()
    assert float(total) == 30.0


def test_dependency_that_is_still_a_view_is_refused(served, materializer):
    with pytest.raises(InvariantViolation, match="before donation_detail"):
        materializer.materialize("donor_summary")

    summary = materializer.materialize_all(only=["donor_summary"])

    (result,) = summary.results
    assert result.status == "failed"
    assert result.state_after is MaterializeState.VIEW_ONLY
    assert "donation_detail" in result.error
    assert object_kind("serving_donor_summary") == "view"


def test_failure_stops_the_run(served, materializer):
    summary = materializer.materialize_all(only=["donor_summary", "donor_monthly"])

    assert [result.view for result in summary.results] == ["donor_summary"]
    assert [result.view for result in summary.failed] == ["donor_summary"]
    assert object_kind("serving_donor_monthly") == "view"


def test_skipped_views_are_excluded_and_allowed_as_dependencies(served, materializer):
    summary = materializer.materialize_all(skip=["donation_detail"])

    statuses = {result.view: result.status for result in summary.results}
    assert statuses["donation_detail"] == "excluded"
    assert statuses["donor_summary"] == "materialized"
    assert object_kind("serving_donation_detail") == "view"
    assert object_kind("serving_donor_summary") == "table"


def test_interrupted_copy_is_discarded_and_redone(served, materializer):
    connection = db.session.connection()
    connection.exec_driver_sql("CREATE TABLE serving_tag_detail_tmp (junk TEXT)")
    db.session.commit()
    assert detect_state(get_view("tag_detail")) is MaterializeState.COPYING

    result = materializer.materialize("tag_detail")

    assert result.state_before is MaterializeState.COPYING
    assert result.status == "materialized"
    assert object_kind("serving_tag_detail_tmp") is None
    columns = db.session.execute(text("SELECT * FROM serving_tag_detail")).keys()
    assert "person_id" in columns


def test_missing_object_is_refused(materializer):
    with pytest.raises(InvariantViolation, match="does not exist"):
        materializer.materialize("tag_detail")


def test_resume_from_a_view(served, materializer):
    materializer.materialize("donation_detail")
    seen = []

    summary = materializer.materialize_all(
        from_view="donor_summary", skip=UNMATERIALIZED_360_INPUTS, on_result=seen.append
    )

    assert [result.view for result in summary.results] == [
        "donor_summary",
        "donor_monthly",
        "person_360",
        "household_360",
    ]
    assert summary.failed == []
    assert seen == summary.results


def test_pause_between_materialized_views(served, settings):
    sleeps = []
    paced = dataclasses.replace(settings, materialize_delay_ms=250)

    ViewMaterializer(paced, sleep=sleeps.append).materialize_all(only=["tag_detail", "order_detail"])

    assert sleeps == [0.25, 0.25]
