from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select, text

from config.sources import DEFAULT_SOURCES
from donorhub.models import Donation, IdentityMap, db
from donorhub.pipeline.integrity import FAIL, PASS, build_integrity_report
from donorhub.pipeline.serving import (
    SERVING_VIEWS,
    SOURCE_PRIORITY,
    ServingViewBuilder,
    dependents_of,
    get_view,
    object_kind,
)

DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,A@X.com,20\n"


def _rows(sql, **params):
    return db.session.execute(text(sql), params).mappings().all()


def test_same_email_different_case_sums_to_one_donor(ingest, build_serving):
    ingest("csv/donors.csv", DONORS_CSV)

    summary = build_serving()

    assert summary.failed == []
    donors = _rows("SELECT person_id, donation_count, total_given, lifecycle_stage FROM serving_donor_summary")
    assert len(donors) == 1
    assert donors[0]["donation_count"] == 2
    assert float(donors[0]["total_given"]) == 30.0
    assert donors[0]["lifecycle_stage"] == "lost"
    people = _rows("SELECT person_id, email, identity_count, donation_count FROM serving_person_360")
    assert len(people) == 1
    assert people[0]["person_id"] == donors[0]["person_id"]
    assert people[0]["email"] == "a@x.com"


def test_orphaned_donation_is_excluded_and_reported(ingest, build_serving, settings):
    ingest("csv/donors.csv", DONORS_CSV)
    ingest(
        "givebutter/transactions.csv",
        "Transaction ID,Contact ID,Amount,Transaction Date\nT1,404,99.00,2023-05-01\n",
    )

    build_serving()

    assert db.session.scalar(select(func.count()).select_from(Donation)) == 3
    assert len(_rows("SELECT donation_id FROM serving_donation_detail")) == 2
    report = build_integrity_report(settings)
    donations = next(link for link in report.links if link.entity == "silver_donations")
    assert (donations.total, donations.linked, donations.unlinked) == (3, 2, 1)
    assert report.checks["identity_map_complete"] == PASS
    assert report.checks["person_360_matches_masters"] == PASS
    assert any("unlinked silver_donations" in line for line in report.lines())


def test_cross_source_duplicate_gift_is_collapsed(ingest, build_serving):
    ingest("csv/donors.csv", "id,email,amount,date\n1,a@x.com,50,2023-03-01 09:00:00\n")
    ingest(
        "givebutter/contacts.csv",
        "Contact ID,First Name,Primary Email\nG1,Ann,a@x.com\n",
    )
    ingest(
        "givebutter/transactions.csv",
        "Transaction ID,Contact ID,Amount,Transaction Date\nT1,G1,50,2023-03-01 17:30:00\n",
    )

    build_serving()

    gifts = _rows("SELECT source_system, amount FROM serving_donation_detail")
    assert len(gifts) == 1
    assert len(_rows("SELECT 1 FROM serving_person_360")) == 1


def test_undated_gifts_are_never_collapsed_and_old_gifts_dropped(ingest, build_serving):
    ingest(
        "csv/gifts.csv",
        "id,email,amount,date,transaction_id\n"
        "1,a@x.com,10,,g1\n"
        "1,a@x.com,10,,g2\n"
        "1,a@x.com,10,1999-12-31,g3\n",
    )

    build_serving()

    refs = sorted(row["source_ref"] for row in _rows("SELECT source_ref FROM serving_donation_detail"))
    assert refs == ["g1", "g2"]


def test_lifecycle_stage_follows_last_gift(ingest, build_serving):
    recent = (datetime.utcnow() - timedelta(days=30)).strftime("%Y-%m-%d %H:%M:%S")
    older = (datetime.utcnow() - timedelta(days=400)).strftime("%Y-%m-%d %H:%M:%S")
    ingest(
        "csv/gifts.csv",
        f"id,email,amount,date,transaction_id\n1,a@x.com,10,{recent},g1\n2,b@x.com,10,{older},g2\n",
    )

    build_serving()

    stages = {
        row["email"]: row["lifecycle_stage"]
        for row in _rows("SELECT email, lifecycle_stage FROM serving_donor_summary")
    }
    assert stages == {"a@x.com": "active", "b@x.com": "lapsed"}


def test_person_without_gifts_is_a_prospect(contact_factory, build_serving):
    contact_factory("csv", "1", first_name="Pat", last_name="Doe", email_primary="pat@x.org")

    build_serving()

    (person,) = _rows("SELECT display_name, lifecycle_stage, donation_count FROM serving_person_360")
    assert person["display_name"] == "Pat Doe"
    assert person["lifecycle_stage"] == "prospect"
    assert person["donation_count"] == 0


def test_define_views_creates_every_view(settings):
    summary = ServingViewBuilder(settings).define_views()

    assert summary.counts() == {"views": len(SERVING_VIEWS), "created": len(SERVING_VIEWS), "failed": 0}
    assert all(object_kind(view.table_name) == "view" for view in SERVING_VIEWS)


def test_rebuilding_one_view_rebuilds_dependents(settings):
    builder = ServingViewBuilder(settings)
    builder.define_views()

    summary = builder.define_views(only="donation_detail")

    rebuilt = [result.view for result in summary.results]
    assert rebuilt[0] == "donation_detail"
    assert {"donor_summary", "donor_monthly", "person_360", "household_360"} <= set(rebuilt)
    assert "order_detail" not in rebuilt
    assert all(result.replaced == "view" for result in summary.results)


def test_plan_pulls_in_missing_dependencies(settings):
    plan = ServingViewBuilder(settings).plan("donor_summary")

    assert [view.name for view in plan] == ["donation_detail", "donor_summary"]


def test_build_views_replaces_materialized_table(settings):
    builder = ServingViewBuilder(settings)
    builder.define_views()
    connection = db.session.connection()
    connection.exec_driver_sql("DROP VIEW serving_tag_detail")
    connection.exec_driver_sql("CREATE TABLE serving_tag_detail (person_id TEXT)")
    db.session.commit()

    summary = builder.define_views(only="tag_detail")

    tag = next(result for result in summary.results if result.view == "tag_detail")
    assert tag.replaced == "table"
    assert object_kind("serving_tag_detail") == "view"


def test_dependents_of_is_transitive():
    names = [view.name for view in dependents_of("donation_detail")]

    assert names == ["donor_summary", "donor_monthly", "person_360", "household_360"]
    assert dependents_of("household_360") == []


def test_get_view_accepts_prefixed_names():
    assert get_view("serving_person_360").name == "person_360"
    with pytest.raises(ValueError, match="Unknown serving view"):
        get_view("nope")


def test_integrity_fails_when_views_missing(settings, contact_factory):
    contact_factory("csv", "1", email_primary="a@x.org")

    report = build_integrity_report(settings)

    assert report.checks["serving_views_present"] == FAIL
    assert report.checks["identity_map_complete"] == FAIL
    assert not report.passed


def test_integrity_flags_cross_identity_duplicate_emails(settings, contact_factory, build_serving):
    contact_factory("csv", "1", email_primary="a@x.org")
    contact_factory("csv", "2", email_primary="a@x.org")
    build_serving()
    row = db.session.query(IdentityMap).filter_by(source_id="2").one()
    row.master_id = "forced-split"
    row.is_primary = True
    db.session.commit()

    report = build_integrity_report(settings)

    assert report.duplicate_emails == 1
    assert report.checks["no_cross_identity_duplicate_emails"] == FAIL


def test_source_priority_names_registered_sources():
    registered = {policy.name for policy in DEFAULT_SOURCES}

    assert set(SOURCE_PRIORITY) <= registered
