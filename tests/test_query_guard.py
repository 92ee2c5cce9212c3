import dataclasses

import pytest

from donorhub.pipeline.errors import QueryRejected
from donorhub.pipeline.query_guard import GuardedQuery, allowed_relations, validate_query

DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,b@x.com,20\n3,c@x.com,30\n"


@pytest.mark.parametrize(
    "sql, reason",
    [
        ("", "Empty"),
        ("DELETE FROM serving_donor_summary", "Only SELECT"),
        ("SELECT * FROM serving_donor_summary; DROP TABLE silver_contacts", "single statement"),
        ("SELECT * FROM serving_donor_summary -- sneaky", "comments"),
        ("SELECT * /* hi */ FROM serving_donor_summary", "comments"),
        ("SELECT * INTO backup FROM serving_donor_summary", "INTO"),
        ("WITH x AS (SELECT 1) DELETE FROM serving_person_360", "DELETE"),
        ("SELECT xp_cmdshell('dir')", "procedure"),
        ("SELECT * FROM silver_contacts", "silver_contacts"),
        ("SELECT * FROM raw_records", "raw_records"),
        ("SELECT * FROM meta_file_lineage", "meta_file_lineage"),
        ("SELECT name FROM sqlite_master", "sqlite_master"),
        ("SELECT * FROM donors", "donors"),
        ("SELECT * FROM serving_person_360 p JOIN elsewhere e ON e.id = p.person_id", "elsewhere"),
        ("SELECT * FROM serving_person_360, elsewhere", "elsewhere"),
        ("SELECT * FROM serving_person_360 p, donors d WHERE d.id = p.person_id", "donors"),
        ("select * from serving_donor_summary where pragma = 1", "PRAGMA"),
    ],
)
def test_rejected_statements(sql, reason):
    with pytest.raises(QueryRejected, match=reason):
        validate_query(sql, max_rows=10)


def test_limit_is_appended_when_missing():
    assert validate_query("SELECT * FROM serving_donor_summary;", max_rows=25) == (
        "SELECT * FROM serving_donor_summary LIMIT 25"
    )


def test_existing_limit_is_kept():
    sql = "SELECT * FROM serving_donor_summary ORDER BY total_given DESC LIMIT 5"

    assert validate_query(sql, max_rows=25) == sql


def test_keywords_inside_string_literals_are_allowed():
    sql = "SELECT * FROM serving_person_360 WHERE display_name = 'Drop; Table -- Co'"

    assert validate_query(sql, max_rows=10).endswith("LIMIT 10")


def test_ctes_and_quoted_serving_names_are_allowed():
    sql = (
        'WITH top AS (SELECT person_id FROM "serving_donor_summary") '
        "SELECT * FROM top JOIN serving_person_360 USING (person_id)"
    )

    validate_query(sql, max_rows=10)


def test_comma_joined_serving_objects_are_allowed():
    sql = (
        "SELECT p.display_name, d.total_given FROM serving_person_360 p, serving_donor_summary d "
        "WHERE d.person_id = p.person_id"
    )

    assert validate_query(sql, max_rows=10).endswith("LIMIT 10")


def test_allowed_relations_are_serving_objects():
    names = allowed_relations()

    assert "serving_person_360" in names
    assert all(name.startswith("serving_") for name in names)


def test_guarded_query_returns_rows(ingest, build_serving, settings):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()

    result = GuardedQuery(settings).execute(
        "SELECT email, total_given FROM serving_donor_summary WHERE total_given >= :floor ORDER BY total_given",
        params={"floor": 20},
    )

    assert result.columns == ["email", "total_given"]
    assert [row[0] for row in result.rows] == ["b@x.com", "c@x.com"]
    assert result.records()[0]["email"] == "b@x.com"
    assert not result.truncated


def test_guarded_query_caps_rows(ingest, build_serving, settings):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()
    capped = dataclasses.replace(settings, query_max_rows=2)

    result = GuardedQuery(capped).execute("SELECT person_id FROM serving_person_360 LIMIT 100", max_rows=50)

    assert result.row_count == 2
    assert result.truncated


def test_guarded_query_injects_limit(ingest, build_serving, settings):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()

    result = GuardedQuery(settings).execute("SELECT person_id FROM serving_person_360", max_rows=1)

    assert result.sql.endswith("LIMIT 1")
    assert result.row_count == 1
