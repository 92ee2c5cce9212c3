DONORS_CSV = "id,email,amount\n1,a@x.com,10\n2,b@x.com,20\n"


def test_health_reports_serving_objects(client, settings):
    response = client.get("/warehouse/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["status"] == "ok"
    assert payload["worker_enabled"] is False
    assert payload["queue"] == "pipeline"
    assert payload["serving"]["serving_person_360"] is None


def test_metrics_endpoint_exposes_prometheus_text(client):
    response = client.get("/warehouse/metrics")

    assert response.status_code == 200
    assert response.mimetype == "text/plain"
    assert b"pipeline_" in response.data


def test_metrics_endpoint_can_be_disabled(app, client):
    app.config["METRICS_ENABLED"] = False

    response = client.get("/warehouse/metrics")

    assert response.status_code == 404
    assert response.get_json()["error"] == "Metrics are disabled."


def test_query_returns_rows(client, ingest, build_serving):
    ingest("csv/donors.csv", DONORS_CSV)
    build_serving()

    response = client.post(
        "/warehouse/query",
        json={
            "sql": "SELECT email, total_given FROM serving_donor_summary WHERE total_given > :floor",
            "params": {"floor": 15},
        },
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["columns"] == ["email", "total_given"]
    assert payload["rows"] == [["b@x.com", 20.0]]
    assert payload["row_count"] == 1
    assert payload["truncated"] is False


def test_query_rejections_are_bad_requests(client):
    response = client.post("/warehouse/query", json={"sql": "DROP TABLE silver_contacts"})

    assert response.status_code == 400
    assert "Only SELECT" in response.get_json()["error"]


def test_query_body_is_validated(client):
    assert client.post("/warehouse/query", json={}).status_code == 400
    assert client.post("/warehouse/query", data="not json").status_code == 400
    response = client.post("/warehouse/query", json={"sql": "SELECT 1", "max_rows": 0})
    assert response.status_code == 400
    assert "max_rows" in response.get_json()["error"]


def test_query_against_missing_view_is_unprocessable(client):
    response = client.post("/warehouse/query", json={"sql": "SELECT * FROM serving_person_360"})

    assert response.status_code == 422
    assert "serving_person_360" in response.get_json()["error"]
