from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from telescope_collector import main
from telescope_collector.config import ApiSettings, CollectorSettings, Settings, StorageSettings
from telescope_collector.main import create_app
from telescope_collector.services.models import RequestDraft

START_NANOS = 1_700_000_000_000_000_000


def _span(path, status="200"):
    return {
        "traceId": "t1",
        "spanId": "s1",
        "kind": 2,
        "startTimeUnixNano": str(START_NANOS),
        "endTimeUnixNano": str(START_NANOS + 20_000_000),
        "attributes": [
            {"key": "http.method", "value": {"stringValue": "GET"}},
            {"key": "http.target", "value": {"stringValue": path}},
            {"key": "http.status_code", "value": {"intValue": status}},
        ],
    }


def _traces(*spans):
    return {"resourceSpans": [{"resource": {}, "scopeSpans": [{"spans": list(spans)}]}]}


@pytest.fixture
def client():
    settings = Settings(collector=CollectorSettings(default_limit=2, max_limit=3), storage=StorageSettings())
    with TestClient(create_app(settings)) as test_client:
        yield test_client


@pytest.fixture
def sql_client(tmp_path):
    settings = Settings(storage=StorageSettings(backend="sql", database_url=f"sqlite:///{tmp_path / 'api.db'}"))
    with TestClient(create_app(settings)) as test_client:
        yield test_client


def _telescope(client):
    return client.app.state.telescope_state.telescope


def test_otlp_traces_show_up_in_requests(client):
    response = client.post("/v1/traces", json=_traces(_span("/a"), _span("/b", "404")))

    assert response.status_code == 200
    assert response.json() == {}
    entries = client.get("/__telescope/api/requests").json()
    assert sorted(entry["path"] for entry in entries) == ["/a", "/b"]
    assert client.get("/__telescope/api/requests", params={"status": "4xx"}).json()[0]["path"] == "/b"


def test_partial_success_is_reported(client):
    broken = _span("/x")
    broken["endTimeUnixNano"] = "0"

    response = client.post("/v1/traces", json=_traces(_span("/ok"), broken))

    assert response.json() == {"partialSuccess": {"rejectedSpans": "1"}}


def test_empty_body_is_full_success(client):
    assert client.post("/v1/logs", content=b"", headers={"content-type": "application/json"}).json() == {}


def test_protobuf_is_unsupported(client):
    response = client.post("/v1/metrics", content=b"\x0a\x00", headers={"content-type": "application/x-protobuf"})

    assert response.status_code == 415


def test_invalid_json_is_rejected(client):
    response = client.post("/v1/traces", content=b"{nope", headers={"content-type": "application/json"})

    assert response.status_code == 400


def test_otlp_logs_are_queryable_by_level(client):
    payload = {
        "resourceLogs": [
            {
                "scopeLogs": [
                    {
                        "logRecords": [
                            {"severityNumber": 17, "body": {"stringValue": "payment failed"}},
                            {"severityNumber": 9, "body": {"stringValue": "payment started"}},
                        ]
                    }
                ]
            }
        ]
    }

    assert client.post("/v1/logs", json=payload).json() == {}

    errors = client.get("/__telescope/api/logs", params={"level": "error"}).json()
    assert [entry["message"] for entry in errors] == ["payment failed"]


def test_default_and_maximum_limits(client):
    client.post("/v1/traces", json=_traces(*[_span(f"/p{index}") for index in range(5)]))

    assert len(client.get("/__telescope/api/requests").json()) == 2
    assert len(client.get("/__telescope/api/requests", params={"limit": 50}).json()) == 3


def test_single_entry_lookup_and_not_found(client):
    client.post("/v1/traces", json=_traces(_span("/one")))
    entry_id = client.get("/__telescope/api/requests").json()[0]["id"]

    assert client.get(f"/__telescope/api/requests/{entry_id}").json()["path"] == "/one"
    assert client.get("/__telescope/api/requests/missing").status_code == 404
    assert client.get("/__telescope/api/exceptions/missing").status_code == 404


def test_exceptions_are_listed(client):
    portal_telescope = _telescope(client)
    client.portal.call(portal_telescope.exception, ValueError("broken"))

    exceptions = client.get("/__telescope/api/exceptions").json()

    assert [entry["name"] for entry in exceptions] == ["ValueError"]


def test_stats_and_prune(client):
    client.post("/v1/traces", json=_traces(_span("/a"), _span("/b")))

    assert client.get("/__telescope/api/stats").json()["requests"] == 2

    future = (datetime.now(timezone.utc) + timedelta(minutes=1)).isoformat()
    assert client.post("/__telescope/api/prune", json={"older_than": future}).json() == {"removed": 2}
    assert client.get("/__telescope/api/stats").json()["requests"] == 0


def test_metrics_endpoints(client):
    telescope = _telescope(client)
    for status in (200, 200, 500):
        draft = RequestDraft(method="GET", path="/orders", url="http://localhost/orders", status=status, duration=10.0)
        client.portal.call(telescope.record_request, draft)

    metrics = client.get("/__telescope/api/metrics").json()
    assert metrics["total_requests"] == 3
    assert metrics["error_rate"] == pytest.approx(100 / 3)

    endpoints = client.get("/__telescope/api/metrics/endpoints").json()
    assert endpoints[0]["path"] == "/orders"

    details = client.get("/__telescope/api/metrics/endpoint", params={"method": "GET", "path": "/orders"}).json()
    assert details["count"] == 3
    assert details["status_distribution"] == {"2xx": 2, "3xx": 0, "4xx": 0, "5xx": 1}

    assert client.get("/__telescope/api/metrics/status").json()["5xx"] == 1

    assert client.post("/__telescope/api/metrics/reset").json() == {"status": "reset"}
    assert client.get("/__telescope/api/metrics").json()["total_requests"] == 0


def test_unknown_endpoint_details_are_not_found(client):
    response = client.get("/__telescope/api/metrics/endpoint", params={"method": "GET", "path": "/nope"})

    assert response.status_code == 404


def test_inverted_metrics_range_is_rejected(client):
    response = client.get(
        "/__telescope/api/metrics",
        params={"start": "2024-01-02T00:00:00Z", "end": "2024-01-01T00:00:00Z"},
    )

    assert response.status_code == 400


def test_dashboard_requests_are_not_recorded(client):
    draft = RequestDraft(method="GET", path="/__telescope/api/requests", url="http://localhost", status=200, duration=1.0)

    assert client.portal.call(_telescope(client).record_request, draft) == ""


def test_sql_backend_serves_the_same_api(sql_client):
    sql_client.post("/v1/traces", json=_traces(_span("/sql")))

    entries = sql_client.get("/__telescope/api/requests", params={"search": "sql"}).json()

    assert [entry["path"] for entry in entries] == ["/sql"]
    assert sql_client.get("/__telescope/api/stats").json()["requests"] == 1


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_run_serves_on_configured_host_and_port(monkeypatch):
    calls = []
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **options: calls.append((target, options)))
    settings = Settings(api=ApiSettings(host="127.0.0.1", port=9000, log_level="WARNING"))

    main.run(settings)

    target, options = calls[0]
    assert isinstance(target, FastAPI)
    assert options == {"host": "127.0.0.1", "port": 9000, "log_level": "warning"}
