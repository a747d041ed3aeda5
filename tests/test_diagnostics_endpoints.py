from fastapi.testclient import TestClient

from journey_activity.main import app
from journey_activity.observability import incr_metric, reset_metrics
from journey_activity.providers.marketing_cloud import client as mc_client
from journey_activity.routers import diagnostics as diagnostics_router


class _FakeResponse:
    def __init__(self, status_code: int, payload: dict):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def _set_credentials(monkeypatch, client_id="cid", client_secret="csecret"):
    monkeypatch.setattr(diagnostics_router.settings, "sfmc_client_id", client_id)
    monkeypatch.setattr(diagnostics_router.settings, "sfmc_client_secret", client_secret)
    monkeypatch.setattr(diagnostics_router.settings, "sfmc_auth_base_url", "https://mc.auth.example")
    monkeypatch.setattr(diagnostics_router.settings, "sfmc_rest_base_url", "https://mc.rest.example")
    monkeypatch.setattr(diagnostics_router.settings, "de_name", "Master_Subscriber")
    monkeypatch.setattr(diagnostics_router.settings, "de_external_key", "MASTER")


def test_connection_test_reports_missing_credentials(monkeypatch):
    _set_credentials(monkeypatch, client_id=None, client_secret=None)
    client = TestClient(app)

    response = client.get("/test-sfmc")

    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert response.json()["message"] == "SFMC credentials not configured"


def test_connection_test_success(monkeypatch):
    _set_credentials(monkeypatch)
    calls: list[str] = []

    def _fake_post(**kwargs):
        calls.append(kwargs["url"])
        return _FakeResponse(200, {"access_token": "tok", "rest_instance_url": "https://tenant.rest.example"})

    monkeypatch.setattr(mc_client, "_post_json", _fake_post)
    client = TestClient(app)

    response = client.get("/test-sfmc")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["rest_base_url"] == "https://tenant.rest.example"
    assert body["data_extension"] == {"name": "Master_Subscriber", "external_key": "MASTER"}
    assert calls == ["https://mc.auth.example/v2/token"]


def test_connection_test_failure_returns_500(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(mc_client, "_post_json", lambda **_: _FakeResponse(401, {"error": "invalid_client"}))
    client = TestClient(app)

    response = client.get("/test-sfmc")

    assert response.status_code == 500
    assert response.json()["status"] == "error"
    assert "HTTP 401" in response.json()["error"]


def test_update_existing_requires_configured_record_key(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(diagnostics_router.settings, "test_update_record_key", None)
    client = TestClient(app)

    response = client.get("/test-update-existing")

    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert response.json()["message"] == "TEST_UPDATE_RECORD_KEY not configured"


def test_update_existing_walks_candidates_and_reports_the_winner(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(diagnostics_router.settings, "test_update_record_key", "101010")
    calls: list[dict] = []

    def _fake_post(**kwargs):
        calls.append(kwargs)
        if kwargs["url"].endswith("/v2/token"):
            return _FakeResponse(200, {"access_token": "tok", "expires_in": 1200})
        if kwargs["url"].endswith("/rowset"):
            return _FakeResponse(400, {"message": "unsupported"})
        return _FakeResponse(202, {"requestId": "r-1"})

    monkeypatch.setattr(mc_client, "_post_json", _fake_post)
    client = TestClient(app)

    response = client.get("/test-update-existing")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["contact_key"] == "101010"
    assert body["test_message"].startswith("TEST UPDATE - ")
    assert body["candidate"] == "async_rows"
    assert body["result"] == {"requestId": "r-1"}
    assert [call["url"] for call in calls] == [
        "https://mc.auth.example/v2/token",
        "https://mc.rest.example/hub/v1/dataevents/key:MASTER/rowset",
        "https://mc.rest.example/data/v1/async/dataextensions/key:MASTER/rows",
    ]
    assert calls[-1]["json_payload"]["items"][0]["SubscriberKey"] == "101010"


def test_update_existing_returns_500_when_every_candidate_fails(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(diagnostics_router.settings, "test_update_record_key", "101010")

    def _fake_post(**kwargs):
        if kwargs["url"].endswith("/v2/token"):
            return _FakeResponse(200, {"access_token": "tok"})
        return _FakeResponse(404, {"message": "no such data extension"})

    monkeypatch.setattr(mc_client, "_post_json", _fake_post)
    client = TestClient(app)

    response = client.get("/test-update-existing")

    assert response.status_code == 500
    assert response.json()["status"] == "error"
    assert "not_found" in response.json()["error"]


def test_update_existing_returns_500_on_token_failure(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(diagnostics_router.settings, "test_update_record_key", "101010")
    monkeypatch.setattr(mc_client, "_post_json", lambda **_: _FakeResponse(401, {"error": "invalid_client"}))
    client = TestClient(app)

    response = client.get("/test-update-existing")

    assert response.status_code == 500
    assert "HTTP 401" in response.json()["error"]


def test_connection_test_survives_non_string_instance_url(monkeypatch):
    _set_credentials(monkeypatch)
    monkeypatch.setattr(
        mc_client, "_post_json", lambda **_: _FakeResponse(200, {"access_token": "tok", "rest_instance_url": 123})
    )
    client = TestClient(app)

    response = client.get("/test-sfmc")

    assert response.status_code == 200
    assert response.json()["rest_base_url"] == "https://mc.rest.example"


def test_ping_and_health():
    client = TestClient(app)
    assert client.get("/ping").text == "pong"
    assert client.post("/ping").text == "pong"

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert set(health.json()["environment"]) == {
        "jwt_secret_configured",
        "marketing_cloud_configured",
        "activity_log_enabled",
    }


def test_metrics_snapshot_endpoint():
    reset_metrics()
    incr_metric("activity.execute.upserted")
    incr_metric("marketing_cloud.upsert.succeeded", candidate="async_rows")
    client = TestClient(app)

    response = client.get("/diagnostics/metrics")

    assert response.status_code == 200
    assert response.json()["counters"] == {
        "activity.execute.upserted": 1,
        "marketing_cloud.upsert.succeeded|candidate=async_rows": 1,
    }
    reset_metrics()


def test_unknown_route_lists_available_endpoints():
    client = TestClient(app)

    response = client.get("/config.json")

    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["message"] == "Route not found"
    assert body["method"] == "GET"
    assert body["url"] == "/config.json"
    endpoints = body["available_endpoints"]
    assert "POST /execute - execute activity" in endpoints
    assert "GET /health - health" in endpoints
    assert any(entry.startswith("GET /test-update-existing - ") for entry in endpoints)
    assert not any("/docs" in entry or "/openapi" in entry for entry in endpoints)


def test_other_http_errors_keep_default_shape():
    client = TestClient(app)

    response = client.get("/execute")

    assert response.status_code == 405
    assert response.json() == {"detail": "Method Not Allowed"}
