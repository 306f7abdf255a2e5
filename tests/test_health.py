from fastapi.testclient import TestClient

from app.main import app


def test_health_ok(runtime):
    app.state.runtime = runtime
    with TestClient(app) as client:
        r = client.get("/health")

    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["service"] == "api"
    assert isinstance(body["version"], str)
    assert body["db_ok"] is True
    assert body["queue_ready"] is True
    # ticking is left to tests under ENV=test
    assert body["scheduler_active"] is False


def test_health_without_runtime():
    app.state.runtime = None
    r = TestClient(app).get("/health")

    assert r.status_code == 200
    body = r.json()
    assert body["db_ok"] is False
    assert body["queue_ready"] is False
