import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.models.user_pack_assignment import UserPackAssignment


@pytest.fixture
def client(runtime):
    app.state.runtime = runtime
    with TestClient(app) as c:
        yield c


def test_list_jobs(client):
    r = client.get("/jobs")
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert [j["name"] for j in body["jobs"]] == ["unselected-food-reminder", "weekly-food-check"]
    daily = body["jobs"][0]
    assert daily["schedule"] == "0 22 * * *"
    assert daily["timezone"] == "Asia/Tehran"
    assert daily["active"] is True
    assert daily["next_run_at"] is not None


def test_get_unknown_job_404(client):
    assert client.get("/jobs/nope").status_code == 404
    assert client.post("/jobs/nope/trigger").status_code == 404
    assert client.patch("/jobs/nope", json={"enabled": False}).status_code == 404


def test_update_config_validates_schedule(client):
    r = client.patch("/jobs/weekly-food-check", json={"schedule": "every friday"})
    assert r.status_code == 400

    r = client.patch("/jobs/weekly-food-check", json={"timezone": "Atlantis/Capital"})
    assert r.status_code == 400

    r = client.patch(
        "/jobs/weekly-food-check",
        json={"schedule": "30 21 * * 4", "config": {"days_ahead": 5, "min_unselected_days": 1}},
    )
    assert r.status_code == 200
    job = r.json()["job"]
    assert job["schedule"] == "30 21 * * 4"
    assert job["config"]["days_ahead"] == 5


def test_targets_roundtrip_with_packs(client, runtime):
    with runtime.session_factory() as s:
        s.add_all(
            [
                UserPackAssignment(telegram_user_id="u1", pack_id="lunch"),
                UserPackAssignment(telegram_user_id="u2", pack_id="lunch"),
            ]
        )
        s.commit()

    r = client.put(
        "/jobs/unselected-food-reminder/targets",
        json={"include_user_ids": ["u3"], "exclude_user_ids": ["u1"], "pack_ids": ["lunch"]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["targets"]["pack_ids"] == ["lunch"]
    assert body["final_user_ids"] == ["u2", "u3"]

    g = client.get("/jobs/unselected-food-reminder")
    assert g.json()["targets"]["exclude_user_ids"] == ["u1"]


def test_trigger_then_executions_and_stats(client, messenger):
    r = client.post("/jobs/unselected-food-reminder/trigger")
    assert r.status_code == 200
    execution = r.json()["execution"]
    assert execution["status"] == "success"
    assert execution["users_affected"] == 1
    assert execution["error"] is None
    assert len(messenger.sent) == 1

    listing = client.get("/jobs/unselected-food-reminder/executions").json()
    assert [e["id"] for e in listing["executions"]] == [execution["id"]]

    all_runs = client.get("/jobs/executions", params={"job_name": "unselected-food-reminder"}).json()
    assert all_runs["executions"][0]["job_name"] == "unselected-food-reminder"

    stats = client.get("/jobs/unselected-food-reminder/stats").json()["stats"]
    assert stats["total_executions"] == 1
    assert stats["successful_executions"] == 1
    assert stats["last_execution"]["id"] == execution["id"]


def test_finished_execution_cannot_be_reopened(client):
    execution = client.post("/jobs/unselected-food-reminder/trigger").json()["execution"]

    r = client.patch(f"/jobs/executions/{execution['id']}", json={"status": "running"})
    assert r.status_code == 409

    assert client.patch("/jobs/executions/missing", json={"status": "failed"}).status_code == 404


def test_create_custom_job_and_delete(client):
    r = client.post(
        "/jobs",
        json={
            "name": "holiday-notice",
            "job_key": "custom-message",
            "display_name": "Holiday notice",
            "config": {"message": "Kitchen closed tomorrow"},
        },
    )
    assert r.status_code == 200
    job = r.json()["job"]
    assert job["schedule"] == "0 9 * * *"
    assert job["config"]["message"] == "Kitchen closed tomorrow"

    assert client.post("/jobs", json={**job, "job_key": "custom-message"}).status_code == 409
    bad = {"name": "x", "job_key": "nope", "display_name": "X"}
    assert client.post("/jobs", json=bad).status_code == 400

    assert client.delete("/jobs/holiday-notice").status_code == 200
    assert client.get("/jobs/holiday-notice").status_code == 404
