from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from asip import server
from asip.contracts.schemas import Hypothesis, PipelineConfig, RunStatus
from asip.pipeline.steps import MISSING_CREDENTIALS_MESSAGE, STOPPED_MESSAGE
from asip.prompts.defaults import STEP3_PROMPT
from asip.server import app

client = TestClient(app)


def _reset_state():
    server.manager.running_tasks.clear()
    server.manager.signals.clear_all()


def _project_with_resources():
    project = client.post("/api/projects", json={"name": "Coatings"}).json()
    target = client.post(
        f"/api/projects/{project['id']}/resources",
        json={"type": "target_spec", "name": "target.md", "content": "needs"},
    ).json()
    assets = client.post(
        f"/api/projects/{project['id']}/resources",
        json={"type": "technical_assets", "name": "assets.md", "content": "assets"},
    ).json()
    return project, target, assets


def _run_payload(target, assets, **extra):
    payload = {
        "target_spec_id": target["id"],
        "technical_assets_id": assets["id"],
        "hypothesis_count": 3,
        "loop_count": 2,
    }
    payload.update(extra)
    return payload


def test_health_check():
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_project_lifecycle():
    _reset_state()
    project = client.post("/api/projects", json={"name": "Batteries"}).json()

    assert client.get(f"/api/projects/{project['id']}").json()["name"] == "Batteries"
    assert project["id"] in [p["id"] for p in client.get("/api/projects").json()]

    assert client.delete(f"/api/projects/{project['id']}").status_code == 200
    assert client.get(f"/api/projects/{project['id']}").status_code == 404


def test_resources_crud():
    _reset_state()
    project, target, _ = _project_with_resources()

    listed = client.get(f"/api/projects/{project['id']}/resources").json()
    assert {r["type"] for r in listed} == {"target_spec", "technical_assets"}

    patched = client.patch(f"/api/resources/{target['id']}", json={"content": "updated"})
    assert patched.json()["content"] == "updated"
    assert patched.json()["name"] == "target.md"

    assert client.delete(f"/api/resources/{target['id']}").status_code == 200
    assert client.delete(f"/api/resources/{target['id']}").status_code == 404


def test_create_run_missing_api_key():
    _reset_state()
    project, target, assets = _project_with_resources()
    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="")):
        response = client.post(
            f"/api/projects/{project['id']}/runs", json=_run_payload(target, assets)
        )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "error"
    assert data["error_message"] == MISSING_CREDENTIALS_MESSAGE
    assert "Missing required API keys" in data["error_message"]
    assert server.manager.running_tasks == {}


def test_create_run_success():
    _reset_state()
    project, target, assets = _project_with_resources()
    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="fake-key")):
        with patch.object(server.manager, "_schedule") as mock_schedule:
            response = client.post(
                f"/api/projects/{project['id']}/runs",
                json=_run_payload(target, assets, strategy="per_hypothesis", job_name="batch"),
            )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "pending"
    assert data["current_step"] == 2
    assert data["current_loop"] == 1
    assert data["strategy"] == "per_hypothesis"
    mock_schedule.assert_called_once_with(data["id"])

    runs = client.get(f"/api/projects/{project['id']}/runs").json()
    assert [r["id"] for r in runs] == [data["id"]]


def test_create_run_validation():
    _reset_state()
    project, target, assets = _project_with_resources()

    too_few = client.post(
        f"/api/projects/{project['id']}/runs",
        json=_run_payload(target, assets, hypothesis_count=0),
    )
    assert too_few.status_code == 422

    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="fake-key")):
        missing = client.post(
            f"/api/projects/{project['id']}/runs",
            json=_run_payload(target, {"id": "missing"}),
        )
    assert missing.status_code == 404


def test_run_control_state_errors():
    _reset_state()
    project, target, assets = _project_with_resources()
    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="fake-key")):
        with patch.object(server.manager, "_schedule"):
            run = client.post(
                f"/api/projects/{project['id']}/runs", json=_run_payload(target, assets)
            ).json()

    pause = client.post(f"/api/runs/{run['id']}/pause")
    assert pause.status_code == 409
    assert pause.json()["code"] == "INVALID_RUN_STATE"
    assert client.post(f"/api/runs/{run['id']}/resume").status_code == 409
    assert client.get("/api/runs/nonexistent-id").status_code == 404


def test_stop_paused_run():
    _reset_state()
    project, target, assets = _project_with_resources()
    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="fake-key")):
        with patch.object(server.manager, "_schedule"):
            run = client.post(
                f"/api/projects/{project['id']}/runs", json=_run_payload(target, assets)
            ).json()
    server.manager.storage.update_run(run["id"], {"status": RunStatus.PAUSED})

    response = client.post(f"/api/runs/{run['id']}/stop")

    assert response.status_code == 200
    assert response.json()["status"] == "error"
    assert response.json()["error_message"] == STOPPED_MESSAGE


def test_download_tsv():
    _reset_state()
    project, target, assets = _project_with_resources()
    with patch.object(server.manager, "config", PipelineConfig(gemini_api_key="")):
        run = client.post(
            f"/api/projects/{project['id']}/runs", json=_run_payload(target, assets)
        ).json()

    assert client.get(f"/api/runs/{run['id']}/download").status_code == 404

    server.manager.storage.update_run(run["id"], {"step5_output": "Hypothesis Title\nA"})
    response = client.get(f"/api/runs/{run['id']}/download")
    assert response.status_code == 200
    assert response.text == "Hypothesis Title\nA"
    assert response.headers["content-type"].startswith("text/tab-separated-values")
    assert f"asip-run-{run['id']}.tsv" in response.headers["content-disposition"]


def test_hypotheses_list_and_delete():
    _reset_state()
    project, _, _ = _project_with_resources()
    server.manager.storage.create_hypotheses(
        [
            Hypothesis(project_id=project["id"], hypothesis_number=1, title="A", run_id="r1"),
            Hypothesis(project_id=project["id"], hypothesis_number=2, title="B", run_id="r2"),
        ]
    )

    listed = client.get(f"/api/projects/{project['id']}/hypotheses").json()
    assert [h["hypothesis_number"] for h in listed] == [1, 2]
    by_run = client.get(f"/api/projects/{project['id']}/hypotheses", params={"run_id": "r2"})
    assert [h["title"] for h in by_run.json()] == ["B"]

    assert client.delete(f"/api/hypotheses/{listed[0]['id']}").status_code == 200
    assert client.delete(f"/api/hypotheses/{listed[0]['id']}").status_code == 404
    remaining = client.get(f"/api/projects/{project['id']}/hypotheses").json()
    assert [h["hypothesis_number"] for h in remaining] == [2]


def test_prompt_versions():
    _reset_state()
    client.post("/api/prompts/3/reset")

    initial = client.get("/api/prompts/3").json()
    assert initial["default"] == STEP3_PROMPT
    assert initial["active_version_id"] is None

    first = client.post("/api/prompts/3", json={"content": "v1 {TECHNICAL_ASSETS}"}).json()
    second = client.post("/api/prompts/3", json={"content": "v2", "activate": False}).json()
    assert second["version"] == first["version"] + 1
    assert client.get("/api/prompts/3").json()["active_version_id"] == first["id"]

    activated = client.post(f"/api/prompts/3/{second['id']}/activate")
    assert activated.json()["is_active"] is True
    assert client.get("/api/prompts/3").json()["active_version_id"] == second["id"]

    assert client.post(f"/api/prompts/4/{second['id']}/activate").status_code == 404
    assert client.get("/api/prompts/9").status_code == 404

    client.post("/api/prompts/3/reset")
    assert client.get("/api/prompts/3").json()["active_version_id"] is None


def test_process_stale_runs_endpoint():
    report = [{"run_id": "r1", "status": "completed", "resumed": True}]
    with patch.object(
        server.manager, "process_stale_runs", AsyncMock(return_value=report)
    ) as mock_process:
        response = client.post("/api/runs/process-stale", params={"older_than": 120})

    assert response.status_code == 200
    assert response.json() == {"checked": 1, "results": report}
    mock_process.assert_awaited_once_with(120.0, 60.0)
