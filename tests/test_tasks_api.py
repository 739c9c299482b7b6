from __future__ import annotations

import asyncio

from fastapi.testclient import TestClient

from taskflow_api.app.storage.memory import InMemoryPipelineStorage


def _create_task(client: TestClient, title: str = "Analyze churn") -> dict:
    project = client.post("/projects", json={"name": "Growth"})
    assert project.status_code == 200
    response = client.post(
        "/tasks",
        json={
            "project_id": project.json()["project_id"],
            "title": title,
            "description": f"{title} for Q3",
        },
    )
    assert response.status_code == 200
    return response.json()


def test_project_endpoints(client: TestClient) -> None:
    created = client.post("/projects", json={"name": "Atlas", "description": "migration"})
    assert created.status_code == 200
    project_id = created.json()["project_id"]

    assert client.get(f"/projects/{project_id}").json()["name"] == "Atlas"
    assert [item["project_id"] for item in client.get("/projects").json()] == [project_id]
    assert client.get("/projects/missing").status_code == 404
    assert client.post("/projects", json={"name": ""}).status_code == 422


def test_task_crud(client: TestClient) -> None:
    task = _create_task(client)
    task_id = task["task_id"]
    assert task["status"] == "pending"
    assert task["priority"] == "medium"

    patched = client.patch(f"/tasks/{task_id}", json={"priority": "high"})
    assert patched.status_code == 200
    assert patched.json()["priority"] == "high"
    assert patched.json()["title"] == "Analyze churn"

    listing = client.get("/tasks", params={"project_id": task["project_id"]})
    assert listing.status_code == 200
    assert listing.json()["total"] == 1
    assert listing.json()["items"][0]["task_id"] == task_id
    assert client.get("/tasks", params={"status": "completed"}).json()["total"] == 0
    assert client.get("/tasks", params={"status": "bogus"}).status_code == 422

    assert client.delete(f"/tasks/{task_id}").status_code == 204
    assert client.get(f"/tasks/{task_id}").status_code == 404
    assert client.delete(f"/tasks/{task_id}").status_code == 404


def test_create_task_requires_existing_project(client: TestClient) -> None:
    response = client.post("/tasks", json={"project_id": "nope", "title": "x"})
    assert response.status_code == 404


def test_execute_task_runs_pipeline_in_background(client: TestClient) -> None:
    task = _create_task(client)
    task_id = task["task_id"]

    response = client.post(f"/tasks/{task_id}/execute", headers={"X-User-Id": "u-7"})
    assert response.status_code == 202
    assert response.json() == {"task_id": task_id, "status": "accepted"}

    # TestClient returns after background tasks finish.
    runs = client.get(f"/tasks/{task_id}/runs").json()
    assert len(runs) == 1
    run_id = runs[0]["run_id"]
    assert runs[0]["status"] == "COMPLETED"
    assert client.get(f"/runs/{run_id}").json()["duration_ms"] >= 0
    assert client.get(f"/tasks/{task_id}").json()["status"] == "completed"

    logs = client.get(f"/runs/{run_id}/logs").json()
    assert [log["message"] for log in logs] == [
        "Task classified as: ANALYSIS",
        "Plan created with 2 steps",
        "Completed: Collect data",
        "Completed: Summarize",
    ]
    limited = client.get(f"/runs/{run_id}/logs", params={"limit": 1}).json()
    assert len(limited) == 1


def test_execute_unknown_task_returns_404(client: TestClient) -> None:
    assert client.post("/tasks/missing/execute").status_code == 404
    assert client.get("/tasks/missing/runs").status_code == 404


def test_run_endpoints_404_for_unknown_run(client: TestClient) -> None:
    assert client.get("/runs/missing").status_code == 404
    assert client.get("/runs/missing/logs").status_code == 404
    assert client.post("/runs/missing/cancel").status_code == 404


def test_cancel_endpoint(client: TestClient, storage: InMemoryPipelineStorage) -> None:
    task = _create_task(client)
    client.post(f"/tasks/{task['task_id']}/execute")
    finished = client.get(f"/tasks/{task['task_id']}/runs").json()[0]

    conflict = client.post(f"/runs/{finished['run_id']}/cancel")
    assert conflict.status_code == 409

    # A run still marked RUNNING with no pipeline in this process.
    running = asyncio.run(
        storage.create_run(workflow_id=finished["workflow_id"], task_id=task["task_id"])
    )
    cancelled = client.post(f"/runs/{running.run_id}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "CANCELLED"
    assert cancelled.json()["completed_at"] is not None

    logs = client.get(f"/runs/{running.run_id}/logs").json()
    assert [log["message"] for log in logs] == ["Execution cancelled"]


def test_progress_events_stream_over_websocket(client: TestClient) -> None:
    task = _create_task(client)

    with client.websocket_connect("/ws/users/u-42") as websocket:
        response = client.post(f"/tasks/{task['task_id']}/execute", headers={"X-User-Id": "u-42"})
        assert response.status_code == 202

        messages = [websocket.receive_json() for _ in range(6)]

    assert {message["event"] for message in messages} == {"task:progress"}
    payloads = [message["payload"] for message in messages]
    assert [payload["event"] for payload in payloads] == [
        "started",
        "classifying",
        "planning",
        "executing",
        "executing",
        "completed",
    ]
    assert all(payload["task_id"] == task["task_id"] for payload in payloads)
    assert payloads[4]["data"]["progress"] == 100.0


def test_websocket_only_receives_own_channel(client: TestClient) -> None:
    task = _create_task(client)
    hub = client.app.state.hub

    with client.websocket_connect("/ws/users/someone-else"):
        assert hub.subscriber_count("user:someone-else") == 1
        client.post(f"/tasks/{task['task_id']}/execute", headers={"X-User-Id": "u-1"})
        assert hub.subscriber_count("user:u-1") == 0
