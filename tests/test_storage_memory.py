from __future__ import annotations

import pytest

from taskflow_api.app.storage.memory import InMemoryPipelineStorage


@pytest.mark.anyio
async def test_task_crud_and_filters(storage: InMemoryPipelineStorage) -> None:
    project = await storage.create_project(name="Alpha", description="first")
    other = await storage.create_project(name="Beta")
    first = await storage.create_task(project_id=project.project_id, title="one")
    second = await storage.create_task(project_id=project.project_id, title="two", priority="high")
    await storage.create_task(project_id=other.project_id, title="three")

    assert first.status == "pending"
    assert second.priority == "high"
    assert await storage.count_tasks(project_id=project.project_id) == 2
    assert await storage.count_tasks() == 3

    await storage.update_task(first.task_id, status="completed")
    completed = await storage.list_tasks(status="completed")
    assert [task.task_id for task in completed] == [first.task_id]

    page = await storage.list_tasks(project_id=project.project_id, limit=1, offset=1)
    assert len(page) == 1

    assert await storage.delete_task(second.task_id) is True
    assert await storage.delete_task(second.task_id) is False
    assert await storage.get_task(second.task_id) is None


@pytest.mark.anyio
async def test_update_task_keeps_unspecified_fields(storage: InMemoryPipelineStorage) -> None:
    project = await storage.create_project(name="Alpha")
    task = await storage.create_task(project_id=project.project_id, title="t", description="d")

    updated = await storage.update_task(task.task_id, status="in_progress")

    assert updated.title == "t"
    assert updated.description == "d"
    assert updated.status == "in_progress"
    assert updated.updated_at >= task.updated_at


@pytest.mark.anyio
async def test_updates_on_missing_rows_raise_key_error(storage: InMemoryPipelineStorage) -> None:
    with pytest.raises(KeyError):
        await storage.update_task("missing", status="failed")
    with pytest.raises(KeyError):
        await storage.update_run("missing", status="FAILED")


@pytest.mark.anyio
async def test_returned_records_are_copies(storage: InMemoryPipelineStorage) -> None:
    project = await storage.create_project(name="Alpha")
    task = await storage.create_task(project_id=project.project_id, title="t")
    task.title = "mutated"

    stored = await storage.get_task(task.task_id)
    assert stored is not None
    assert stored.title == "t"


@pytest.mark.anyio
async def test_run_lifecycle_and_logs(storage: InMemoryPipelineStorage) -> None:
    project = await storage.create_project(name="Alpha")
    workflow = await storage.create_workflow(project_id=project.project_id, name="wf")
    run = await storage.create_run(workflow_id=workflow.workflow_id, task_id="task-1")

    assert run.status == "RUNNING"
    assert run.completed_at is None

    for index in range(3):
        await storage.append_log(
            run_id=run.run_id, level="INFO", message=f"entry {index}", data={"n": index}
        )
    await storage.append_log(run_id="other", level="ERROR", message="noise")

    logs = await storage.get_logs(run.run_id, limit=2)
    assert [log.message for log in logs] == ["entry 0", "entry 1"]
    assert logs[0].log_id < logs[1].log_id

    finished = await storage.update_run(run.run_id, status="COMPLETED", duration_ms=12)
    assert finished.status == "COMPLETED"
    assert finished.duration_ms == 12
    assert [item.run_id for item in await storage.list_runs("task-1")] == [run.run_id]


@pytest.mark.anyio
async def test_update_run_with_expected_status_only_moves_a_running_run(
    storage: InMemoryPipelineStorage,
) -> None:
    run = await storage.create_run(workflow_id="wf", task_id="task-1")

    cancelled = await storage.update_run(
        run.run_id, status="CANCELLED", duration_ms=5, expected_status="RUNNING"
    )
    assert cancelled.status == "CANCELLED"

    unchanged = await storage.update_run(
        run.run_id, status="FAILED", error="late failure", expected_status="RUNNING"
    )
    assert unchanged.status == "CANCELLED"
    assert unchanged.error is None
    assert unchanged.duration_ms == 5


@pytest.mark.anyio
async def test_delete_task_detaches_its_runs(storage: InMemoryPipelineStorage) -> None:
    project = await storage.create_project(name="Alpha")
    task = await storage.create_task(project_id=project.project_id, title="t")
    workflow = await storage.create_workflow(project_id=project.project_id, name="wf")
    run = await storage.create_run(workflow_id=workflow.workflow_id, task_id=task.task_id)

    assert await storage.delete_task(task.task_id) is True

    assert await storage.list_runs(task.task_id) == []
    detached = await storage.get_run(run.run_id)
    assert detached is not None
    assert detached.task_id is None
