"""In-memory storage backend for tests and local development."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from taskflow_api.app.models import (
    ExecutionLogRecord,
    LogLevel,
    ProjectRecord,
    RunRecord,
    RunStatus,
    TaskRecord,
    TaskStatus,
    WorkflowRecord,
)


class InMemoryPipelineStorage:
    """Dict-backed implementation with the same semantics as the PostgreSQL backend."""

    def __init__(self) -> None:
        self._projects: dict[str, ProjectRecord] = {}
        self._tasks: dict[str, TaskRecord] = {}
        self._workflows: dict[str, WorkflowRecord] = {}
        self._runs: dict[str, RunRecord] = {}
        self._logs: list[ExecutionLogRecord] = []
        self._log_ids = itertools.count(1)

    async def migrate(self) -> None:
        return None

    async def create_project(self, *, name: str, description: str | None = None) -> ProjectRecord:
        now = datetime.now(UTC)
        record = ProjectRecord(
            project_id=str(uuid4()),
            name=name,
            description=description,
            created_at=now,
            updated_at=now,
        )
        self._projects[record.project_id] = record
        return record.model_copy(deep=True)

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        record = self._projects.get(project_id)
        return record.model_copy(deep=True) if record else None

    async def list_projects(self) -> list[ProjectRecord]:
        ordered = sorted(self._projects.values(), key=lambda item: item.created_at, reverse=True)
        return [item.model_copy(deep=True) for item in ordered]

    async def create_task(
        self,
        *,
        project_id: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
    ) -> TaskRecord:
        now = datetime.now(UTC)
        record = TaskRecord(
            task_id=str(uuid4()),
            project_id=project_id,
            title=title,
            description=description,
            status="pending",
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        self._tasks[record.task_id] = record
        return record.model_copy(deep=True)

    async def get_task(self, task_id: str) -> TaskRecord | None:
        record = self._tasks.get(task_id)
        return record.model_copy(deep=True) if record else None

    async def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[TaskRecord]:
        matching = self._filter_tasks(project_id=project_id, status=status)
        matching.sort(key=lambda item: item.created_at, reverse=True)
        return [item.model_copy(deep=True) for item in matching[offset : offset + limit]]

    async def count_tasks(
        self, *, project_id: str | None = None, status: TaskStatus | None = None
    ) -> int:
        return len(self._filter_tasks(project_id=project_id, status=status))

    async def update_task(
        self,
        task_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        status: TaskStatus | None = None,
        workflow_id: str | None = None,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> TaskRecord:
        current = self._tasks.get(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")
        changes: dict[str, Any] = {
            key: value
            for key, value in {
                "title": title,
                "description": description,
                "priority": priority,
                "status": status,
                "workflow_id": workflow_id,
                "error": error,
                "started_at": started_at,
                "completed_at": completed_at,
            }.items()
            if value is not None
        }
        changes["updated_at"] = datetime.now(UTC)
        updated = current.model_copy(update=changes)
        self._tasks[task_id] = updated
        return updated.model_copy(deep=True)

    async def delete_task(self, task_id: str) -> bool:
        if self._tasks.pop(task_id, None) is None:
            return False
        for run_id, run in list(self._runs.items()):
            if run.task_id == task_id:
                self._runs[run_id] = run.model_copy(update={"task_id": None})
        return True

    async def create_workflow(self, *, project_id: str, name: str) -> WorkflowRecord:
        record = WorkflowRecord(
            workflow_id=str(uuid4()),
            project_id=project_id,
            name=name,
            steps=[],
            status="ACTIVE",
            created_at=datetime.now(UTC),
        )
        self._workflows[record.workflow_id] = record
        return record.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        record = self._workflows.get(workflow_id)
        return record.model_copy(deep=True) if record else None

    async def create_run(self, *, workflow_id: str, task_id: str | None = None) -> RunRecord:
        record = RunRecord(
            run_id=str(uuid4()),
            workflow_id=workflow_id,
            task_id=task_id,
            status="RUNNING",
            started_at=datetime.now(UTC),
        )
        self._runs[record.run_id] = record
        return record.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        record = self._runs.get(run_id)
        return record.model_copy(deep=True) if record else None

    async def list_runs(self, task_id: str) -> list[RunRecord]:
        matching = [run for run in self._runs.values() if run.task_id == task_id]
        matching.sort(key=lambda item: item.started_at)
        return [item.model_copy(deep=True) for item in matching]

    async def update_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        completed_at: datetime | None = None,
        duration_ms: int | None = None,
        error: str | None = None,
        expected_status: RunStatus | None = None,
    ) -> RunRecord:
        current = self._runs.get(run_id)
        if current is None:
            raise KeyError(f"Run {run_id} does not exist")
        if expected_status is not None and current.status != expected_status:
            return current.model_copy(deep=True)
        changes: dict[str, Any] = {"status": status}
        if completed_at is not None:
            changes["completed_at"] = completed_at
        if duration_ms is not None:
            changes["duration_ms"] = duration_ms
        if error is not None:
            changes["error"] = error
        updated = current.model_copy(update=changes)
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def append_log(
        self,
        *,
        run_id: str,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord:
        record = ExecutionLogRecord(
            log_id=next(self._log_ids),
            run_id=run_id,
            level=level,
            message=message,
            data=dict(data or {}),
            timestamp=datetime.now(UTC),
        )
        self._logs.append(record)
        return record.model_copy(deep=True)

    async def get_logs(self, run_id: str, limit: int = 100) -> list[ExecutionLogRecord]:
        matching = [log for log in self._logs if log.run_id == run_id]
        matching.sort(key=lambda item: (item.timestamp, item.log_id))
        return [item.model_copy(deep=True) for item in matching[:limit]]

    def _filter_tasks(
        self, *, project_id: str | None, status: TaskStatus | None
    ) -> list[TaskRecord]:
        return [
            task
            for task in self._tasks.values()
            if (project_id is None or task.project_id == project_id)
            and (status is None or task.status == status)
        ]
