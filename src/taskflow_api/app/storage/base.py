"""Storage interface for the task pipeline and its CRUD surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

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


class PipelineStorage(Protocol):
    async def migrate(self) -> None: ...

    async def create_project(
        self, *, name: str, description: str | None = None
    ) -> ProjectRecord: ...

    async def get_project(self, project_id: str) -> ProjectRecord | None: ...

    async def list_projects(self) -> list[ProjectRecord]: ...

    async def create_task(
        self,
        *,
        project_id: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
    ) -> TaskRecord: ...

    async def get_task(self, task_id: str) -> TaskRecord | None: ...

    async def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[TaskRecord]: ...

    async def count_tasks(
        self, *, project_id: str | None = None, status: TaskStatus | None = None
    ) -> int: ...

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
    ) -> TaskRecord: ...

    async def delete_task(self, task_id: str) -> bool: ...

    async def create_workflow(self, *, project_id: str, name: str) -> WorkflowRecord: ...

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None: ...

    async def create_run(self, *, workflow_id: str, task_id: str | None = None) -> RunRecord: ...

    async def get_run(self, run_id: str) -> RunRecord | None: ...

    async def list_runs(self, task_id: str) -> list[RunRecord]: ...

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
        """Set the run status.

        With expected_status, the write only happens while the run is still in
        that status; otherwise the stored row is returned unchanged.
        """
        ...

    async def append_log(
        self,
        *,
        run_id: str,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord: ...

    async def get_logs(self, run_id: str, limit: int = 100) -> list[ExecutionLogRecord]: ...
