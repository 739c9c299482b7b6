"""PostgreSQL-backed storage with automatic table migration.

Each operation opens its own async psycopg connection, so concurrent runs do
not serialize on a shared connection. Free-form payloads are stored as JSONB.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any

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

_MIGRATIONS = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        project_id UUID PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        workflow_id UUID PRIMARY KEY,
        project_id UUID NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        steps_json JSONB NOT NULL DEFAULT '[]'::jsonb,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        task_id UUID PRIMARY KEY,
        project_id UUID NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        workflow_id UUID REFERENCES workflows(workflow_id) ON DELETE SET NULL,
        error TEXT,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_status
    ON tasks(status)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_tasks_created_at
    ON tasks(created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id UUID PRIMARY KEY,
        workflow_id UUID NOT NULL REFERENCES workflows(workflow_id) ON DELETE CASCADE,
        task_id UUID REFERENCES tasks(task_id) ON DELETE SET NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ,
        duration_ms BIGINT,
        error TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_runs_task_id
    ON runs(task_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_logs (
        log_id BIGSERIAL PRIMARY KEY,
        run_id UUID NOT NULL REFERENCES runs(run_id) ON DELETE CASCADE,
        level TEXT NOT NULL,
        message TEXT NOT NULL,
        data_json JSONB NOT NULL DEFAULT '{}'::jsonb,
        timestamp TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_execution_logs_run_id_timestamp
    ON execution_logs(run_id, timestamp)
    """,
)


class PostgresPipelineStorage:
    """Persist projects, tasks, workflows, runs and execution logs in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    async def migrate(self) -> None:
        """Create required tables and indexes if they do not already exist."""
        async with await self._connect() as conn:
            for statement in _MIGRATIONS:
                await conn.execute(statement)
            await conn.commit()

    async def create_project(self, *, name: str, description: str | None = None) -> ProjectRecord:
        project_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO projects (project_id, name, description, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (project_id, name, description, now, now),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist project")
        return self._row_to_project(row)

    async def get_project(self, project_id: str) -> ProjectRecord | None:
        row = await self._fetch_one(
            "SELECT * FROM projects WHERE project_id::text = %s", (project_id,)
        )
        return self._row_to_project(row) if row else None

    async def list_projects(self) -> list[ProjectRecord]:
        rows = await self._fetch_all("SELECT * FROM projects ORDER BY created_at DESC", ())
        return [self._row_to_project(row) for row in rows]

    async def create_task(
        self,
        *,
        project_id: str,
        title: str,
        description: str | None = None,
        priority: str = "medium",
    ) -> TaskRecord:
        task_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    project_id,
                    title,
                    description,
                    status,
                    priority,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (task_id, project_id, title, description, "pending", priority, now, now),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist task")
        return self._row_to_task(row)

    async def get_task(self, task_id: str) -> TaskRecord | None:
        row = await self._fetch_one("SELECT * FROM tasks WHERE task_id::text = %s", (task_id,))
        return self._row_to_task(row) if row else None

    async def list_tasks(
        self,
        *,
        project_id: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[TaskRecord]:
        where, params = self._task_filters(project_id=project_id, status=status)
        rows = await self._fetch_all(
            f"SELECT * FROM tasks {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
            (*params, limit, offset),
        )
        return [self._row_to_task(row) for row in rows]

    async def count_tasks(
        self, *, project_id: str | None = None, status: TaskStatus | None = None
    ) -> int:
        where, params = self._task_filters(project_id=project_id, status=status)
        row = await self._fetch_one(f"SELECT COUNT(*) AS total FROM tasks {where}", params)
        return int(row["total"]) if row else 0

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
        """Update selected task fields while keeping unspecified fields unchanged."""
        current = await self.get_task(task_id)
        if current is None:
            raise KeyError(f"Task {task_id} does not exist")

        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                UPDATE tasks
                SET title = %s,
                    description = %s,
                    priority = %s,
                    status = %s,
                    workflow_id = %s,
                    error = %s,
                    started_at = %s,
                    completed_at = %s,
                    updated_at = %s
                WHERE task_id::text = %s
                RETURNING *
                """,
                (
                    title if title is not None else current.title,
                    description if description is not None else current.description,
                    priority if priority is not None else current.priority,
                    status if status is not None else current.status,
                    workflow_id if workflow_id is not None else current.workflow_id,
                    error if error is not None else current.error,
                    started_at if started_at is not None else current.started_at,
                    completed_at if completed_at is not None else current.completed_at,
                    datetime.now(tz=UTC),
                    task_id,
                ),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise KeyError(f"Task {task_id} no longer exists")
        return self._row_to_task(row)

    async def delete_task(self, task_id: str) -> bool:
        async with await self._connect() as conn:
            cursor = await conn.execute(
                "DELETE FROM tasks WHERE task_id::text = %s", (task_id,)
            )
            await conn.commit()
        return cursor.rowcount > 0

    async def create_workflow(self, *, project_id: str, name: str) -> WorkflowRecord:
        workflow_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO workflows (
                    workflow_id, project_id, name, steps_json, status, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (workflow_id, project_id, name, self._json_wrapper([]), "ACTIVE", now),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist workflow")
        return self._row_to_workflow(row)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        row = await self._fetch_one(
            "SELECT * FROM workflows WHERE workflow_id::text = %s", (workflow_id,)
        )
        return self._row_to_workflow(row) if row else None

    async def create_run(self, *, workflow_id: str, task_id: str | None = None) -> RunRecord:
        run_id = uuid.uuid4()
        now = datetime.now(tz=UTC)
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO runs (run_id, workflow_id, task_id, status, started_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (run_id, workflow_id, task_id, "RUNNING", now),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist run")
        return self._row_to_run(row)

    async def get_run(self, run_id: str) -> RunRecord | None:
        row = await self._fetch_one("SELECT * FROM runs WHERE run_id::text = %s", (run_id,))
        return self._row_to_run(row) if row else None

    async def list_runs(self, task_id: str) -> list[RunRecord]:
        rows = await self._fetch_all(
            "SELECT * FROM runs WHERE task_id::text = %s ORDER BY started_at ASC", (task_id,)
        )
        return [self._row_to_run(row) for row in rows]

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
        guard = ""
        params: tuple[Any, ...] = (status, completed_at, duration_ms, error, run_id)
        if expected_status is not None:
            # Compare-and-set on the current status.
            guard = "AND status = %s"
            params = (*params, expected_status)
        async with await self._connect() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE runs
                SET status = %s,
                    completed_at = COALESCE(%s, completed_at),
                    duration_ms = COALESCE(%s, duration_ms),
                    error = COALESCE(%s, error)
                WHERE run_id::text = %s {guard}
                RETURNING *
                """,
                params,
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is not None:
            return self._row_to_run(row)
        current = await self.get_run(run_id)
        if current is None:
            raise KeyError(f"Run {run_id} does not exist")
        return current

    async def append_log(
        self,
        *,
        run_id: str,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> ExecutionLogRecord:
        async with await self._connect() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO execution_logs (run_id, level, message, data_json, timestamp)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (run_id, level, message, self._json_wrapper(data or {}), datetime.now(tz=UTC)),
            )
            row = await cursor.fetchone()
            await conn.commit()
        if row is None:
            raise RuntimeError("Failed to persist execution log")
        return self._row_to_log(row)

    async def get_logs(self, run_id: str, limit: int = 100) -> list[ExecutionLogRecord]:
        rows = await self._fetch_all(
            """
            SELECT *
            FROM execution_logs
            WHERE run_id::text = %s
            ORDER BY timestamp ASC, log_id ASC
            LIMIT %s
            """,
            (run_id, limit),
        )
        return [self._row_to_log(row) for row in rows]

    async def _connect(self) -> Any:
        """Open an async psycopg connection that yields dict-like rows."""
        return await self._psycopg.AsyncConnection.connect(
            self.database_url, row_factory=self._dict_row
        )

    async def _fetch_one(self, query: str, params: tuple[Any, ...]) -> Any:
        async with await self._connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchone()

    async def _fetch_all(self, query: str, params: tuple[Any, ...]) -> list[Any]:
        async with await self._connect() as conn:
            cursor = await conn.execute(query, params)
            return await cursor.fetchall()

    @staticmethod
    def _task_filters(
        *, project_id: str | None, status: TaskStatus | None
    ) -> tuple[str, tuple[Any, ...]]:
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id::text = %s")
            params.append(project_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, tuple(params)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_json_list(raw: Any) -> list[dict[str, Any]]:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, dict)]

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        """Parse datetime value from database driver output."""
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _parse_datetime_optional(cls, raw: Any) -> datetime | None:
        return cls._parse_datetime(raw) if raw is not None else None

    @classmethod
    def _row_to_project(cls, row: Any) -> ProjectRecord:
        return ProjectRecord(
            project_id=str(row["project_id"]),
            name=row["name"],
            description=row["description"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        """Map one DB row to the canonical TaskRecord model."""
        workflow_id = row["workflow_id"]
        return TaskRecord(
            task_id=str(row["task_id"]),
            project_id=str(row["project_id"]),
            title=row["title"],
            description=row["description"],
            status=row["status"],
            priority=row["priority"],
            workflow_id=str(workflow_id) if workflow_id is not None else None,
            error=row["error"],
            started_at=cls._parse_datetime_optional(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_workflow(cls, row: Any) -> WorkflowRecord:
        return WorkflowRecord(
            workflow_id=str(row["workflow_id"]),
            project_id=str(row["project_id"]),
            name=row["name"],
            steps=cls._parse_json_list(row["steps_json"]),
            status=row["status"],
            created_at=cls._parse_datetime(row["created_at"]),
        )

    @classmethod
    def _row_to_run(cls, row: Any) -> RunRecord:
        task_id = row["task_id"]
        duration_ms = row["duration_ms"]
        return RunRecord(
            run_id=str(row["run_id"]),
            workflow_id=str(row["workflow_id"]),
            task_id=str(task_id) if task_id is not None else None,
            status=row["status"],
            started_at=cls._parse_datetime(row["started_at"]),
            completed_at=cls._parse_datetime_optional(row["completed_at"]),
            duration_ms=int(duration_ms) if duration_ms is not None else None,
            error=row["error"],
        )

    @classmethod
    def _row_to_log(cls, row: Any) -> ExecutionLogRecord:
        return ExecutionLogRecord(
            log_id=int(row["log_id"]),
            run_id=str(row["run_id"]),
            level=row["level"],
            message=row["message"],
            data=cls._parse_json_object(row["data_json"]),
            timestamp=cls._parse_datetime(row["timestamp"]),
        )
