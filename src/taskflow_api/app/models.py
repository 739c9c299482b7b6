"""Pydantic models shared across API, pipeline stages, and storage.

Records mirror rows owned by the storage backend. Plan models are transient:
they are built per execution and only persisted inside execution log payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Task lifecycle once execution starts: pending -> in_progress -> completed | failed.
TaskStatus = Literal["pending", "in_progress", "completed", "failed"]
RunStatus = Literal["RUNNING", "COMPLETED", "FAILED", "CANCELLED"]
LogLevel = Literal["INFO", "ERROR"]

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"COMPLETED", "FAILED", "CANCELLED"})


class ProjectRecord(BaseModel):
    project_id: str
    name: str
    description: str | None = None
    created_at: datetime
    updated_at: datetime


class TaskRecord(BaseModel):
    """Persisted task record."""

    task_id: str
    project_id: str
    title: str
    description: str | None = None
    status: TaskStatus = "pending"
    priority: str = "medium"
    workflow_id: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class WorkflowRecord(BaseModel):
    workflow_id: str
    project_id: str
    name: str
    # Placeholder kept for schema parity; the pipeline never fills it.
    steps: list[dict[str, Any]] = Field(default_factory=list)
    status: str = "ACTIVE"
    created_at: datetime


class RunRecord(BaseModel):
    """One execution attempt of a task's plan."""

    run_id: str
    workflow_id: str
    task_id: str | None = None
    status: RunStatus = "RUNNING"
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None


class ExecutionLogRecord(BaseModel):
    """Append-only audit entry for a run."""

    log_id: int
    run_id: str
    level: LogLevel
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class PlanStep(BaseModel):
    """One planned unit of work.

    Accepts the camelCase keys the planning prompt asks the model for.
    """

    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: str
    description: str = ""
    tool: str = "exec"
    parameters: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    estimated_duration: int = Field(default=0, alias="estimatedDuration")

    @field_validator("description", mode="before")
    @classmethod
    def _null_description(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("tool", mode="before")
    @classmethod
    def _null_tool(cls, value: Any) -> Any:
        return "exec" if value is None else value

    @field_validator("parameters", mode="before")
    @classmethod
    def _null_parameters(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("depends_on", mode="before")
    @classmethod
    def _null_depends_on(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("estimated_duration", mode="before")
    @classmethod
    def _whole_milliseconds(cls, value: Any) -> Any:
        if value is None:
            return 0
        if isinstance(value, float):
            return round(value)
        return value


class TaskPlan(BaseModel):
    """Ordered steps plus derived tool and dependency data."""

    steps: list[PlanStep] = Field(default_factory=list)
    estimated_duration: int = 0
    required_tools: list[str] = Field(default_factory=list)
    # Derived from each step's depends_on. Not consulted when running steps.
    dependencies: dict[str, list[str]] = Field(default_factory=dict)


class StepResult(BaseModel):
    step_id: str
    success: bool
    output: str


class ProgressEvent(BaseModel):
    task_id: str
    run_id: str
    event: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class CreateTaskRequest(BaseModel):
    """Request body for POST /tasks."""

    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str | None = None
    priority: str = "medium"


class UpdateTaskRequest(BaseModel):
    """Partial update; omitted fields stay unchanged."""

    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    priority: str | None = None
    status: TaskStatus | None = None


class TaskPage(BaseModel):
    items: list[TaskRecord]
    page: int
    limit: int
    total: int


class ExecuteTaskResponse(BaseModel):
    task_id: str
    status: Literal["accepted"] = "accepted"
