"""Task execution pipeline.

One execution is a strictly sequential chain:

    classify -> plan -> step 1 -> ... -> step n -> complete

Every stage awaits, so many executions can share one event loop, but a single
run never overlaps its own steps. Classification and planning carry their own
fallbacks; any other exception ends the run as FAILED.

Persistence (Run + ExecutionLog rows) is the durable record. Progress events
are a best-effort realtime mirror published on the user's channel.

Cancellation is cooperative: cancel_task() writes CANCELLED and sets an
in-process flag that wakes the step runner. Every terminal write is a
compare-and-set against RUNNING, so a run reaches exactly one terminal status
and a cancelled run is never overwritten.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from .classifier import TaskClassifier
from .models import (
    TERMINAL_RUN_STATUSES,
    ExecutionLogRecord,
    LogLevel,
    ProgressEvent,
    RunRecord,
    TaskPlan,
)
from .planner import TaskPlanner
from .progress import PROGRESS_EVENT_NAME, ProgressPublisher, channel_for_user
from .runner import RunCancelledError, StepRunner
from .storage.base import PipelineStorage

logger = logging.getLogger(__name__)


class TaskNotFoundError(KeyError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class RunNotFoundError(KeyError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class RunStateError(ValueError):
    """Raised when a run transition is not allowed by the run state machine."""


@dataclass(frozen=True)
class ExecutionContext:
    task_id: str
    run_id: str
    user_id: str


class TaskOrchestrator:
    """Coordinates classifier, planner, step runner, storage, and progress events.

    All collaborators are injected; nothing here holds process-wide state apart
    from the cancellation flags of runs executing in this process.
    """

    def __init__(
        self,
        *,
        storage: PipelineStorage,
        classifier: TaskClassifier,
        planner: TaskPlanner,
        publisher: ProgressPublisher | None = None,
        runner: StepRunner | None = None,
        default_log_limit: int = 100,
    ) -> None:
        self.storage = storage
        self.classifier = classifier
        self.planner = planner
        self.publisher = publisher
        self.runner = runner or StepRunner()
        self.default_log_limit = default_log_limit
        self._cancel_events: dict[str, asyncio.Event] = {}

    async def execute_task(self, task_id: str, user_id: str) -> RunRecord:
        """Run the full pipeline for one task and return the run's final record.

        Raises TaskNotFoundError before any run exists. After the run is created,
        failures are recorded on the run instead of being raised; only a storage
        error while writing the FAILED status itself propagates.
        """
        task = await self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        workflow_id = task.workflow_id
        if not workflow_id:
            workflow = await self.storage.create_workflow(
                project_id=task.project_id, name=f"Auto-workflow for {task.title}"
            )
            workflow_id = workflow.workflow_id
            await self.storage.update_task(task_id, workflow_id=workflow_id)

        run = await self.storage.create_run(workflow_id=workflow_id, task_id=task_id)
        context = ExecutionContext(task_id=task_id, run_id=run.run_id, user_id=user_id)
        cancel_event = asyncio.Event()
        self._cancel_events[run.run_id] = cancel_event
        task_text = task.description or task.title
        logger.info(
            "task_run event=start task_id=%s run_id=%s user_id=%s",
            task_id,
            run.run_id,
            user_id,
        )

        try:
            await self.storage.update_task(
                task_id, status="in_progress", started_at=run.started_at
            )
            await self._emit(context, "started", {"task_id": task_id, "run_id": run.run_id})

            await self._emit(context, "classifying", {"step": "Classifying task type..."})
            category = await self.classifier.classify(task_text)
            await self._log(
                run.run_id, "INFO", f"Task classified as: {category}", {"category": category}
            )
            self._raise_if_cancelled(context, cancel_event)

            await self._emit(context, "planning", {"step": "Creating execution plan..."})
            plan = await self.planner.plan(task_text, category)
            await self._log(
                run.run_id,
                "INFO",
                f"Plan created with {len(plan.steps)} steps",
                {"plan": plan.model_dump(mode="json")},
            )

            await self._run_steps(context, plan, cancel_event)

            if await self._cancelled_meanwhile(context, cancel_event):
                raise RunCancelledError(run.run_id)
            completed_at = datetime.now(UTC)
            final = await self.storage.update_run(
                run.run_id,
                status="COMPLETED",
                completed_at=completed_at,
                duration_ms=_duration_ms(run.started_at, completed_at),
                expected_status="RUNNING",
            )
            if final.status != "COMPLETED":
                # cancel_task is the only other writer of a terminal status.
                raise RunCancelledError(run.run_id)
            await self._emit(context, "completed", {"success": True})
            await self._update_task_quietly(
                task_id, status="completed", completed_at=completed_at
            )
            logger.info(
                "task_run event=completed task_id=%s run_id=%s category=%s steps=%d "
                "duration_ms=%s",
                task_id,
                run.run_id,
                category,
                len(plan.steps),
                final.duration_ms,
            )
            return final
        except RunCancelledError:
            return await self._finish_cancelled(context)
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_run event=failed task_id=%s run_id=%s", task_id, run.run_id)
            return await self._finish_failed(context, run, exc)
        finally:
            self._cancel_events.pop(run.run_id, None)

    async def get_logs(self, run_id: str, limit: int | None = None) -> list[ExecutionLogRecord]:
        return await self.storage.get_logs(run_id, limit=limit or self.default_log_limit)

    async def cancel_task(self, run_id: str) -> RunRecord:
        """Mark a RUNNING run as CANCELLED and signal its in-process pipeline, if any."""
        run = await self.storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            raise RunStateError(f"Run {run_id} is already {run.status}")

        completed_at = datetime.now(UTC)
        cancelled = await self.storage.update_run(
            run_id,
            status="CANCELLED",
            completed_at=completed_at,
            duration_ms=_duration_ms(run.started_at, completed_at),
            expected_status="RUNNING",
        )
        if cancelled.status != "CANCELLED":
            raise RunStateError(f"Run {run_id} is already {cancelled.status}")
        # Flag after the write so the pipeline's re-read already sees CANCELLED.
        cancel_event = self._cancel_events.get(run_id)
        if cancel_event is not None:
            cancel_event.set()
        await self._log(
            run_id, "INFO", "Execution cancelled", {"requested_at": completed_at.isoformat()}
        )
        logger.info(
            "task_run event=cancel_requested run_id=%s in_process=%s",
            run_id,
            cancel_event is not None,
        )
        return cancelled

    async def _run_steps(
        self, context: ExecutionContext, plan: TaskPlan, cancel_event: asyncio.Event
    ) -> None:
        # Array order only; plan.dependencies is informational.
        total = len(plan.steps)
        for index, step in enumerate(plan.steps):
            self._raise_if_cancelled(context, cancel_event)
            await self._emit(
                context,
                "executing",
                {
                    "step": f"Step {index + 1}/{total}: {step.description}",
                    "step_id": step.id,
                    "progress": (index + 1) / total * 100,
                },
            )
            result = await self.runner.run_step(
                step, run_id=context.run_id, cancel_event=cancel_event
            )
            await self._log(
                context.run_id,
                "INFO",
                f"Completed: {step.description}",
                {"step": step.model_dump(mode="json"), "result": result.model_dump(mode="json")},
            )

    async def _finish_failed(
        self, context: ExecutionContext, run: RunRecord, exc: Exception
    ) -> RunRecord:
        message = _error_message(exc)
        completed_at = datetime.now(UTC)
        failed = await self.storage.update_run(
            context.run_id,
            status="FAILED",
            completed_at=completed_at,
            duration_ms=_duration_ms(run.started_at, completed_at),
            error=message,
            expected_status="RUNNING",
        )
        if failed.status == "CANCELLED":
            return await self._finish_cancelled(context)
        if failed.status != "FAILED":
            return failed
        try:
            await self._log(
                context.run_id,
                "ERROR",
                f"Execution failed: {message}",
                {"error": "".join(traceback.format_exception(exc))},
            )
        except Exception as log_exc:  # noqa: BLE001
            logger.warning(
                "task_run event=error_log_failed run_id=%s reason=%s",
                context.run_id,
                _error_message(log_exc),
            )
        await self._emit(context, "failed", {"error": message})
        await self._update_task_quietly(
            context.task_id, status="failed", error=message, completed_at=completed_at
        )
        return failed

    async def _finish_cancelled(self, context: ExecutionContext) -> RunRecord:
        logger.info(
            "task_run event=cancelled task_id=%s run_id=%s", context.task_id, context.run_id
        )
        await self._emit(context, "cancelled", {"reason": "cancel requested"})
        await self._update_task_quietly(
            context.task_id, status="failed", error="cancelled", completed_at=datetime.now(UTC)
        )
        run = await self.storage.get_run(context.run_id)
        if run is None:
            raise RunNotFoundError(context.run_id)
        return run

    async def _update_task_quietly(self, task_id: str, **changes: Any) -> None:
        # The run row is already terminal; a missing task must not undo that.
        try:
            await self.storage.update_task(task_id, **changes)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task_run event=task_update_failed task_id=%s reason=%s",
                task_id,
                _error_message(exc),
            )

    def _raise_if_cancelled(self, context: ExecutionContext, cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise RunCancelledError(context.run_id)

    async def _cancelled_meanwhile(
        self, context: ExecutionContext, cancel_event: asyncio.Event
    ) -> bool:
        if cancel_event.is_set():
            return True
        # Covers cancellation written by another process.
        current = await self.storage.get_run(context.run_id)
        return current is not None and current.status == "CANCELLED"

    async def _log(
        self, run_id: str, level: LogLevel, message: str, data: dict[str, Any] | None = None
    ) -> ExecutionLogRecord:
        return await self.storage.append_log(
            run_id=run_id, level=level, message=message, data=data
        )

    async def _emit(self, context: ExecutionContext, event: str, data: dict[str, Any]) -> None:
        if self.publisher is None:
            return
        payload = ProgressEvent(
            task_id=context.task_id,
            run_id=context.run_id,
            event=event,
            data=data,
            timestamp=datetime.now(UTC),
        ).model_dump(mode="json")
        try:
            await self.publisher.publish(
                channel_for_user(context.user_id), PROGRESS_EVENT_NAME, payload
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "progress event=%s run_id=%s publish failed reason=%s", event, context.run_id, exc
            )


def _error_message(exc: BaseException) -> str:
    # str(KeyError) is the repr of its argument.
    if isinstance(exc, KeyError) and exc.args:
        return str(exc.args[0])
    return str(exc) or exc.__class__.__name__


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return max(0, round((completed_at - started_at).total_seconds() * 1000))
