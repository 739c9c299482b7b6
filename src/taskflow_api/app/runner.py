from __future__ import annotations

import asyncio
import logging

from .models import PlanStep, StepResult

logger = logging.getLogger(__name__)


class RunCancelledError(Exception):
    """Raised inside the pipeline when a run's cancellation flag is set."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} was cancelled")
        self.run_id = run_id


class StepRunner:
    """Simulated step execution.

    No tool is invoked: each step waits for its declared estimated_duration
    (milliseconds) and reports success. The wait ends early with
    RunCancelledError when the cancel event is set.
    """

    async def run_step(
        self,
        step: PlanStep,
        *,
        run_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> StepResult:
        delay_s = max(0, step.estimated_duration) / 1000
        if cancel_event is None:
            await asyncio.sleep(delay_s)
        else:
            if cancel_event.is_set():
                raise RunCancelledError(run_id)
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=delay_s)
            except asyncio.TimeoutError:
                pass
            else:
                raise RunCancelledError(run_id)

        logger.debug(
            "step_run event=completed run_id=%s step_id=%s tool=%s", run_id, step.id, step.tool
        )
        return StepResult(step_id=step.id, success=True, output=f"Executed {step.description}")
