"""Planning stage for the task pipeline.

The planner asks a language model for a JSON step plan and turns the answer
into a TaskPlan. Like classification, planning never fails observably:

1) Provider error, invalid JSON, or a step that cannot be coerced into a
   PlanStep -> single-step fallback plan covering the whole task.
2) Valid JSON object with missing or null fields -> empty defaults (for example
   no steps, or a step without parameters). Fractional durations are rounded.

The dependency map is derived from each step's depends_on list and exposed on
the plan. Steps still run in list order; nothing downstream reads the map.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from .llm import LLMAdapter
from .models import PlanStep, TaskPlan

logger = logging.getLogger(__name__)

PLAN_TOOLS: dict[str, str] = {
    "fs": "file system",
    "http": "HTTP requests",
    "docker": "containers",
    "exec": "shell commands",
    "security": "encryption/secrets",
}
FALLBACK_TOOL = "exec"


def build_planner_prompt(category: str) -> str:
    tools = ", ".join(f"{name} ({meaning})" for name, meaning in PLAN_TOOLS.items())
    tool_choices = "|".join(PLAN_TOOLS)
    return (
        f"You are a task planner. Break down the following {category} task into specific steps.\n"
        f"Available tools: {tools}.\n\n"
        "Respond with a JSON object containing:\n"
        "{\n"
        '  "steps": [\n'
        "    {\n"
        '      "id": "step-1",\n'
        '      "description": "Description of step",\n'
        f'      "tool": "{tool_choices}",\n'
        '      "parameters": {},\n'
        '      "dependsOn": [],\n'
        '      "estimatedDuration": 5000\n'
        "    }\n"
        "  ],\n"
        '  "estimatedDuration": 30000,\n'
        '  "requiredTools": ["fs", "http"]\n'
        "}"
    )


def build_dependency_graph(steps: Iterable[PlanStep]) -> dict[str, list[str]]:
    return {step.id: list(step.depends_on) for step in steps}


def fallback_plan(task_text: str, *, duration_ms: int) -> TaskPlan:
    """One generic step that stands for the whole task."""
    step = PlanStep(
        id="step-1",
        description=task_text,
        tool=FALLBACK_TOOL,
        parameters={},
        depends_on=[],
        estimated_duration=duration_ms,
    )
    return TaskPlan(
        steps=[step],
        estimated_duration=duration_ms,
        required_tools=[FALLBACK_TOOL],
        dependencies={},
    )


def parse_plan(raw: str | None, *, default_duration_ms: int) -> TaskPlan:
    """Parse a model answer into a TaskPlan.

    Raises ValueError (json.JSONDecodeError or pydantic.ValidationError) when the
    answer is not a JSON object or a step cannot be coerced.
    """
    data = json.loads(raw or "{}")
    if not isinstance(data, dict):
        raise ValueError("Plan response is not a JSON object")

    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raw_steps = []
    steps = [
        PlanStep.model_validate(_with_step_id(item, index))
        for index, item in enumerate(raw_steps)
    ]

    estimated = data.get("estimatedDuration")
    if not isinstance(estimated, (int, float)) or isinstance(estimated, bool) or estimated <= 0:
        estimated = default_duration_ms

    reported_tools = data.get("requiredTools") or []
    if not isinstance(reported_tools, list):
        reported_tools = []

    return TaskPlan(
        steps=steps,
        estimated_duration=round(estimated),
        required_tools=_unique([str(tool) for tool in reported_tools] + [s.tool for s in steps]),
        dependencies=build_dependency_graph(steps),
    )


class TaskPlanner:
    def __init__(
        self,
        *,
        llm_adapter: LLMAdapter | None,
        temperature: float = 0.5,
        max_tokens: int = 2000,
        fallback_duration_ms: int = 60_000,
        default_plan_duration_ms: int = 60_000,
    ) -> None:
        self.llm_adapter = llm_adapter
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.fallback_duration_ms = fallback_duration_ms
        self.default_plan_duration_ms = default_plan_duration_ms

    async def plan(self, task_text: str, category: str) -> TaskPlan:
        if self.llm_adapter is None:
            logger.warning("Planner has no LLM adapter; using single-step fallback plan.")
            return fallback_plan(task_text, duration_ms=self.fallback_duration_ms)
        try:
            raw = await self.llm_adapter.complete(
                system_prompt=build_planner_prompt(category),
                user_prompt=task_text,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                json_mode=True,
            )
            return parse_plan(raw, default_duration_ms=self.default_plan_duration_ms)
        except Exception as exc:  # noqa: BLE001
            logger.error("Error planning task; using single-step fallback plan. reason=%s", exc)
            return fallback_plan(task_text, duration_ms=self.fallback_duration_ms)


def _with_step_id(item: Any, index: int) -> Any:
    if isinstance(item, dict) and not item.get("id"):
        return {**item, "id": f"step-{index + 1}"}
    return item


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered
