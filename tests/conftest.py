from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient

from taskflow_api.app.classifier import TaskClassifier
from taskflow_api.app.orchestrator import TaskOrchestrator
from taskflow_api.app.planner import TaskPlanner
from taskflow_api.app.settings import Settings
from taskflow_api.app.storage.memory import InMemoryPipelineStorage


class ScriptedLLMAdapter:
    """Test double that answers classify/plan prompts from canned values.

    A planning call is recognized by json_mode=True. Exceptions in the script
    are raised instead of returned.
    """

    def __init__(self, *, category: Any = "CODE", plan: Any = None) -> None:
        self.category = category
        self.plan = plan if plan is not None else {"steps": []}
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "json_mode": json_mode,
            }
        )
        answer = self.plan if json_mode else self.category
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, (dict, list)):
            return json.dumps(answer)
        return answer


class RecordingPublisher:
    """Records published events; on_event runs after each one is recorded."""

    def __init__(
        self,
        *,
        fail: bool = False,
        on_event: Callable[[dict[str, Any]], Awaitable[None]] | None = None,
    ) -> None:
        self.fail = fail
        self.on_event = on_event
        self.messages: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, channel: str, event_name: str, payload: dict[str, Any]) -> int:
        if self.fail:
            raise ConnectionError("publisher offline")
        self.messages.append((channel, event_name, payload))
        if self.on_event is not None:
            await self.on_event(payload)
        return 1

    @property
    def events(self) -> list[str]:
        return [payload["event"] for _, _, payload in self.messages]


class FailingCompletionStorage(InMemoryPipelineStorage):
    """Memory storage whose COMPLETED run write fails."""

    def __init__(self, error: str | Exception = "database unavailable") -> None:
        super().__init__()
        self.error = RuntimeError(error) if isinstance(error, str) else error

    async def update_run(self, run_id: str, *, status: Any, **kwargs: Any) -> Any:
        if status == "COMPLETED":
            raise self.error
        return await super().update_run(run_id, status=status, **kwargs)


class FailingStepLogStorage(InMemoryPipelineStorage):
    """Memory storage that cannot write per-step log entries."""

    async def append_log(self, *, run_id: str, level: Any, message: str, data: Any = None) -> Any:
        if message.startswith("Completed:"):
            raise RuntimeError("log write failed")
        return await super().append_log(run_id=run_id, level=level, message=message, data=data)


def build_test_orchestrator(
    *,
    storage: InMemoryPipelineStorage,
    llm_adapter: Any,
    publisher: Any = None,
    fallback_duration_ms: int = 1,
) -> TaskOrchestrator:
    return TaskOrchestrator(
        storage=storage,
        classifier=TaskClassifier(llm_adapter=llm_adapter),
        planner=TaskPlanner(
            llm_adapter=llm_adapter,
            fallback_duration_ms=fallback_duration_ms,
            default_plan_duration_ms=fallback_duration_ms,
        ),
        publisher=publisher,
    )


async def seed_task(
    storage: InMemoryPipelineStorage, *, title: str = "Write tests", description: str | None = None
):
    project = await storage.create_project(name="Demo")
    return await storage.create_task(
        project_id=project.project_id, title=title, description=description
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def storage() -> InMemoryPipelineStorage:
    return InMemoryPipelineStorage()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="",
        llm_provider="none",
        fallback_step_duration_ms=1,
        default_plan_duration_ms=1,
    )


@pytest.fixture
def llm_adapter() -> ScriptedLLMAdapter:
    return ScriptedLLMAdapter(
        category="analysis",
        plan={
            "steps": [
                {
                    "id": "s1",
                    "description": "Collect data",
                    "tool": "http",
                    "estimatedDuration": 5,
                },
                {
                    "id": "s2",
                    "description": "Summarize",
                    "tool": "fs",
                    "dependsOn": ["s1"],
                    "estimatedDuration": 5,
                },
            ],
            "estimatedDuration": 10,
            "requiredTools": ["http", "fs"],
        },
    )


@pytest.fixture
def client(
    storage: InMemoryPipelineStorage,
    test_settings: Settings,
    llm_adapter: ScriptedLLMAdapter,
) -> Iterator[TestClient]:
    from taskflow_api.main import create_app

    app = create_app(storage=storage, settings_override=test_settings, llm_adapter=llm_adapter)
    with TestClient(app) as test_client:
        yield test_client
