"""FastAPI application wiring for the task pipeline service.

Shared runtime objects live on app.state:
- storage: PipelineStorage backend
- hub: ProgressHub serving the per-user WebSocket channels
- orchestrator: TaskOrchestrator wired with storage, LLM stages, and the hub
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import (
    BackgroundTasks,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)

from .app.classifier import TaskClassifier
from .app.llm import LLMAdapter, build_llm_adapter
from .app.logging_config import configure_logging
from .app.models import (
    CreateProjectRequest,
    CreateTaskRequest,
    ExecuteTaskResponse,
    ExecutionLogRecord,
    ProjectRecord,
    RunRecord,
    TaskPage,
    TaskRecord,
    TaskStatus,
    UpdateTaskRequest,
)
from .app.orchestrator import RunNotFoundError, RunStateError, TaskOrchestrator
from .app.planner import TaskPlanner
from .app.progress import ProgressHub, channel_for_user
from .app.settings import Settings, get_settings
from .app.storage.base import PipelineStorage
from .app.storage.postgres import PostgresPipelineStorage

logger = logging.getLogger(__name__)

_UNSET = object()


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue[Any]) -> None:
    while True:
        event_name, payload = await queue.get()
        await websocket.send_json({"event": event_name, "payload": payload})


def build_orchestrator(
    *,
    settings: Settings,
    storage: PipelineStorage,
    hub: ProgressHub,
    llm_adapter: LLMAdapter | None,
) -> TaskOrchestrator:
    classifier = TaskClassifier(
        llm_adapter=llm_adapter,
        temperature=settings.classifier_temperature,
        max_tokens=settings.classifier_max_tokens,
    )
    planner = TaskPlanner(
        llm_adapter=llm_adapter,
        temperature=settings.planner_temperature,
        max_tokens=settings.planner_max_tokens,
        fallback_duration_ms=settings.fallback_step_duration_ms,
        default_plan_duration_ms=settings.default_plan_duration_ms,
    )
    return TaskOrchestrator(
        storage=storage,
        classifier=classifier,
        planner=planner,
        publisher=hub,
        default_log_limit=settings.default_log_limit,
    )


def create_app(
    *,
    storage: PipelineStorage | None = None,
    settings_override: Settings | None = None,
    llm_adapter: LLMAdapter | None | object = _UNSET,
) -> FastAPI:
    """Application factory.

    Tests pass an in-memory storage and a fake LLM adapter; production reads
    everything from settings. Passing llm_adapter=None disables the provider
    so classifier and planner take their fallbacks.
    """
    settings = settings_override or get_settings()

    async def _ensure_runtime_state(app: FastAPI) -> None:
        if hasattr(app.state, "orchestrator"):
            return
        if storage is None:
            database_url = settings.resolved_database_url()
            if not database_url:
                raise RuntimeError(
                    "Missing database URL. Set TASKFLOW_DATABASE_URL "
                    "or DATABASE_URL before starting the app."
                )
            app.state.storage = PostgresPipelineStorage(database_url)
        else:
            app.state.storage = storage
        await app.state.storage.migrate()

        adapter = build_llm_adapter(settings) if llm_adapter is _UNSET else llm_adapter
        app.state.hub = ProgressHub(queue_size=settings.progress_queue_size)
        app.state.orchestrator = build_orchestrator(
            settings=settings,
            storage=app.state.storage,
            hub=app.state.hub,
            llm_adapter=adapter,  # type: ignore[arg-type]
        )
        logger.info(
            "app event=ready service=%s storage=%s llm=%s",
            settings.app_name,
            type(app.state.storage).__name__,
            type(adapter).__name__ if adapter is not None else "none",
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        await _ensure_runtime_state(app)
        yield

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

    async def _orchestrator(request: Request) -> TaskOrchestrator:
        # Clients that skip lifespan (no `with TestClient(...)`) still get state.
        await _ensure_runtime_state(request.app)
        return request.app.state.orchestrator

    async def _storage(request: Request) -> PipelineStorage:
        await _ensure_runtime_state(request.app)
        return request.app.state.storage

    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/projects", response_model=ProjectRecord)
    async def create_project(payload: CreateProjectRequest, request: Request) -> ProjectRecord:
        store = await _storage(request)
        return await store.create_project(name=payload.name, description=payload.description)

    @app.get("/projects", response_model=list[ProjectRecord])
    async def list_projects(request: Request) -> list[ProjectRecord]:
        store = await _storage(request)
        return await store.list_projects()

    @app.get("/projects/{project_id}", response_model=ProjectRecord)
    async def get_project(project_id: str, request: Request) -> ProjectRecord:
        store = await _storage(request)
        project = await store.get_project(project_id)
        if project is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return project

    @app.post("/tasks", response_model=TaskRecord)
    async def create_task(payload: CreateTaskRequest, request: Request) -> TaskRecord:
        store = await _storage(request)
        if await store.get_project(payload.project_id) is None:
            raise HTTPException(status_code=404, detail="Project not found")
        return await store.create_task(
            project_id=payload.project_id,
            title=payload.title,
            description=payload.description,
            priority=payload.priority,
        )

    @app.get("/tasks", response_model=TaskPage)
    async def list_tasks(
        request: Request,
        status: TaskStatus | None = None,
        project_id: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1, le=100),
    ) -> TaskPage:
        store = await _storage(request)
        items = await store.list_tasks(
            project_id=project_id, status=status, limit=limit, offset=(page - 1) * limit
        )
        total = await store.count_tasks(project_id=project_id, status=status)
        return TaskPage(items=items, page=page, limit=limit, total=total)

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    async def get_task(task_id: str, request: Request) -> TaskRecord:
        store = await _storage(request)
        task = await store.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task

    @app.patch("/tasks/{task_id}", response_model=TaskRecord)
    async def update_task(
        task_id: str, payload: UpdateTaskRequest, request: Request
    ) -> TaskRecord:
        store = await _storage(request)
        if await store.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return await store.update_task(task_id, **payload.model_dump(exclude_none=True))

    @app.delete("/tasks/{task_id}", status_code=204)
    async def delete_task(task_id: str, request: Request) -> Response:
        store = await _storage(request)
        if not await store.delete_task(task_id):
            raise HTTPException(status_code=404, detail="Task not found")
        return Response(status_code=204)

    @app.post("/tasks/{task_id}/execute", status_code=202, response_model=ExecuteTaskResponse)
    async def execute_task(
        task_id: str,
        request: Request,
        background_tasks: BackgroundTasks,
        x_user_id: str = Header(default="anonymous"),
    ) -> ExecuteTaskResponse:
        orchestrator = await _orchestrator(request)
        if await orchestrator.storage.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        # The pipeline runs after the response is sent; progress arrives over /ws.
        background_tasks.add_task(orchestrator.execute_task, task_id, x_user_id)
        return ExecuteTaskResponse(task_id=task_id)

    @app.get("/tasks/{task_id}/runs", response_model=list[RunRecord])
    async def list_task_runs(task_id: str, request: Request) -> list[RunRecord]:
        store = await _storage(request)
        if await store.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return await store.list_runs(task_id)

    @app.get("/runs/{run_id}", response_model=RunRecord)
    async def get_run(run_id: str, request: Request) -> RunRecord:
        store = await _storage(request)
        run = await store.get_run(run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return run

    @app.get("/runs/{run_id}/logs", response_model=list[ExecutionLogRecord])
    async def get_run_logs(
        run_id: str,
        request: Request,
        limit: int | None = Query(default=None, ge=1, le=1000),
    ) -> list[ExecutionLogRecord]:
        orchestrator = await _orchestrator(request)
        if await orchestrator.storage.get_run(run_id) is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return await orchestrator.get_logs(run_id, limit=limit)

    @app.post("/runs/{run_id}/cancel", response_model=RunRecord)
    async def cancel_run(run_id: str, request: Request) -> RunRecord:
        orchestrator = await _orchestrator(request)
        try:
            return await orchestrator.cancel_task(run_id)
        except RunNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Run not found") from exc
        except RunStateError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.websocket("/ws/users/{user_id}")
    async def progress_stream(websocket: WebSocket, user_id: str) -> None:
        await _ensure_runtime_state(websocket.app)
        hub: ProgressHub = websocket.app.state.hub
        channel = channel_for_user(user_id)
        # Subscribe before accepting so no event published after the handshake is missed.
        async with hub.subscription(channel) as queue:
            await websocket.accept()
            forward = asyncio.create_task(_forward_events(websocket, queue))
            try:
                # Inbound frames are ignored; reading only detects the disconnect.
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("progress_stream event=disconnect channel=%s", channel)
            finally:
                forward.cancel()
                with suppress(asyncio.CancelledError):
                    await forward

    return app


__all__ = ["app", "build_orchestrator", "create_app"]

# Module-level app for `uvicorn taskflow_api.main:app`.
app = create_app()
