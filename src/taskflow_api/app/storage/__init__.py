"""Storage backends for projects, tasks, workflows, runs, and execution logs."""

from taskflow_api.app.storage.base import PipelineStorage
from taskflow_api.app.storage.memory import InMemoryPipelineStorage
from taskflow_api.app.storage.postgres import PostgresPipelineStorage

__all__ = [
    "InMemoryPipelineStorage",
    "PipelineStorage",
    "PostgresPipelineStorage",
]
