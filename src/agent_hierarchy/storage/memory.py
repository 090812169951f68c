"""In-memory storage backend for tests and database-less local runs."""

from __future__ import annotations

import threading

from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.storage.base import apply_run_outcome
from agent_hierarchy.storage.models import ExecutionRecord


class InMemoryExecutionStorage:
    """Simple dict-backed implementation; returns copies so callers cannot alias it."""

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._executions: dict[str, ExecutionRecord] = {}
        self._lock = threading.Lock()

    def migrate(self) -> None:
        return None

    def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._lock:
            self._workflows[definition.id] = definition.model_copy(deep=True)
        return definition

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._lock:
            definition = self._workflows.get(workflow_id)
            return definition.model_copy(deep=True) if definition else None

    def record_run_outcome(
        self,
        workflow_id: str,
        *,
        succeeded: bool,
        duration_seconds: float,
    ) -> WorkflowDefinition | None:
        with self._lock:
            current = self._workflows.get(workflow_id)
            if current is None:
                return None
            updated = apply_run_outcome(
                current, succeeded=succeeded, duration_seconds=duration_seconds
            )
            self._workflows[workflow_id] = updated
            return updated.model_copy(deep=True)

    def save_execution(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._executions[record.id] = record.model_copy(deep=True)

    def get_execution(self, run_id: str) -> ExecutionRecord | None:
        with self._lock:
            record = self._executions.get(run_id)
            return record.model_copy(deep=True) if record else None
