"""Storage interfaces for workflow definitions and execution records."""

from __future__ import annotations

from typing import Protocol

from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.storage.models import ExecutionRecord


class ExecutionStorage(Protocol):
    def migrate(self) -> None: ...

    def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition: ...

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None: ...

    def record_run_outcome(
        self,
        workflow_id: str,
        *,
        succeeded: bool,
        duration_seconds: float,
    ) -> WorkflowDefinition | None: ...

    def save_execution(self, record: ExecutionRecord) -> None: ...

    def get_execution(self, run_id: str) -> ExecutionRecord | None: ...


def apply_run_outcome(
    definition: WorkflowDefinition,
    *,
    succeeded: bool,
    duration_seconds: float,
) -> WorkflowDefinition:
    """Fold one finished run into the definition's running statistics."""
    count = definition.execution_count
    success_total = definition.success_rate * count + (100.0 if succeeded else 0.0)
    duration_total = definition.avg_duration_seconds * count + max(duration_seconds, 0.0)
    return definition.model_copy(
        update={
            "execution_count": count + 1,
            "success_rate": round(success_total / (count + 1), 4),
            "avg_duration_seconds": round(duration_total / (count + 1), 4),
        }
    )
