from __future__ import annotations

from datetime import UTC, datetime

import pytest

from agent_hierarchy.definitions.models import AgentNode, WorkflowDefinition
from agent_hierarchy.storage.base import apply_run_outcome
from agent_hierarchy.storage.memory import InMemoryExecutionStorage
from agent_hierarchy.storage.models import ExecutionRecord
from agent_hierarchy.storage.postgres import PostgresExecutionStorage


def test_run_outcome_statistics_are_running_means() -> None:
    definition = WorkflowDefinition(id="wf")

    first = apply_run_outcome(definition, succeeded=True, duration_seconds=2.0)
    second = apply_run_outcome(first, succeeded=False, duration_seconds=4.0)

    assert (first.execution_count, first.success_rate, first.avg_duration_seconds) == (
        1,
        100.0,
        2.0,
    )
    assert (second.execution_count, second.success_rate, second.avg_duration_seconds) == (
        2,
        50.0,
        3.0,
    )
    assert definition.execution_count == 0


def test_in_memory_storage_roundtrip_returns_copies() -> None:
    storage = InMemoryExecutionStorage()
    storage.migrate()
    definition = WorkflowDefinition(id="wf", agents=[AgentNode(id="a")])

    storage.save_workflow(definition)
    loaded = storage.get_workflow("wf")
    assert loaded is not None
    loaded.agents.clear()

    assert storage.get_workflow("wf").agents[0].id == "a"
    assert storage.get_workflow("missing") is None


def test_in_memory_storage_tracks_outcomes_and_executions() -> None:
    storage = InMemoryExecutionStorage()
    storage.save_workflow(WorkflowDefinition(id="wf"))
    record = ExecutionRecord(id="run-1", workflow_id="wf", started_at=datetime.now(UTC))

    updated = storage.record_run_outcome("wf", succeeded=True, duration_seconds=1.5)
    storage.save_execution(record)

    assert updated is not None and updated.execution_count == 1
    assert storage.record_run_outcome("missing", succeeded=True, duration_seconds=1.0) is None
    assert storage.get_execution("run-1") == record
    assert storage.get_execution("run-2") is None


def test_postgres_storage_requires_database_url() -> None:
    with pytest.raises(ValueError):
        PostgresExecutionStorage("")
