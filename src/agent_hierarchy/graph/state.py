"""Typed state contract for the run lifecycle graph."""

from typing import Any, TypedDict

from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.definitions.tree import NodeTree
from agent_hierarchy.engine.ledger import ExecutionLedger
from agent_hierarchy.storage.models import ExecutionRecord


class RunState(TypedDict, total=False):
    run_id: str | None
    definition: WorkflowDefinition
    initial_input: dict[str, Any]
    tree: NodeTree
    ledger: ExecutionLedger
    outputs: dict[str, Any]
    status: str
    error: str | None
    record: ExecutionRecord


def initial_state(
    definition: WorkflowDefinition,
    initial_input: dict[str, Any] | None = None,
    run_id: str | None = None,
) -> RunState:
    return {
        "run_id": run_id,
        "definition": definition,
        "initial_input": dict(initial_input or {}),
        "outputs": {},
        "status": "running",
        "error": None,
    }
