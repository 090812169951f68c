"""Prepare node: load the node tree and open the run record."""

from __future__ import annotations

from agent_hierarchy.definitions.tree import NodeTree
from agent_hierarchy.engine.ledger import ExecutionLedger
from agent_hierarchy.graph.state import RunState


def run(state: RunState, *, max_tree_depth: int = 64) -> RunState:
    definition = state["definition"]
    tree = NodeTree.from_definition(definition, max_depth=max_tree_depth)
    ledger = ExecutionLedger.open(
        workflow_id=definition.id,
        workflow_name=definition.display_name,
        inputs=state.get("initial_input", {}),
        node_ids=[node.id for node in tree.walk()],
        run_id=state.get("run_id"),
    )
    ledger.log("info", f"Starting workflow execution: {definition.display_name}")
    return {"tree": tree, "ledger": ledger, "run_id": ledger.run_id}


def route(state: RunState) -> str:
    tree = state.get("tree")
    if tree is None or not tree.entry_ids:
        return "empty"
    return "execute"
