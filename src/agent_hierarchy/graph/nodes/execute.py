"""Execute node: fail-fast, depth-first composition over the top-level agents."""

from __future__ import annotations

from typing import Any

from agent_hierarchy.engine.dispatcher import NodeDispatcher
from agent_hierarchy.engine.policy import FallbackPolicyEngine
from agent_hierarchy.gateway.base import InferenceGateway
from agent_hierarchy.graph.state import RunState


def run(
    state: RunState,
    *,
    gateway: InferenceGateway,
    policy_engine: FallbackPolicyEngine,
    validator_temperature: float = 0.1,
) -> RunState:
    tree = state["tree"]
    ledger = state["ledger"]
    dispatcher = NodeDispatcher(
        tree=tree,
        gateway=gateway,
        policy_engine=policy_engine,
        ledger=ledger,
        validator_temperature=validator_temperature,
    )

    current: dict[str, Any] = dict(state.get("initial_input", {}))
    for entry_id in tree.entry_ids:
        try:
            delta = dispatcher.run_node(entry_id, current)
        except Exception as exc:  # noqa: BLE001
            ledger.log("error", f"Workflow execution failed: {exc}", node_id=entry_id)
            return {"status": "failed", "error": str(exc), "outputs": current}
        current = {**current, **delta}

    ledger.log("info", "Workflow execution completed successfully")
    return {"status": "completed", "error": None, "outputs": current}
