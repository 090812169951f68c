"""Finalize node: close the run record with its terminal status."""

from __future__ import annotations

from agent_hierarchy.graph.state import RunState

EMPTY_HIERARCHY_ERROR = "No agents configured in hierarchy"


def run(state: RunState) -> RunState:
    ledger = state["ledger"]
    status = state.get("status", "running")

    if status == "completed":
        record = ledger.finish("completed", outputs=state.get("outputs", {}))
    else:
        error = state.get("error") or EMPTY_HIERARCHY_ERROR
        if status == "running":
            ledger.log("error", error)
        record = ledger.finish("failed", error=error)
    return {"record": record, "status": record.status, "error": record.error}
