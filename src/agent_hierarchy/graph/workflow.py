"""LangGraph assembly of the run lifecycle: prepare -> execute -> finalize."""

from langgraph.graph import END, StateGraph

from agent_hierarchy.engine.policy import FallbackPolicyEngine
from agent_hierarchy.gateway.base import InferenceGateway
from agent_hierarchy.graph.nodes import execute, finalize, prepare
from agent_hierarchy.graph.state import RunState


def build_graph(
    *,
    gateway: InferenceGateway,
    policy_engine: FallbackPolicyEngine,
    validator_temperature: float = 0.1,
    max_tree_depth: int = 64,
):
    def _prepare(state: RunState) -> RunState:
        return prepare.run(state, max_tree_depth=max_tree_depth)

    def _execute(state: RunState) -> RunState:
        return execute.run(
            state,
            gateway=gateway,
            policy_engine=policy_engine,
            validator_temperature=validator_temperature,
        )

    graph = StateGraph(RunState)

    graph.add_node("prepare", _prepare)
    graph.add_node("execute", _execute)
    graph.add_node("finalize", finalize.run)

    graph.set_entry_point("prepare")
    graph.add_conditional_edges(
        "prepare", prepare.route, {"execute": "execute", "empty": "finalize"}
    )
    graph.add_edge("execute", "finalize")
    graph.add_edge("finalize", END)

    return graph.compile()
