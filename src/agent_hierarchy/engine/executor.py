"""Hierarchical tree executor: runs one workflow definition to a terminal record."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.engine.policy import FallbackPolicyEngine
from agent_hierarchy.gateway.base import InferenceGateway
from agent_hierarchy.graph.state import initial_state
from agent_hierarchy.graph.workflow import build_graph
from agent_hierarchy.storage.models import ExecutionRecord

logger = logging.getLogger(__name__)


class TreeExecutor:
    """Sequential, fail-fast executor. Safe to share; each run gets its own ledger."""

    def __init__(
        self,
        *,
        gateway: InferenceGateway,
        policy_engine: FallbackPolicyEngine | None = None,
        validator_temperature: float = 0.1,
        max_tree_depth: int = 64,
    ) -> None:
        self.gateway = gateway
        self.policy_engine = policy_engine or FallbackPolicyEngine()
        self._graph = build_graph(
            gateway=gateway,
            policy_engine=self.policy_engine,
            validator_temperature=validator_temperature,
            max_tree_depth=max_tree_depth,
        )

    def run(
        self,
        definition: WorkflowDefinition,
        initial_input: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> ExecutionRecord:
        """Execute ``definition``; raises DefinitionError before any record exists."""
        logger.debug("workflow=%s starting run", definition.id)
        result = self._graph.invoke(
            initial_state(definition, dict(initial_input or {}), run_id=run_id)
        )
        return result["record"]
