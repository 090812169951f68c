"""Role-based node dispatch and the per-node policy boundary."""

from __future__ import annotations

import copy
import json
import time
from collections.abc import Callable, Mapping
from typing import Any

from agent_hierarchy.definitions.models import (
    AgentRole,
    IsolationMode,
    MessageType,
    SamplingParameters,
)
from agent_hierarchy.definitions.tree import NodeTree, TreeNode
from agent_hierarchy.engine.errors import (
    UNMASKED_ERRORS,
    ChildFailedError,
    ValidationError,
)
from agent_hierarchy.engine.ledger import ExecutionLedger
from agent_hierarchy.engine.policy import FallbackPolicyEngine, InvocationOverrides
from agent_hierarchy.gateway.base import InferenceGateway, InferenceRequest, InferenceResult

TOOL_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "result": {"type": "string"},
        "confidence": {"type": "number"},
        "data": {"type": "object"},
    },
}

VALIDATION_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "is_valid": {"type": "boolean"},
        "issues": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "number"},
    },
}

RoleHandler = Callable[
    [TreeNode, dict[str, Any], SamplingParameters, InvocationOverrides], dict[str, Any]
]


class NodeDispatcher:
    """Executes nodes of one run. Not shared between runs."""

    def __init__(
        self,
        *,
        tree: NodeTree,
        gateway: InferenceGateway,
        policy_engine: FallbackPolicyEngine,
        ledger: ExecutionLedger,
        validator_temperature: float = 0.1,
    ) -> None:
        self.tree = tree
        self.gateway = gateway
        self.policy_engine = policy_engine
        self.ledger = ledger
        self.validator_temperature = validator_temperature
        self._handlers: dict[AgentRole, RoleHandler] = {
            AgentRole.ROOT: self._run_children,
            AgentRole.WORKFLOW: self._run_children,
            AgentRole.CONVERSATIONAL: self._run_conversational,
            AgentRole.TOOL: self._run_tool,
            AgentRole.VALIDATOR: self._run_validator,
            AgentRole.GENERIC: self._run_generic,
        }

    def run_node(self, node_id: str, state: dict[str, Any]) -> dict[str, Any]:
        """Run a node under its fallback policy; return its output delta or raise."""
        node = self.tree.get(node_id)
        started_at = time.perf_counter()
        self._broadcast_status(node, "running")
        outcome = self.policy_engine.invoke(
            node.id,
            node.fallback,
            lambda overrides: self.dispatch(node.id, state, overrides),
            ledger=self.ledger,
            label=node.label,
        )
        if outcome.succeeded:
            output = outcome.output or {}
            if outcome.degraded:
                self.ledger.complete_node(node.id, output, degraded=True)
                self.ledger.log(
                    "warning",
                    f"Agent {node.label} completed in degraded mode",
                    node_id=node.id,
                )
            self._broadcast_status(
                node,
                "completed",
                duration_ms=_duration_ms(started_at),
                degraded=outcome.degraded,
            )
            return output

        error = outcome.error
        if error is None:
            raise RuntimeError(f"Policy for node {node.id} ended without output or error")
        self.ledger.fail_node(node.id, error)
        self._broadcast_status(node, "failed", error=str(error))
        raise error

    def dispatch(
        self,
        node_id: str,
        state: dict[str, Any],
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        """One attempt at a node: the policy engine's core invocation."""
        node = self.tree.get(node_id)
        sampling = overrides.apply(node.sampling)
        if node.role is AgentRole.VALIDATOR:
            sampling = sampling.model_copy(update={"temperature": self.validator_temperature})

        state = self._receive_messages(node, state)
        self.ledger.begin_attempt(node.id, state, sampling=sampling.model_dump())
        self.ledger.log(
            "info",
            f"Executing agent: {node.label} ({node.declared_role}) "
            f"with temp={sampling.temperature}",
            node_id=node.id,
        )
        started_at = time.perf_counter()
        try:
            delta = self._handlers[node.role](node, state, sampling, overrides)
        except Exception as exc:
            duration = _duration_ms(started_at)
            self.ledger.fail_node(node.id, exc, duration_ms=duration)
            self.ledger.log("error", f"Agent {node.label} failed: {exc}", node_id=node.id)
            raise

        duration = _duration_ms(started_at)
        self.ledger.complete_node(node.id, delta, duration_ms=duration)
        self.ledger.log(
            "info", f"Agent {node.label} completed in {duration:.0f}ms", node_id=node.id
        )
        if node.role in (AgentRole.TOOL, AgentRole.GENERIC) and node.communication.allows(
            MessageType.VALIDATION_REQUEST
        ):
            self.ledger.send_message(node.id, MessageType.VALIDATION_REQUEST, {"data": delta})
        return delta

    def _run_children(
        self,
        node: TreeNode,
        state: dict[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        current = state
        requested: set[str] = set()
        for child in self.tree.children(node.id):
            if node.communication.allows(MessageType.TASK_DELEGATION):
                self.ledger.send_message(
                    node.id,
                    MessageType.TASK_DELEGATION,
                    {"task": f"Execute {child.label}"},
                    recipient=child.id,
                )
            if node.communication.allows(MessageType.DATA_REQUEST):
                for peer_id in self.ledger.completed_node_ids():
                    if peer_id == node.id or peer_id in requested:
                        continue
                    requested.add(peer_id)
                    self.ledger.send_message(
                        node.id,
                        MessageType.DATA_REQUEST,
                        {"data_key": "result"},
                        recipient=peer_id,
                    )
            try:
                child_delta = self.run_node(child.id, current)
            except UNMASKED_ERRORS:
                raise
            except Exception as exc:
                raise ChildFailedError(
                    f"Sub-agent {child.label} failed: {exc}",
                    node_id=node.id,
                    child_id=child.id,
                ) from exc
            current = {**current, **child_delta}
        return current

    def _run_conversational(
        self,
        node: TreeNode,
        state: dict[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        peers = self.ledger.peer_statuses(node.id)
        peer_context = "\n".join(
            f"{payload.get('agent_name', sender)}: {payload.get('status', 'unknown')}"
            for sender, payload in peers.items()
        )
        prompt = _build_prompt(
            node,
            state,
            overrides,
            default_instruction="You are a helpful assistant.",
            context=f"Peer agent status:\n{peer_context}" if peer_context else "",
            closing="Provide a conversational response.",
        )
        result = self._invoke(node, prompt, state, sampling, overrides)
        return {"conversation_response": result.output}

    def _run_tool(
        self,
        node: TreeNode,
        state: dict[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        inputs = copy.deepcopy(state) if node.isolation_mode is IsolationMode.ISOLATED else state
        prompt = _build_prompt(
            node,
            inputs,
            overrides,
            default_instruction="Execute the following task.",
            closing="Provide structured output.",
        )
        result = self._invoke(
            node, prompt, inputs, sampling, overrides, response_schema=TOOL_RESPONSE_SCHEMA
        )
        if isinstance(result.output, Mapping):
            return dict(result.output)
        return {"result": result.output}

    def _run_validator(
        self,
        node: TreeNode,
        state: dict[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        requests = self.ledger.pending_messages(node.id, MessageType.VALIDATION_REQUEST)
        request = requests[0] if requests else None
        data = request.payload.get("data", {}) if request is not None else state
        prompt = _build_prompt(
            node,
            data,
            overrides,
            default_instruction="Validate the following data.",
            closing="Check for completeness, correctness and quality. Provide validation results.",
        )
        result = self._invoke(
            node,
            prompt,
            data,
            sampling,
            overrides,
            response_schema=VALIDATION_RESPONSE_SCHEMA,
        )
        if isinstance(result.output, Mapping):
            verdict = dict(result.output)
        else:
            verdict = {"is_valid": bool(result.output)}
        if request is not None and self.ledger.mark_processed(request.id, node.id):
            self.ledger.send_message(
                node.id, MessageType.VALIDATION_RESPONSE, verdict, recipient=request.sender
            )
        if verdict.get("is_valid") is False:
            issues = verdict.get("issues") or []
            raise ValidationError(
                f"Validator {node.label} rejected the data: {issues}",
                node_id=node.id,
                verdict=verdict,
            )
        return {"validation": verdict, "validated_data": data}

    def _run_generic(
        self,
        node: TreeNode,
        state: dict[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
    ) -> dict[str, Any]:
        prompt = _build_prompt(
            node, state, overrides, default_instruction="Process the following input."
        )
        result = self._invoke(node, prompt, state, sampling, overrides)
        return {"result": result.output}

    def _broadcast_status(self, node: TreeNode, status: str, **details: Any) -> None:
        if not node.communication.broadcast_status:
            return
        self.ledger.send_message(
            node.id,
            MessageType.STATUS_UPDATE,
            {"status": status, "agent_name": node.label, **details},
        )

    def _receive_messages(self, node: TreeNode, state: dict[str, Any]) -> dict[str, Any]:
        """Consume delegations and data requests addressed to this node."""
        received = state
        for message in self.ledger.pending_messages(node.id, MessageType.TASK_DELEGATION):
            if not self.ledger.mark_processed(message.id, node.id):
                continue
            task = message.payload.get("task")
            if task:
                received = {**received, "delegated_task": task, "delegated_from": message.sender}

        previous = self.ledger.node_state(node.id).outputs or {}
        for message in self.ledger.pending_messages(node.id, MessageType.DATA_REQUEST):
            if not self.ledger.mark_processed(message.id, node.id):
                continue
            key = message.payload.get("data_key")
            if key in previous:
                self.ledger.send_message(
                    node.id,
                    MessageType.DATA_RESPONSE,
                    {"request_id": message.id, "data": previous[key]},
                    recipient=message.sender,
                )
        return received

    def _invoke(
        self,
        node: TreeNode,
        prompt: str,
        inputs: Mapping[str, Any],
        sampling: SamplingParameters,
        overrides: InvocationOverrides,
        *,
        response_schema: dict[str, Any] | None = None,
    ) -> InferenceResult:
        return self.gateway.invoke(
            InferenceRequest(
                node_id=node.id,
                prompt=prompt,
                sampling=sampling,
                inputs=inputs,
                model=overrides.model,
                response_schema=response_schema,
            )
        )


def _build_prompt(
    node: TreeNode,
    inputs: Mapping[str, Any],
    overrides: InvocationOverrides,
    *,
    default_instruction: str,
    context: str = "",
    closing: str = "",
) -> str:
    prompt = node.prompt_template or default_instruction
    if context:
        prompt += f"\n\n{context}"
    prompt += f"\n\nInput: {json.dumps(inputs, default=str)}"
    if closing:
        prompt += f"\n\n{closing}"
    return prompt + overrides.prompt_suffix


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
