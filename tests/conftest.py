from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Any

import pytest

from agent_hierarchy.engine.errors import InvocationError
from agent_hierarchy.engine.ledger import ExecutionLedger
from agent_hierarchy.engine.policy import FallbackPolicyEngine
from agent_hierarchy.gateway.base import InferenceRequest, InferenceResult


class ScriptedGateway:
    """Test-only gateway double: replays a per-node script and records every request.

    Script steps may be an exception instance (raised), an ``InferenceResult``,
    a callable taking the request, or any other value (used as the output).
    """

    def __init__(
        self,
        script: dict[str, Iterable[Any]] | None = None,
        *,
        default: Any = "ok",
        always_fail: Iterable[str] = (),
    ) -> None:
        self.script = {node_id: list(steps) for node_id, steps in (script or {}).items()}
        self.default = default
        self.always_fail = set(always_fail)
        self.requests: list[InferenceRequest] = []
        self._lock = threading.Lock()

    def invoke(self, request: InferenceRequest) -> InferenceResult:
        with self._lock:
            self.requests.append(request)
            steps = self.script.get(request.node_id)
            step = steps.pop(0) if steps else self.default
        if request.node_id in self.always_fail:
            raise InvocationError(f"{request.node_id} is down", node_id=request.node_id)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            step = step(request)
        if isinstance(step, InferenceResult):
            return step
        return InferenceResult(output=step)

    def calls_for(self, node_id: str) -> list[InferenceRequest]:
        return [request for request in self.requests if request.node_id == node_id]


@pytest.fixture
def policy_engine() -> FallbackPolicyEngine:
    return FallbackPolicyEngine(retry_base_delay_s=0.0)


@pytest.fixture
def make_ledger() -> Callable[..., ExecutionLedger]:
    def _make(*node_ids: str) -> ExecutionLedger:
        return ExecutionLedger.open(workflow_id="wf-test", node_ids=node_ids)

    return _make


@pytest.fixture
def scripted_gateway() -> type[ScriptedGateway]:
    return ScriptedGateway
