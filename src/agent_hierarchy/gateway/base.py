"""Inference gateway contract."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from agent_hierarchy.definitions.models import SamplingParameters


@dataclass(frozen=True)
class InferenceRequest:
    node_id: str
    prompt: str
    sampling: SamplingParameters
    # The state the node was handed; shared-mode nodes see the caller's object.
    inputs: Mapping[str, Any] = field(default_factory=dict)
    model: str | None = None
    response_schema: dict[str, Any] | None = None


class InferenceResult(BaseModel):
    # Opaque to the engine; only ``confidence`` is ever read (for aggregation).
    output: Any = None
    confidence: float | None = None
    model: str | None = None


class InferenceGateway(Protocol):
    """Performs the generative call a node requests. May raise on any failure."""

    def invoke(self, request: InferenceRequest) -> InferenceResult: ...
