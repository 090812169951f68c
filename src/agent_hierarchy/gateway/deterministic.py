"""Offline gateway producing schema-shaped placeholder results without network calls."""

from __future__ import annotations

from typing import Any

from agent_hierarchy.gateway.base import InferenceRequest, InferenceResult

DETERMINISTIC_CONFIDENCE = 0.5


class DeterministicGateway:
    """Echo-style gateway used for local runs, demos, and llm-mode fallback."""

    model_name = "deterministic"

    def invoke(self, request: InferenceRequest) -> InferenceResult:
        if request.response_schema:
            output: Any = _fill_schema(request.response_schema)
            if isinstance(output, dict) and "confidence" in output:
                output["confidence"] = DETERMINISTIC_CONFIDENCE
        else:
            output = _first_line(request.prompt)
        return InferenceResult(
            output=output,
            confidence=DETERMINISTIC_CONFIDENCE,
            model=self.model_name,
        )


def _fill_schema(schema: dict[str, Any]) -> Any:
    schema_type = schema.get("type")
    if schema_type == "object":
        properties = schema.get("properties", {})
        return {
            key: _fill_schema(value)
            for key, value in properties.items()
            if isinstance(value, dict)
        }
    if schema_type == "array":
        return []
    if schema_type == "boolean":
        return True
    if schema_type in {"number", "integer"}:
        return 0
    if schema_type == "string":
        enum = schema.get("enum")
        return str(enum[0]) if isinstance(enum, list) and enum else ""
    return None


def _first_line(prompt: str) -> str:
    for line in prompt.splitlines():
        text = line.strip()
        if text:
            return text[:200]
    return ""
