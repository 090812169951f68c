"""Gateway selection for deterministic and LLM-backed execution modes."""

from __future__ import annotations

from dataclasses import dataclass

from agent_hierarchy.gateway.base import InferenceGateway
from agent_hierarchy.gateway.deterministic import DeterministicGateway
from agent_hierarchy.gateway.openai import OpenAIChatGateway


@dataclass(frozen=True)
class GatewayResolution:
    gateway: InferenceGateway
    requested_mode: str
    effective_mode: str
    fallback_reason: str | None = None


def resolve_gateway(
    *,
    requested_mode: str,
    provider: str,
    api_key: str,
    model: str,
    base_url: str,
    timeout_s: float,
) -> GatewayResolution:
    normalized_mode = requested_mode.lower().strip()

    if normalized_mode != "llm":
        return GatewayResolution(
            gateway=DeterministicGateway(),
            requested_mode=normalized_mode,
            effective_mode="deterministic",
        )

    if provider.lower().strip() != "openai":
        return GatewayResolution(
            gateway=DeterministicGateway(),
            requested_mode=normalized_mode,
            effective_mode="deterministic",
            fallback_reason=f"unsupported gateway provider: {provider}",
        )

    if not api_key:
        return GatewayResolution(
            gateway=DeterministicGateway(),
            requested_mode=normalized_mode,
            effective_mode="deterministic",
            fallback_reason="OPENAI_API_KEY is missing for gateway llm mode",
        )

    return GatewayResolution(
        gateway=OpenAIChatGateway(
            api_key=api_key,
            model=model,
            base_url=base_url,
            timeout_s=timeout_s,
        ),
        requested_mode=normalized_mode,
        effective_mode="llm",
    )
