"""Inference gateways: the external generative service nodes call into."""

from agent_hierarchy.gateway.base import InferenceGateway, InferenceRequest, InferenceResult
from agent_hierarchy.gateway.deterministic import DeterministicGateway
from agent_hierarchy.gateway.openai import OpenAIChatGateway
from agent_hierarchy.gateway.resolution import GatewayResolution, resolve_gateway

__all__ = [
    "DeterministicGateway",
    "GatewayResolution",
    "InferenceGateway",
    "InferenceRequest",
    "InferenceResult",
    "OpenAIChatGateway",
    "resolve_gateway",
]
