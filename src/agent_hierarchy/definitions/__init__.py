"""Workflow definitions and the loaded node tree."""

from agent_hierarchy.definitions.models import (
    AgentNode,
    AgentRole,
    CommunicationConfig,
    FallbackPolicy,
    FallbackStrategy,
    IsolationMode,
    MessageType,
    NodeSpec,
    SamplingParameters,
    WorkflowDefinition,
)
from agent_hierarchy.definitions.tree import NodeTree, TreeNode

__all__ = [
    "AgentNode",
    "AgentRole",
    "CommunicationConfig",
    "FallbackPolicy",
    "FallbackStrategy",
    "IsolationMode",
    "MessageType",
    "NodeSpec",
    "NodeTree",
    "SamplingParameters",
    "TreeNode",
    "WorkflowDefinition",
]
