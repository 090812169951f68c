"""Storage backends and run record models."""

from agent_hierarchy.storage.base import ExecutionStorage, apply_run_outcome
from agent_hierarchy.storage.memory import InMemoryExecutionStorage
from agent_hierarchy.storage.models import (
    AgentMessage,
    ExecutionRecord,
    LogEntry,
    NodeState,
)
from agent_hierarchy.storage.postgres import PostgresExecutionStorage

__all__ = [
    "AgentMessage",
    "ExecutionRecord",
    "ExecutionStorage",
    "InMemoryExecutionStorage",
    "LogEntry",
    "NodeState",
    "PostgresExecutionStorage",
    "apply_run_outcome",
]
