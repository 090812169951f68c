"""Run records shared by the engine, API, and persistence backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RunStatus = Literal["running", "completed", "failed"]
NodeStatus = Literal["pending", "running", "completed", "failed"]
LogLevel = Literal["debug", "info", "warning", "error"]
MessageStatus = Literal["pending", "processed"]

BROADCAST = "broadcast"

TERMINAL_RUN_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class LogEntry(BaseModel):
    timestamp: datetime
    level: LogLevel
    message: str
    node_id: str | None = None


class AgentMessage(BaseModel):
    """One entry of a run's inter-node communication log."""

    id: str
    sender: str
    recipient: str = BROADCAST
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    status: MessageStatus = "pending"
    processed_by: str | None = None


class NodeState(BaseModel):
    """Per-node, per-run state. Mutated in place while the run is open."""

    status: NodeStatus = "pending"
    invocation_count: int = 0
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    duration_ms: float | None = None
    error: str | None = None
    degraded: bool = False
    strategies_tried: list[str] = Field(default_factory=list)
    sampling: dict[str, Any] | None = None
    state_size_kb: float | None = None
    messages_sent: int = 0
    messages_received: int = 0


class ExecutionRecord(BaseModel):
    """One workflow run or module batch."""

    id: str
    workflow_id: str
    workflow_name: str = ""
    status: RunStatus = "running"
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] | None = None
    node_states: dict[str, NodeState] = Field(default_factory=dict)
    logs: list[LogEntry] = Field(default_factory=list)
    communication_log: list[AgentMessage] = Field(default_factory=list)
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
