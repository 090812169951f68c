"""Workflow definition schemas: agent nodes, sampling parameters, and fallback policies."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AgentRole(str, Enum):
    ROOT = "root"
    CONVERSATIONAL = "conversational"
    WORKFLOW = "workflow"
    TOOL = "tool"
    VALIDATOR = "validator"
    GENERIC = "generic"

    @classmethod
    def resolve(cls, value: str | AgentRole) -> AgentRole:
        """Map a declared role to a dispatch role; unrecognized roles run as generic."""
        if isinstance(value, AgentRole):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.GENERIC

    @property
    def is_composite(self) -> bool:
        return self in (AgentRole.ROOT, AgentRole.WORKFLOW)


class IsolationMode(str, Enum):
    SHARED = "shared"
    ISOLATED = "isolated"


class MessageType(str, Enum):
    STATUS_UPDATE = "status_update"
    TASK_DELEGATION = "task_delegation"
    DATA_REQUEST = "data_request"
    DATA_RESPONSE = "data_response"
    VALIDATION_REQUEST = "validation_request"
    VALIDATION_RESPONSE = "validation_response"


class FallbackStrategy(str, Enum):
    RETRY = "retry"
    ALTERNATE_MODEL = "alternate_model"
    SIMPLIFIED_PROMPT = "simplified_prompt"
    SKIP_WITH_DEFAULT = "skip_with_default"
    ESCALATE = "escalate"
    ABORT = "abort"

    @property
    def reinvokes(self) -> bool:
        """Whether this strategy issues another invocation (and so spends budget)."""
        return self in (
            FallbackStrategy.RETRY,
            FallbackStrategy.ALTERNATE_MODEL,
            FallbackStrategy.SIMPLIFIED_PROMPT,
        )


class SamplingParameters(BaseModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, gt=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, ge=1)


class FallbackPolicy(BaseModel):
    """Per-node recovery configuration."""

    enabled: bool = True
    max_retries: int = Field(default=2, ge=0)
    strategies: list[FallbackStrategy] = Field(
        default_factory=lambda: [FallbackStrategy.RETRY]
    )


class CommunicationConfig(BaseModel):
    """Which messages a node publishes on the run's communication log."""

    broadcast_status: bool = False
    can_send: list[MessageType] = Field(default_factory=list)

    def allows(self, message_type: MessageType) -> bool:
        return message_type in self.can_send


class AgentNode(BaseModel):
    """Nested authoring form of one node in the agent hierarchy."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    role: str = AgentRole.GENERIC.value
    sampling: SamplingParameters = Field(
        default_factory=SamplingParameters, alias="llm_parameters"
    )
    prompt_template: str = Field(default="", alias="system_prompt")
    sub_agents: list[AgentNode] = Field(default_factory=list)
    isolation_mode: IsolationMode = IsolationMode.SHARED
    fallback: FallbackPolicy = Field(
        default_factory=FallbackPolicy, alias="fallback_strategy"
    )
    communication: CommunicationConfig = Field(
        default_factory=CommunicationConfig, alias="communication_config"
    )


class NodeSpec(BaseModel):
    """Flat authoring form: children are referenced by id instead of nested."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    role: str = AgentRole.GENERIC.value
    sampling: SamplingParameters = Field(
        default_factory=SamplingParameters, alias="llm_parameters"
    )
    prompt_template: str = Field(default="", alias="system_prompt")
    child_ids: list[str] = Field(default_factory=list)
    isolation_mode: IsolationMode = IsolationMode.SHARED
    fallback: FallbackPolicy = Field(
        default_factory=FallbackPolicy, alias="fallback_strategy"
    )
    communication: CommunicationConfig = Field(
        default_factory=CommunicationConfig, alias="communication_config"
    )


class WorkflowDefinition(BaseModel):
    """Hierarchical workflow configuration plus aggregate run statistics.

    A definition is authored either as a nested ``agents`` tree or as a flat
    ``nodes`` list whose entry points are named by ``entry_ids``.
    """

    id: str = Field(min_length=1)
    name: str = ""
    agents: list[AgentNode] = Field(default_factory=list)
    nodes: list[NodeSpec] = Field(default_factory=list)
    entry_ids: list[str] = Field(default_factory=list)
    execution_count: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0.0, le=100.0)
    avg_duration_seconds: float = Field(default=0.0, ge=0.0)

    @model_validator(mode="after")
    def _single_authoring_form(self) -> WorkflowDefinition:
        if self.agents and self.nodes:
            raise ValueError("define the hierarchy with either 'agents' or 'nodes', not both")
        if self.entry_ids and not self.nodes:
            raise ValueError("'entry_ids' requires a flat 'nodes' list")
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.id

