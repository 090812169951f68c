"""Error taxonomy for node invocation, fallback recovery, and run control."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the execution engine."""


class DefinitionError(EngineError):
    """A workflow definition cannot be loaded into a valid node tree."""


class LedgerClosedError(EngineError):
    """An execution record was mutated after reaching a terminal status."""


class InvocationError(EngineError):
    """A single node invocation failed."""

    def __init__(self, message: str, *, node_id: str | None = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class TransientInvocationError(InvocationError):
    """Invocation failed for a reason that a retry may clear (timeouts, 429, 5xx)."""


class ValidationError(InvocationError):
    """A validator node rejected the data it was asked to check."""

    def __init__(
        self,
        message: str,
        *,
        node_id: str | None = None,
        verdict: dict | None = None,
    ) -> None:
        super().__init__(message, node_id=node_id)
        self.verdict = dict(verdict or {})


class ChildFailedError(InvocationError):
    """A composite node stopped because one of its children failed."""

    def __init__(self, message: str, *, node_id: str, child_id: str) -> None:
        super().__init__(message, node_id=node_id)
        self.child_id = child_id


class PolicyExhaustedError(EngineError):
    """Every configured fallback strategy failed or the retry budget ran out."""

    def __init__(self, node_id: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Node {node_id} exhausted its fallback policy after {attempts} attempt(s): "
            f"{last_error}"
        )
        self.node_id = node_id
        self.attempts = attempts
        self.last_error = last_error


class EscalatedError(EngineError):
    """Non-retryable failure surfaced to the caller; ancestor policies never mask it."""

    def __init__(self, node_id: str, cause: BaseException) -> None:
        super().__init__(f"Agent {node_id} escalated error: {cause}")
        self.node_id = node_id
        self.cause = cause


class AbortError(EngineError):
    """Run-terminating failure; stops the whole traversal that raised it."""

    def __init__(self, node_id: str, cause: BaseException) -> None:
        super().__init__(f"Workflow aborted at agent {node_id}: {cause}")
        self.node_id = node_id
        self.cause = cause


UNMASKED_ERRORS: tuple[type[EngineError], ...] = (EscalatedError, AbortError)
