"""Fallback policy engine: bounded, ordered recovery around one invocation.

State machine per invocation::

    not_attempted -> attempt_in_progress -> succeeded
                                         -> exhausted

Attempt #0 always runs. After a failure the configured strategies are walked
in order. Re-invoking strategies (retry, alternate_model, simplified_prompt)
each spend one unit of ``max_retries``; once the budget is spent they are
skipped, but a later terminal strategy (skip_with_default, escalate, abort)
is still honored. Escalated and abort errors coming up from descendants are
never recovered here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agent_hierarchy.definitions.models import (
    FallbackPolicy,
    FallbackStrategy,
    SamplingParameters,
)
from agent_hierarchy.engine.errors import (
    UNMASKED_ERRORS,
    AbortError,
    EscalatedError,
    PolicyExhaustedError,
)
from agent_hierarchy.engine.ledger import ExecutionLedger

logger = logging.getLogger(__name__)

SKIPPED_RESULT = "Skipped with default"
SIMPLIFIED_PROMPT_SUFFIX = "\n\nIMPORTANT: Keep response simple and focused."


class PolicyState(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    ATTEMPT_IN_PROGRESS = "attempt_in_progress"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class InvocationOverrides:
    """Request transformation applied by a fallback strategy."""

    temperature: float | None = None
    model: str | None = None
    prompt_suffix: str = ""

    def apply(self, sampling: SamplingParameters) -> SamplingParameters:
        if self.temperature is None:
            return sampling
        return sampling.model_copy(update={"temperature": self.temperature})


NO_OVERRIDES = InvocationOverrides()

Attempt = Callable[[InvocationOverrides], Mapping[str, Any]]


@dataclass
class PolicyOutcome:
    node_id: str
    state: PolicyState
    output: dict[str, Any] | None = None
    error: BaseException | None = None
    attempts: int = 0
    strategies_tried: list[str] = field(default_factory=list)
    degraded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is PolicyState.SUCCEEDED


@dataclass
class _PolicyContext:
    node_id: str
    ledger: ExecutionLedger
    attempts: int
    last_error: BaseException
    strategies_tried: list[str]


StrategyHandler = Callable[[_PolicyContext], "PolicyOutcome | InvocationOverrides"]


class FallbackPolicyEngine:
    def __init__(
        self,
        *,
        retry_base_delay_s: float = 1.0,
        alternate_temperature: float = 0.3,
        alternate_model: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.retry_base_delay_s = retry_base_delay_s
        self.alternate_temperature = alternate_temperature
        self.alternate_model = alternate_model or None
        self._sleep = sleep
        self._handlers: dict[FallbackStrategy, StrategyHandler] = {
            FallbackStrategy.RETRY: self._retry,
            FallbackStrategy.ALTERNATE_MODEL: self._alternate_model,
            FallbackStrategy.SIMPLIFIED_PROMPT: self._simplified_prompt,
            FallbackStrategy.SKIP_WITH_DEFAULT: self._skip_with_default,
            FallbackStrategy.ESCALATE: self._escalate,
            FallbackStrategy.ABORT: self._abort,
        }
        missing = set(FallbackStrategy) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for fallback strategies: {sorted(missing)}")

    def invoke(
        self,
        node_id: str,
        policy: FallbackPolicy,
        attempt: Attempt,
        *,
        ledger: ExecutionLedger,
        label: str | None = None,
    ) -> PolicyOutcome:
        name = label or node_id
        outcome = PolicyOutcome(node_id=node_id, state=PolicyState.NOT_ATTEMPTED)

        outcome.state = PolicyState.ATTEMPT_IN_PROGRESS
        try:
            output = attempt(NO_OVERRIDES)
        except UNMASKED_ERRORS as exc:
            return _exhausted(outcome, exc, attempts=1)
        except Exception as exc:  # noqa: BLE001
            last_error: BaseException = exc
        else:
            return _succeeded(outcome, output, attempts=1)

        attempts = 1
        if not policy.enabled:
            return _exhausted(outcome, last_error, attempts=attempts)

        ledger.log(
            "warning",
            f"Agent {name} initial execution failed, trying fallback strategies",
            node_id=node_id,
        )
        recoveries = 0
        for strategy in policy.strategies:
            if strategy.reinvokes and recoveries >= policy.max_retries:
                ledger.log(
                    "info",
                    f"Skipping fallback strategy '{strategy.value}': "
                    f"retry budget of {policy.max_retries} exhausted",
                    node_id=node_id,
                )
                continue

            outcome.strategies_tried.append(strategy.value)
            ledger.note_strategy(node_id, strategy.value)
            ledger.log(
                "info", f"Attempting fallback strategy: {strategy.value}", node_id=node_id
            )
            context = _PolicyContext(
                node_id=node_id,
                ledger=ledger,
                attempts=attempts,
                last_error=last_error,
                strategies_tried=outcome.strategies_tried,
            )
            step = self._handlers[strategy](context)
            if isinstance(step, PolicyOutcome):
                step.attempts = attempts
                return step

            recoveries += 1
            try:
                output = attempt(step)
            except UNMASKED_ERRORS as exc:
                return _exhausted(outcome, exc, attempts=attempts + 1)
            except Exception as exc:  # noqa: BLE001
                attempts += 1
                last_error = exc
                ledger.log(
                    "warning",
                    f"Fallback strategy '{strategy.value}' failed: {exc}",
                    node_id=node_id,
                )
                continue

            ledger.log(
                "info", f"Fallback strategy '{strategy.value}' succeeded", node_id=node_id
            )
            return _succeeded(outcome, output, attempts=attempts + 1)

        exhausted = PolicyExhaustedError(node_id, attempts=attempts, last_error=last_error)
        exhausted.__cause__ = last_error
        return _exhausted(outcome, exhausted, attempts=attempts)

    def _retry(self, context: _PolicyContext) -> InvocationOverrides:
        delay = context.attempts * self.retry_base_delay_s
        if delay > 0:
            self._sleep(delay)
        return NO_OVERRIDES

    def _alternate_model(self, context: _PolicyContext) -> InvocationOverrides:
        return InvocationOverrides(
            temperature=self.alternate_temperature,
            model=self.alternate_model,
        )

    def _simplified_prompt(self, context: _PolicyContext) -> InvocationOverrides:
        return InvocationOverrides(prompt_suffix=SIMPLIFIED_PROMPT_SUFFIX)

    def _skip_with_default(self, context: _PolicyContext) -> PolicyOutcome:
        context.ledger.log(
            "warning",
            f"Using default values for agent {context.node_id}",
            node_id=context.node_id,
        )
        return PolicyOutcome(
            node_id=context.node_id,
            state=PolicyState.SUCCEEDED,
            output={
                "result": SKIPPED_RESULT,
                "fallback_used": True,
                "original_error": str(context.last_error),
            },
            strategies_tried=context.strategies_tried,
            degraded=True,
        )

    def _escalate(self, context: _PolicyContext) -> PolicyOutcome:
        error = EscalatedError(context.node_id, context.last_error)
        error.__cause__ = context.last_error
        context.ledger.log("error", str(error), node_id=context.node_id)
        return PolicyOutcome(
            node_id=context.node_id,
            state=PolicyState.EXHAUSTED,
            error=error,
            strategies_tried=context.strategies_tried,
        )

    def _abort(self, context: _PolicyContext) -> PolicyOutcome:
        error = AbortError(context.node_id, context.last_error)
        error.__cause__ = context.last_error
        context.ledger.log("error", str(error), node_id=context.node_id)
        return PolicyOutcome(
            node_id=context.node_id,
            state=PolicyState.EXHAUSTED,
            error=error,
            strategies_tried=context.strategies_tried,
        )


def _succeeded(
    outcome: PolicyOutcome, output: Mapping[str, Any], *, attempts: int
) -> PolicyOutcome:
    outcome.state = PolicyState.SUCCEEDED
    outcome.output = dict(output)
    outcome.attempts = attempts
    return outcome


def _exhausted(outcome: PolicyOutcome, error: BaseException, *, attempts: int) -> PolicyOutcome:
    outcome.state = PolicyState.EXHAUSTED
    outcome.error = error
    outcome.attempts = attempts
    logger.debug("node=%s policy exhausted attempts=%d error=%s", outcome.node_id, attempts, error)
    return outcome
