from __future__ import annotations

import pytest

from agent_hierarchy.definitions.models import FallbackPolicy, FallbackStrategy
from agent_hierarchy.engine.errors import (
    AbortError,
    EscalatedError,
    InvocationError,
    PolicyExhaustedError,
)
from agent_hierarchy.engine.policy import (
    SIMPLIFIED_PROMPT_SUFFIX,
    FallbackPolicyEngine,
    InvocationOverrides,
    PolicyState,
)

RETRY = FallbackStrategy.RETRY


def _failing(calls: list[InvocationOverrides], *, succeed_on: int | None = None):
    def attempt(overrides: InvocationOverrides) -> dict[str, str]:
        calls.append(overrides)
        if succeed_on is not None and len(calls) == succeed_on:
            return {"result": f"call {len(calls)}"}
        raise InvocationError(f"boom {len(calls)}")

    return attempt


def test_first_attempt_success_skips_strategies(policy_engine, make_ledger) -> None:
    ledger = make_ledger("n")
    outcome = policy_engine.invoke(
        "n", FallbackPolicy(), lambda _: {"result": "fine"}, ledger=ledger
    )

    assert outcome.state is PolicyState.SUCCEEDED
    assert outcome.output == {"result": "fine"}
    assert outcome.attempts == 1
    assert outcome.strategies_tried == []
    assert ledger.record.logs == []


def test_retry_budget_is_a_hard_limit(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    policy = FallbackPolicy(max_retries=2, strategies=[RETRY, RETRY, RETRY])

    outcome = policy_engine.invoke("n", policy, _failing(calls), ledger=make_ledger("n"))

    assert outcome.state is PolicyState.EXHAUSTED
    assert isinstance(outcome.error, PolicyExhaustedError)
    assert len(calls) == 3
    assert outcome.attempts == 3
    assert str(outcome.error.last_error) == "boom 3"
    assert outcome.error.__cause__ is outcome.error.last_error


def test_retry_recovers_on_second_attempt(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    ledger = make_ledger("n")

    outcome = policy_engine.invoke(
        "n", FallbackPolicy(max_retries=1), _failing(calls, succeed_on=2), ledger=ledger
    )

    assert outcome.succeeded
    assert outcome.output == {"result": "call 2"}
    assert outcome.attempts == 2
    assert ledger.node_state("n").strategies_tried == ["retry"]
    messages = [entry.message for entry in ledger.record.logs]
    assert "Agent n initial execution failed, trying fallback strategies" in messages
    assert "Fallback strategy 'retry' succeeded" in messages


def test_retry_waits_linearly_between_attempts(make_ledger) -> None:
    sleeps: list[float] = []
    engine = FallbackPolicyEngine(retry_base_delay_s=0.5, sleep=sleeps.append)
    policy = FallbackPolicy(max_retries=2, strategies=[RETRY, RETRY])

    engine.invoke("n", policy, _failing([]), ledger=make_ledger("n"))

    assert sleeps == [0.5, 1.0]


def test_alternate_model_and_simplified_prompt_override_the_request(make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    engine = FallbackPolicyEngine(
        retry_base_delay_s=0.0, alternate_temperature=0.25, alternate_model="small-model"
    )
    policy = FallbackPolicy(
        max_retries=2,
        strategies=[FallbackStrategy.ALTERNATE_MODEL, FallbackStrategy.SIMPLIFIED_PROMPT],
    )

    outcome = engine.invoke("n", policy, _failing(calls, succeed_on=3), ledger=make_ledger("n"))

    assert outcome.succeeded
    assert calls[1].temperature == 0.25
    assert calls[1].model == "small-model"
    assert calls[1].prompt_suffix == ""
    assert calls[2].prompt_suffix == SIMPLIFIED_PROMPT_SUFFIX
    assert calls[2].temperature is None


def test_skip_with_default_returns_degraded_sentinel(policy_engine, make_ledger) -> None:
    policy = FallbackPolicy(strategies=[FallbackStrategy.SKIP_WITH_DEFAULT])

    outcome = policy_engine.invoke("n", policy, _failing([]), ledger=make_ledger("n"))

    assert outcome.succeeded
    assert outcome.degraded
    assert outcome.output == {
        "result": "Skipped with default",
        "fallback_used": True,
        "original_error": "boom 1",
    }


def test_terminal_strategy_is_honored_after_budget_runs_out(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    ledger = make_ledger("n")
    policy = FallbackPolicy(
        max_retries=1,
        strategies=[RETRY, RETRY, FallbackStrategy.SKIP_WITH_DEFAULT],
    )

    outcome = policy_engine.invoke("n", policy, _failing(calls), ledger=ledger)

    assert outcome.degraded
    assert len(calls) == 2
    assert outcome.strategies_tried == ["retry", "skip_with_default"]
    messages = [entry.message for entry in ledger.record.logs]
    assert any("Skipping fallback strategy 'retry'" in message for message in messages)


def test_escalate_stops_the_walk(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    policy = FallbackPolicy(strategies=[FallbackStrategy.ESCALATE, RETRY])

    outcome = policy_engine.invoke("n", policy, _failing(calls), ledger=make_ledger("n"))

    assert isinstance(outcome.error, EscalatedError)
    assert str(outcome.error) == "Agent n escalated error: boom 1"
    assert len(calls) == 1


def test_abort_stops_the_walk(policy_engine, make_ledger) -> None:
    policy = FallbackPolicy(strategies=[FallbackStrategy.ABORT])

    outcome = policy_engine.invoke("n", policy, _failing([]), ledger=make_ledger("n"))

    assert isinstance(outcome.error, AbortError)
    assert str(outcome.error) == "Workflow aborted at agent n: boom 1"


def test_disabled_policy_returns_raw_error_after_one_attempt(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    policy = FallbackPolicy(enabled=False, strategies=[RETRY, RETRY])

    outcome = policy_engine.invoke("n", policy, _failing(calls), ledger=make_ledger("n"))

    assert len(calls) == 1
    assert isinstance(outcome.error, InvocationError)
    assert not isinstance(outcome.error, PolicyExhaustedError)


@pytest.mark.parametrize(
    "policy",
    [
        FallbackPolicy(strategies=[]),
        FallbackPolicy(max_retries=0, strategies=[RETRY]),
    ],
)
def test_no_recovery_possible_exhausts_after_one_attempt(
    policy: FallbackPolicy, policy_engine, make_ledger
) -> None:
    calls: list[InvocationOverrides] = []

    outcome = policy_engine.invoke("n", policy, _failing(calls), ledger=make_ledger("n"))

    assert len(calls) == 1
    assert isinstance(outcome.error, PolicyExhaustedError)


def test_descendant_escalation_bypasses_own_strategies(policy_engine, make_ledger) -> None:
    calls: list[InvocationOverrides] = []
    escalated = EscalatedError("child", InvocationError("deep failure"))

    def attempt(overrides: InvocationOverrides) -> dict[str, str]:
        calls.append(overrides)
        raise escalated

    outcome = policy_engine.invoke(
        "parent",
        FallbackPolicy(max_retries=3, strategies=[RETRY, FallbackStrategy.SKIP_WITH_DEFAULT]),
        attempt,
        ledger=make_ledger("parent"),
    )

    assert outcome.error is escalated
    assert len(calls) == 1
    assert not outcome.degraded


def test_timeouts_are_ordinary_failures(policy_engine, make_ledger) -> None:
    attempts: list[int] = []

    def attempt(_: InvocationOverrides) -> dict[str, str]:
        attempts.append(1)
        if len(attempts) == 1:
            raise TimeoutError("caller deadline")
        return {"result": "late but fine"}

    outcome = policy_engine.invoke("n", FallbackPolicy(), attempt, ledger=make_ledger("n"))

    assert outcome.succeeded
    assert len(attempts) == 2
