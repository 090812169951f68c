from __future__ import annotations

import logging

import pytest

from agent_hierarchy.config.settings import Settings
from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.engine.fanout import ModuleTask
from agent_hierarchy.engine.service import OrchestrationEngine
from agent_hierarchy.gateway.deterministic import DeterministicGateway
from agent_hierarchy.storage.memory import InMemoryExecutionStorage


class _BrokenStorage(InMemoryExecutionStorage):
    def save_execution(self, record) -> None:  # noqa: ANN001
        raise ConnectionError("database unavailable")


def _definition() -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {"id": "wf", "agents": [{"id": "root", "role": "root", "sub_agents": [{"id": "a"}]}]}
    )


def _settings(**overrides) -> Settings:  # noqa: ANN003
    return Settings(_env_file=None, retry_base_delay_s=0.0, **overrides)


def test_from_settings_resolves_deterministic_gateway() -> None:
    engine = OrchestrationEngine.from_settings(_settings(gateway_mode="deterministic"))

    assert isinstance(engine.gateway, DeterministicGateway)
    assert engine.resolution is not None
    assert engine.resolution.effective_mode == "deterministic"
    engine.shutdown()


def test_from_settings_llm_mode_without_key_falls_back(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    engine = OrchestrationEngine.from_settings(_settings(gateway_mode="llm", openai_api_key=""))

    assert isinstance(engine.gateway, DeterministicGateway)
    assert engine.resolution.fallback_reason is not None
    engine.shutdown()


def test_submit_run_persists_record_and_statistics() -> None:
    storage = InMemoryExecutionStorage()
    definition = storage.save_workflow(_definition())
    engine = OrchestrationEngine.from_settings(_settings(), storage=storage)

    record = engine.submit_run(definition, {"topic": "growth"})

    assert record.status == "completed"
    assert engine.get_execution(record.id) == record
    stored = storage.get_workflow("wf")
    assert stored.execution_count == 1
    assert stored.success_rate == 100.0
    engine.shutdown()


def test_submit_run_async_returns_future() -> None:
    engine = OrchestrationEngine.from_settings(_settings())

    future = engine.submit_run_async(_definition(), {"topic": "growth"})

    record = future.result(timeout=10)
    assert record.status == "completed"
    assert set(record.node_states) == {"root", "a"}
    engine.shutdown()


def test_persistence_failures_never_fail_the_run(caplog: pytest.LogCaptureFixture) -> None:
    storage = _BrokenStorage()
    storage.save_workflow(_definition())
    engine = OrchestrationEngine.from_settings(_settings(), storage=storage)

    with caplog.at_level(logging.ERROR, logger="agent_hierarchy.engine.service"):
        record = engine.submit_run(_definition())

    assert record.status == "completed"
    assert "failed to persist execution data" in caplog.text
    assert storage.get_workflow("wf").execution_count == 1
    engine.shutdown()


def test_submit_module_batch_persists_batch_record() -> None:
    storage = InMemoryExecutionStorage()
    engine = OrchestrationEngine.from_settings(_settings(), storage=storage)
    tasks = [
        ModuleTask(id="m1", run=lambda context, _: {"score": 0.9, "echo": dict(context)})
    ]

    result = engine.submit_module_batch(tasks, context={"q": 1}, batch_name="Quarterly review")

    assert result.quality_score == pytest.approx(0.9)
    assert result.record.workflow_name == "Quarterly review"
    assert storage.get_execution(result.record.id) is not None
    engine.shutdown()
