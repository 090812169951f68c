"""Engine facade used by the HTTP API and the CLI."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from agent_hierarchy.config.settings import Settings, get_settings
from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.engine.executor import TreeExecutor
from agent_hierarchy.engine.fanout import ModuleBatchResult, ModuleScheduler, ModuleTask
from agent_hierarchy.engine.policy import FallbackPolicyEngine
from agent_hierarchy.gateway.base import InferenceGateway
from agent_hierarchy.gateway.resolution import GatewayResolution, resolve_gateway
from agent_hierarchy.storage.base import ExecutionStorage
from agent_hierarchy.storage.models import ExecutionRecord

logger = logging.getLogger(__name__)


class OrchestrationEngine:
    def __init__(
        self,
        *,
        gateway: InferenceGateway,
        policy_engine: FallbackPolicyEngine | None = None,
        storage: ExecutionStorage | None = None,
        validator_temperature: float = 0.1,
        max_tree_depth: int = 64,
        fanout_max_concurrency: int = 4,
        resolution: GatewayResolution | None = None,
    ) -> None:
        self.gateway = gateway
        self.policy_engine = policy_engine or FallbackPolicyEngine()
        self.storage = storage
        self.resolution = resolution
        self.executor = TreeExecutor(
            gateway=gateway,
            policy_engine=self.policy_engine,
            validator_temperature=validator_temperature,
            max_tree_depth=max_tree_depth,
        )
        self.scheduler = ModuleScheduler(
            max_concurrency=fanout_max_concurrency,
            policy_engine=self.policy_engine,
        )
        self._background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="run")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        storage: ExecutionStorage | None = None,
        gateway: InferenceGateway | None = None,
        requested_mode: str | None = None,
    ) -> OrchestrationEngine:
        settings = settings or get_settings()
        resolution: GatewayResolution | None = None
        if gateway is None:
            resolution = resolve_gateway(
                requested_mode=requested_mode or settings.gateway_mode,
                provider=settings.llm_provider,
                api_key=settings.resolved_openai_api_key(),
                model=settings.llm_model,
                base_url=settings.llm_base_url,
                timeout_s=settings.llm_timeout_s,
            )
            if resolution.fallback_reason:
                logger.warning(
                    "Gateway fell back to %s: %s",
                    resolution.effective_mode,
                    resolution.fallback_reason,
                )
            gateway = resolution.gateway

        policy_engine = FallbackPolicyEngine(
            retry_base_delay_s=settings.retry_base_delay_s,
            alternate_temperature=settings.alternate_temperature,
            alternate_model=settings.llm_alternate_model or None,
        )
        return cls(
            gateway=gateway,
            policy_engine=policy_engine,
            storage=storage,
            validator_temperature=settings.validator_temperature,
            max_tree_depth=settings.max_tree_depth,
            fanout_max_concurrency=settings.fanout_max_concurrency,
            resolution=resolution,
        )

    def submit_run(
        self,
        definition: WorkflowDefinition,
        initial_input: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> ExecutionRecord:
        record = self.executor.run(definition, initial_input, run_id=run_id)
        self._persist_run(definition, record)
        return record

    def submit_run_async(
        self,
        definition: WorkflowDefinition,
        initial_input: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> Future[ExecutionRecord]:
        return self._background.submit(
            self.submit_run, definition, initial_input, run_id=run_id
        )

    def submit_module_batch(
        self,
        tasks: Sequence[ModuleTask],
        synthesis: ModuleTask | None = None,
        *,
        context: Mapping[str, Any] | None = None,
        batch_id: str = "module-batch",
        batch_name: str = "",
    ) -> ModuleBatchResult:
        result = self.scheduler.run_modules(
            tasks,
            synthesis,
            context,
            batch_id=batch_id,
            batch_name=batch_name,
        )
        self._persist(lambda storage: storage.save_execution(result.record), result.record.id)
        return result

    def get_execution(self, run_id: str) -> ExecutionRecord | None:
        if self.storage is None:
            return None
        return self.storage.get_execution(run_id)

    def shutdown(self) -> None:
        self._background.shutdown(wait=True)

    def _persist_run(self, definition: WorkflowDefinition, record: ExecutionRecord) -> None:
        self._persist(lambda storage: storage.save_execution(record), record.id)
        self._persist(
            lambda storage: storage.record_run_outcome(
                definition.id,
                succeeded=record.status == "completed",
                duration_seconds=record.duration_seconds or 0.0,
            ),
            record.id,
        )

    def _persist(self, write, run_id: str) -> None:
        if self.storage is None:
            return
        try:
            write(self.storage)
        except Exception:  # noqa: BLE001
            logger.exception("run=%s failed to persist execution data", run_id)
