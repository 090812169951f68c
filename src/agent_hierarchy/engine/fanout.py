"""Fan-out/fan-in scheduler for independent top-level module tasks.

Tasks run concurrently, each under its own fallback policy, and the batch
waits for all of them to settle. One task failing never cancels another.
An optional synthesis task then sees the outputs of the tasks that genuinely
succeeded (degraded results are left out).
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Literal

from agent_hierarchy.definitions.models import FallbackPolicy
from agent_hierarchy.engine.ledger import ExecutionLedger
from agent_hierarchy.engine.policy import FallbackPolicyEngine, InvocationOverrides
from agent_hierarchy.storage.models import ExecutionRecord

logger = logging.getLogger(__name__)

SCORE_KEYS = ("confidence_score", "confidence", "score")

ModuleStatus = Literal["succeeded", "failed"]
ModuleRun = Callable[[Mapping[str, Any], InvocationOverrides], Mapping[str, Any]]


@dataclass(frozen=True)
class ModuleTask:
    """An independent unit of a module batch.

    ``run`` receives its own copy of the batch context (or, for a synthesis
    task, of the ``{task_id: output}`` map of succeeded tasks) together with
    the overrides of the current fallback attempt, and returns a mapping.
    """

    id: str
    run: ModuleRun
    policy: FallbackPolicy = field(default_factory=FallbackPolicy)
    title: str = ""
    default_score: float = 0.0

    @property
    def label(self) -> str:
        return self.title or self.id


@dataclass
class ModuleResult:
    task_id: str
    status: ModuleStatus
    output: dict[str, Any] | None = None
    score: float | None = None
    error: str | None = None
    degraded: bool = False
    duration_ms: float = 0.0

    @property
    def counts_toward_quality(self) -> bool:
        return self.status == "succeeded" and not self.degraded


@dataclass
class ModuleBatchResult:
    results: list[ModuleResult]
    synthesis: ModuleResult | None
    quality_score: float
    record: ExecutionRecord

    def result_for(self, task_id: str) -> ModuleResult | None:
        for result in self.results:
            if result.task_id == task_id:
                return result
        return None


class ModuleScheduler:
    def __init__(
        self,
        *,
        max_concurrency: int = 4,
        policy_engine: FallbackPolicyEngine | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.policy_engine = policy_engine or FallbackPolicyEngine()

    def run_modules(
        self,
        tasks: Sequence[ModuleTask],
        synthesis: ModuleTask | None = None,
        context: Mapping[str, Any] | None = None,
        *,
        batch_id: str = "module-batch",
        batch_name: str = "",
        run_id: str | None = None,
    ) -> ModuleBatchResult:
        task_ids = [task.id for task in tasks]
        if len(set(task_ids)) != len(task_ids):
            raise ValueError("module task ids must be unique within a batch")

        shared_context = dict(context or {})
        run_synthesis = synthesis is not None and synthesis.id not in task_ids
        ledger = ExecutionLedger.open(
            workflow_id=batch_id,
            workflow_name=batch_name or batch_id,
            inputs=shared_context,
            node_ids=task_ids + ([synthesis.id] if run_synthesis and synthesis else []),
            run_id=run_id,
        )
        ledger.log("info", f"Dispatching {len(tasks)} module task(s)")
        if synthesis is not None and not run_synthesis:
            ledger.log(
                "warning",
                f"Synthesis task {synthesis.id} is also a module task; skipping synthesis",
            )

        results: list[ModuleResult] = []
        if tasks:
            workers = min(self.max_concurrency, len(tasks))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="module") as pool:
                futures = [
                    pool.submit(self._run_task, task, shared_context, ledger) for task in tasks
                ]
                # Settle-all: every future is awaited; none is cancelled.
                results = [future.result() for future in futures]

        synthesis_result: ModuleResult | None = None
        if run_synthesis and synthesis is not None:
            succeeded_outputs = {
                result.task_id: result.output or {}
                for result in results
                if result.counts_toward_quality
            }
            ledger.log(
                "info",
                f"Running synthesis {synthesis.label} over {len(succeeded_outputs)} "
                "successful module(s)",
            )
            synthesis_result = self._run_task(synthesis, succeeded_outputs, ledger)

        quality = quality_score(results, synthesis_result)
        failed = [result.task_id for result in results if result.status == "failed"]
        outputs = {
            "modules": {
                result.task_id: result.output
                for result in results
                if result.status == "succeeded"
            },
            "failed_modules": failed,
            "synthesis": synthesis_result.output if synthesis_result else None,
            "quality_score": quality,
        }
        ledger.log(
            "info",
            f"Module batch settled: {len(results) - len(failed)} succeeded, "
            f"{len(failed)} failed, quality={quality:.2f}",
        )
        record = ledger.finish("completed", outputs=outputs)
        return ModuleBatchResult(
            results=results,
            synthesis=synthesis_result,
            quality_score=quality,
            record=record,
        )

    def _run_task(
        self,
        task: ModuleTask,
        payload: Mapping[str, Any],
        ledger: ExecutionLedger,
    ) -> ModuleResult:
        started_at = time.perf_counter()

        def _attempt(overrides: InvocationOverrides) -> Mapping[str, Any]:
            task_input = copy.deepcopy(dict(payload))
            ledger.begin_attempt(task.id, task_input)
            try:
                output = task.run(task_input, overrides)
            except Exception as exc:
                ledger.fail_node(task.id, exc, duration_ms=_elapsed_ms(started_at))
                raise
            if not isinstance(output, Mapping):
                output = {"result": output}
            return output

        outcome = self.policy_engine.invoke(
            task.id, task.policy, _attempt, ledger=ledger, label=task.label
        )
        duration = _elapsed_ms(started_at)

        if not outcome.succeeded:
            error = outcome.error
            ledger.fail_node(task.id, error or "module failed", duration_ms=duration)
            ledger.log("error", f"Module {task.label} failed: {error}", node_id=task.id)
            return ModuleResult(
                task_id=task.id,
                status="failed",
                error=str(error),
                duration_ms=duration,
            )

        output = outcome.output or {}
        ledger.complete_node(task.id, output, duration_ms=duration, degraded=outcome.degraded)
        ledger.log(
            "info", f"Module {task.label} completed in {duration:.0f}ms", node_id=task.id
        )
        return ModuleResult(
            task_id=task.id,
            status="succeeded",
            output=output,
            score=None if outcome.degraded else score_of(output, task.default_score),
            degraded=outcome.degraded,
            duration_ms=duration,
        )


def score_of(output: Mapping[str, Any], default: float) -> float:
    for key in SCORE_KEYS:
        value = output.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return float(value)
    return default


def quality_score(
    results: Sequence[ModuleResult], synthesis: ModuleResult | None = None
) -> float:
    """Mean score of the results that succeeded without degradation, else 0."""
    scored = [result for result in results if result.counts_toward_quality]
    if synthesis is not None and synthesis.counts_toward_quality:
        scored.append(synthesis)
    scores = [result.score for result in scored if result.score is not None]
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 4)


def _elapsed_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
