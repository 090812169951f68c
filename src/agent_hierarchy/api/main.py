"""FastAPI app entrypoint for agent-hierarchy."""

from __future__ import annotations

import json
from collections.abc import Mapping
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from agent_hierarchy.config.settings import Settings, get_settings
from agent_hierarchy.definitions.models import (
    FallbackPolicy,
    SamplingParameters,
    WorkflowDefinition,
)
from agent_hierarchy.definitions.tree import NodeTree
from agent_hierarchy.engine.errors import DefinitionError
from agent_hierarchy.engine.fanout import ModuleResult, ModuleTask
from agent_hierarchy.engine.policy import InvocationOverrides
from agent_hierarchy.engine.service import OrchestrationEngine
from agent_hierarchy.gateway.base import InferenceGateway, InferenceRequest
from agent_hierarchy.storage.base import ExecutionStorage
from agent_hierarchy.storage.models import ExecutionRecord, LogEntry, NodeState
from agent_hierarchy.storage.postgres import PostgresExecutionStorage


class StartRunRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)


class ModuleTaskRequest(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    prompt: str = Field(min_length=1)
    sampling: SamplingParameters = Field(default_factory=SamplingParameters)
    fallback: FallbackPolicy = Field(default_factory=FallbackPolicy)
    default_score: float = 0.0


class ModuleBatchRequest(BaseModel):
    name: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    tasks: list[ModuleTaskRequest] = Field(min_length=1)
    synthesis: ModuleTaskRequest | None = None


class ModuleResultPayload(BaseModel):
    task_id: str
    status: str
    output: dict[str, Any] | None = None
    score: float | None = None
    error: str | None = None
    degraded: bool = False
    duration_ms: float = 0.0


class ModuleBatchResponse(BaseModel):
    run_id: str
    quality_score: float
    results: list[ModuleResultPayload]
    synthesis: ModuleResultPayload | None = None
    record: ExecutionRecord


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: ExecutionStorage | None,
    gateway_override: InferenceGateway | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set AGENT_HIERARCHY_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresExecutionStorage(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "engine"):
        app.state.engine = OrchestrationEngine.from_settings(
            settings,
            storage=app.state.storage,
            gateway=gateway_override,
        )


def create_app(
    *,
    storage: ExecutionStorage | None = None,
    settings_override: Settings | None = None,
    gateway: InferenceGateway | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            gateway_override=gateway,
        )
        yield
        app.state.engine.shutdown()

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            gateway_override=gateway,
        )

    def _get_engine(request: Request) -> OrchestrationEngine:
        if not hasattr(request.app.state, "engine"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                gateway_override=gateway,
            )
        return request.app.state.engine

    def _get_storage(request: Request) -> ExecutionStorage:
        return _get_engine(request).storage

    def _get_run(run_id: str, request: Request) -> ExecutionRecord:
        record = _get_storage(request).get_execution(run_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return record

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/workflows", response_model=WorkflowDefinition)
    def create_workflow(payload: WorkflowDefinition, request: Request) -> WorkflowDefinition:
        try:
            NodeTree.from_definition(payload, max_depth=settings.max_tree_depth)
        except DefinitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return _get_storage(request).save_workflow(payload)

    @app.get("/workflows/{workflow_id}", response_model=WorkflowDefinition)
    def get_workflow(workflow_id: str, request: Request) -> WorkflowDefinition:
        definition = _get_storage(request).get_workflow(workflow_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return definition

    @app.post("/workflows/{workflow_id}/runs", response_model=ExecutionRecord)
    def start_run(
        workflow_id: str,
        payload: StartRunRequest,
        request: Request,
    ) -> ExecutionRecord:
        engine = _get_engine(request)
        definition = engine.storage.get_workflow(workflow_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        try:
            return engine.submit_run(definition, payload.input)
        except DefinitionError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/runs/{run_id}", response_model=ExecutionRecord)
    def get_run(run_id: str, request: Request) -> ExecutionRecord:
        return _get_run(run_id, request)

    @app.get("/runs/{run_id}/nodes", response_model=dict[str, NodeState])
    def get_run_nodes(run_id: str, request: Request) -> dict[str, NodeState]:
        return _get_run(run_id, request).node_states

    @app.get("/runs/{run_id}/logs", response_model=list[LogEntry])
    def get_run_logs(run_id: str, request: Request) -> list[LogEntry]:
        return _get_run(run_id, request).logs

    @app.post("/module-batches", response_model=ModuleBatchResponse)
    def run_module_batch(payload: ModuleBatchRequest, request: Request) -> ModuleBatchResponse:
        engine = _get_engine(request)
        task_ids = [task.id for task in payload.tasks]
        if len(set(task_ids)) != len(task_ids):
            raise HTTPException(status_code=422, detail="Module task ids must be unique")

        tasks = [_gateway_task(item, engine.gateway) for item in payload.tasks]
        synthesis = (
            _gateway_task(payload.synthesis, engine.gateway) if payload.synthesis else None
        )
        result = engine.submit_module_batch(
            tasks,
            synthesis,
            context=payload.context,
            batch_id="module-batch",
            batch_name=payload.name,
        )
        return ModuleBatchResponse(
            run_id=result.record.id,
            quality_score=result.quality_score,
            results=[_result_payload(item) for item in result.results],
            synthesis=_result_payload(result.synthesis) if result.synthesis else None,
            record=result.record,
        )

    return app


app = create_app()


def _gateway_task(item: ModuleTaskRequest, gateway: InferenceGateway) -> ModuleTask:
    def _run(payload: Mapping[str, Any], overrides: InvocationOverrides) -> dict[str, Any]:
        prompt = f"{item.prompt}\n\nInput: {json.dumps(payload, default=str)}"
        inference = gateway.invoke(
            InferenceRequest(
                node_id=item.id,
                prompt=prompt + overrides.prompt_suffix,
                sampling=overrides.apply(item.sampling),
                inputs=payload,
                model=overrides.model,
            )
        )
        output = inference.output
        result = dict(output) if isinstance(output, Mapping) else {"result": output}
        if inference.confidence is not None:
            result.setdefault("confidence", inference.confidence)
        return result

    return ModuleTask(
        id=item.id,
        run=_run,
        policy=item.fallback,
        title=item.title,
        default_score=item.default_score,
    )


def _result_payload(result: ModuleResult) -> ModuleResultPayload:
    return ModuleResultPayload(
        task_id=result.task_id,
        status=result.status,
        output=result.output,
        score=result.score,
        error=result.error,
        degraded=result.degraded,
        duration_ms=result.duration_ms,
    )
