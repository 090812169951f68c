"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

from agent_hierarchy.definitions.models import WorkflowDefinition
from agent_hierarchy.storage.base import apply_run_outcome
from agent_hierarchy.storage.models import ExecutionRecord


class PostgresExecutionStorage:
    """Persist workflow definitions and execution records in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_HIERARCHY_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    definition_json JSONB NOT NULL,
                    execution_count INTEGER NOT NULL DEFAULT 0,
                    success_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
                    avg_duration_seconds DOUBLE PRECISION NOT NULL DEFAULT 0,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS executions (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    record_json JSONB NOT NULL,
                    started_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_workflow_id
                ON executions(workflow_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executions_started_at
                ON executions(started_at DESC)
                """)
            conn.commit()

    def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO workflows (
                    workflow_id,
                    name,
                    definition_json,
                    execution_count,
                    success_rate,
                    avg_duration_seconds,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (workflow_id) DO UPDATE
                SET name = EXCLUDED.name,
                    definition_json = EXCLUDED.definition_json,
                    execution_count = EXCLUDED.execution_count,
                    success_rate = EXCLUDED.success_rate,
                    avg_duration_seconds = EXCLUDED.avg_duration_seconds,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    definition.id,
                    definition.name,
                    self._json_wrapper(definition.model_dump(mode="json")),
                    definition.execution_count,
                    definition.success_rate,
                    definition.avg_duration_seconds,
                    now,
                    now,
                ),
            )
            conn.commit()
        return definition

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE workflow_id = %s",
                (workflow_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_workflow(row)

    def record_run_outcome(
        self,
        workflow_id: str,
        *,
        succeeded: bool,
        duration_seconds: float,
    ) -> WorkflowDefinition | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflows WHERE workflow_id = %s FOR UPDATE",
                (workflow_id,),
            ).fetchone()
            if row is None:
                return None
            updated = apply_run_outcome(
                self._row_to_workflow(row),
                succeeded=succeeded,
                duration_seconds=duration_seconds,
            )
            conn.execute(
                """
                UPDATE workflows
                SET execution_count = %s,
                    success_rate = %s,
                    avg_duration_seconds = %s,
                    updated_at = %s
                WHERE workflow_id = %s
                """,
                (
                    updated.execution_count,
                    updated.success_rate,
                    updated.avg_duration_seconds,
                    datetime.now(tz=UTC),
                    workflow_id,
                ),
            )
            conn.commit()
        return updated

    def save_execution(self, record: ExecutionRecord) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executions (
                    run_id,
                    workflow_id,
                    status,
                    record_json,
                    started_at,
                    completed_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (run_id) DO UPDATE
                SET status = EXCLUDED.status,
                    record_json = EXCLUDED.record_json,
                    completed_at = EXCLUDED.completed_at,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    record.id,
                    record.workflow_id,
                    record.status,
                    self._json_wrapper(record.model_dump(mode="json")),
                    record.started_at,
                    record.completed_at,
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def get_execution(self, run_id: str) -> ExecutionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT record_json FROM executions WHERE run_id = %s",
                (run_id,),
            ).fetchone()
        if row is None:
            return None
        payload = self._parse_json(row["record_json"])
        return ExecutionRecord.model_validate(payload)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json(raw: Any) -> dict[str, Any]:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, dict):
            raise TypeError(f"Unsupported JSON column value: {type(parsed)!r}")
        return parsed

    @classmethod
    def _row_to_workflow(cls, row: Any) -> WorkflowDefinition:
        payload = cls._parse_json(row["definition_json"])
        payload.update(
            execution_count=int(row["execution_count"]),
            success_rate=float(row["success_rate"]),
            avg_duration_seconds=float(row["avg_duration_seconds"]),
        )
        return WorkflowDefinition.model_validate(payload)
