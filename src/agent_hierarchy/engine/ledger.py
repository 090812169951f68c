"""Execution ledger: the run record shared by the tree executor and the fan-out scheduler.

Ownership rules:
- Each node or module task owns its own ``NodeState`` entry; only the worker
  running that node writes to it, so per-node updates need no lock.
- The lock guards the shared containers (the ``node_states`` map, the log and
  the communication log) and the message counters.
- Aggregate fields (status, outputs, error, timestamps) are written once, by
  the coordinating thread, through ``finish``.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from agent_hierarchy.definitions.models import MessageType
from agent_hierarchy.engine.errors import LedgerClosedError
from agent_hierarchy.storage.models import (
    BROADCAST,
    AgentMessage,
    ExecutionRecord,
    LogEntry,
    LogLevel,
    NodeState,
    RunStatus,
)

logger = logging.getLogger(__name__)

_LOG_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ExecutionLedger:
    def __init__(self, record: ExecutionRecord) -> None:
        self._record = record
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls,
        *,
        workflow_id: str,
        workflow_name: str = "",
        inputs: Mapping[str, Any] | None = None,
        node_ids: Iterable[str] = (),
        run_id: str | None = None,
    ) -> ExecutionLedger:
        record = ExecutionRecord(
            id=run_id or str(uuid4()),
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            status="running",
            inputs=copy.deepcopy(dict(inputs or {})),
            started_at=datetime.now(UTC),
        )
        ledger = cls(record)
        ledger.seed(node_ids)
        return ledger

    @property
    def record(self) -> ExecutionRecord:
        return self._record

    @property
    def run_id(self) -> str:
        return self._record.id

    @property
    def is_closed(self) -> bool:
        return self._record.is_terminal

    def snapshot(self) -> ExecutionRecord:
        with self._lock:
            return self._record.model_copy(deep=True)

    def seed(self, node_ids: Iterable[str]) -> None:
        """Register nodes as pending so never-dispatched nodes stay visible."""
        with self._lock:
            self._ensure_open()
            for node_id in node_ids:
                self._record.node_states.setdefault(node_id, NodeState())

    def node_state(self, node_id: str) -> NodeState:
        with self._lock:
            state = self._record.node_states.get(node_id)
            if state is None:
                self._ensure_open()
                state = NodeState()
                self._record.node_states[node_id] = state
            return state

    def log(self, level: LogLevel, message: str, *, node_id: str | None = None) -> None:
        entry = LogEntry(
            timestamp=datetime.now(UTC),
            level=level,
            message=message,
            node_id=node_id,
        )
        with self._lock:
            self._ensure_open()
            self._record.logs.append(entry)
        logger.log(_LOG_LEVELS[level], "run=%s %s", self._record.id, message)

    def begin_attempt(
        self,
        node_id: str,
        inputs: Mapping[str, Any],
        *,
        sampling: Mapping[str, Any] | None = None,
    ) -> int:
        state = self.node_state(node_id)
        self._ensure_open()
        state.status = "running"
        state.invocation_count += 1
        state.inputs = _snapshot(inputs)
        state.error = None
        if sampling is not None:
            state.sampling = dict(sampling)
        return state.invocation_count

    def complete_node(
        self,
        node_id: str,
        outputs: Mapping[str, Any],
        *,
        duration_ms: float | None = None,
        degraded: bool = False,
    ) -> None:
        state = self.node_state(node_id)
        self._ensure_open()
        state.status = "completed"
        state.outputs = _snapshot(outputs)
        state.error = None
        state.degraded = degraded
        state.state_size_kb = _size_kb(state.outputs)
        if duration_ms is not None:
            state.duration_ms = duration_ms

    def fail_node(
        self,
        node_id: str,
        error: BaseException | str,
        *,
        duration_ms: float | None = None,
    ) -> None:
        state = self.node_state(node_id)
        self._ensure_open()
        state.status = "failed"
        state.error = str(error)
        if duration_ms is not None:
            state.duration_ms = duration_ms

    def note_strategy(self, node_id: str, strategy: str) -> None:
        state = self.node_state(node_id)
        self._ensure_open()
        state.strategies_tried.append(strategy)

    def send_message(
        self,
        sender: str,
        message_type: MessageType,
        payload: Mapping[str, Any] | None = None,
        *,
        recipient: str = BROADCAST,
    ) -> str:
        message = AgentMessage(
            id=f"msg_{uuid4().hex}",
            sender=sender,
            recipient=recipient,
            type=message_type.value,
            payload=_snapshot(payload or {}),
            timestamp=datetime.now(UTC),
        )
        with self._lock:
            self._ensure_open()
            self._record.communication_log.append(message)
            self._record.node_states.setdefault(sender, NodeState()).messages_sent += 1
        return message.id

    def pending_messages(
        self, node_id: str, message_type: MessageType | None = None
    ) -> list[AgentMessage]:
        """Unprocessed messages sent to ``node_id`` directly or broadcast by another node."""
        with self._lock:
            return [
                message.model_copy(deep=True)
                for message in self._record.communication_log
                if message.status == "pending"
                and _addressed_to(message, node_id)
                and (message_type is None or message.type == message_type.value)
            ]

    def mark_processed(self, message_id: str, node_id: str) -> bool:
        """Claim a message for ``node_id``. False if another node got there first."""
        with self._lock:
            self._ensure_open()
            for message in self._record.communication_log:
                if message.id != message_id:
                    continue
                if message.status == "processed":
                    return False
                message.status = "processed"
                message.processed_by = node_id
                self._record.node_states.setdefault(node_id, NodeState()).messages_received += 1
                return True
        return False

    def completed_node_ids(self) -> list[str]:
        with self._lock:
            return [
                node_id
                for node_id, state in self._record.node_states.items()
                if state.status == "completed"
            ]

    def peer_statuses(self, node_id: str) -> dict[str, dict[str, Any]]:
        """Latest broadcast status payload of every other node, keyed by sender."""
        latest: dict[str, dict[str, Any]] = {}
        with self._lock:
            for message in self._record.communication_log:
                if (
                    message.type == MessageType.STATUS_UPDATE.value
                    and message.recipient == BROADCAST
                    and message.sender != node_id
                ):
                    latest[message.sender] = copy.deepcopy(message.payload)
        return latest

    def finish(
        self,
        status: RunStatus,
        *,
        outputs: Mapping[str, Any] | None = None,
        error: BaseException | str | None = None,
    ) -> ExecutionRecord:
        if status == "running":
            raise ValueError("finish() requires a terminal status")
        with self._lock:
            self._ensure_open()
            finished_at = datetime.now(UTC)
            record = self._record
            record.completed_at = finished_at
            record.duration_seconds = round(
                (finished_at - record.started_at).total_seconds(), 3
            )
            if status == "completed":
                record.outputs = _snapshot(outputs or {})
                record.error = None
            else:
                record.outputs = None
                record.error = str(error) if error is not None else "run failed"
            record.status = status
        logger.info(
            "run=%s workflow=%s finished status=%s duration_s=%.3f",
            record.id,
            record.workflow_id,
            status,
            record.duration_seconds or 0.0,
        )
        return record

    def _ensure_open(self) -> None:
        if self._record.is_terminal:
            raise LedgerClosedError(
                f"Execution {self._record.id} is {self._record.status}; no further updates allowed"
            )


def _addressed_to(message: AgentMessage, node_id: str) -> bool:
    if message.recipient == BROADCAST:
        return message.sender != node_id
    return message.recipient == node_id


def _snapshot(value: Mapping[str, Any]) -> dict[str, Any]:
    return copy.deepcopy(dict(value))


def _size_kb(value: Any) -> float:
    return round(len(json.dumps(value, default=str)) / 1024, 3)
