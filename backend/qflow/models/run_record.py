"""
Execution run records.

A RunRecord is created when a run is submitted and mutated only by the
scheduler task that owns it. Readers always get deep copies.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from qflow.errors import ErrorKind, ValidationIssue
from qflow.services.codec import WireValue
from qflow.services.sandbox_manager import SandboxUsage


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class RunPhase(str, Enum):
    VALIDATING = "validating"
    SCHEDULING = "scheduling"
    EXECUTING = "executing"
    FINISHED = "finished"


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (
            NodeStatus.SUCCEEDED,
            NodeStatus.FAILED,
            NodeStatus.SKIPPED,
            NodeStatus.CANCELLED,
        )


class ErrorDetail(BaseModel):
    kind: ErrorKind | Literal["ValidationError"]
    error_type: str | None = None
    message: str
    stack: str | None = None
    attributed_to: str | None = None
    instance_id: str | None = None


class AttemptRecord(BaseModel):
    attempt: int
    sandbox_id: str | None = None
    outcome: Literal["success", "failure", "timeout"]
    error_kind: ErrorKind | None = None
    message: str | None = None
    resource_usage: SandboxUsage = Field(default_factory=SandboxUsage)
    started_at: datetime
    finished_at: datetime


class NodeExecutionRecord(BaseModel):
    instance_id: str
    definition_id: str
    definition_version: int
    status: NodeStatus = NodeStatus.PENDING
    inputs: dict[str, WireValue] = Field(default_factory=dict)
    outputs: dict[str, WireValue] = Field(default_factory=dict)
    error: ErrorDetail | None = None
    skipped_because: str | None = None
    retry_count: int = 0
    attempts: list[AttemptRecord] = Field(default_factory=list)
    resource_usage: list[SandboxUsage] = Field(default_factory=list)
    stdout: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def execution_time_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class RunRecord(BaseModel):
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    workflow_name: str | None = None
    status: RunStatus = RunStatus.PENDING
    phase: RunPhase = RunPhase.VALIDATING
    submitted_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    root_cause: ErrorDetail | None = None
    validation_errors: list[ValidationIssue] = Field(default_factory=list)
    execution_order: list[str] = Field(default_factory=list)
    nodes: dict[str, NodeExecutionRecord] = Field(default_factory=dict)
    persistence_warning: str | None = None

    @property
    def total_execution_time_ms(self) -> int:
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def summary(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for node in self.nodes.values():
            counts[node.status.value] = counts.get(node.status.value, 0) + 1
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "phase": self.phase.value,
            "node_counts": counts,
            "total_execution_time_ms": self.total_execution_time_ms,
        }


EventType = Literal[
    "run_started",
    "started",
    "retrying",
    "succeeded",
    "failed",
    "skipped",
    "cancelled",
    "run_completed",
]


class RunEvent(BaseModel):
    event: EventType
    run_id: str
    sequence: int
    instance_id: str | None = None
    status: str | None = None
    attempt: int | None = None
    error: ErrorDetail | None = None
    skipped_because: str | None = None
    outputs: dict[str, dict[str, Any]] | None = None
    timestamp: datetime = Field(default_factory=_now)

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"
