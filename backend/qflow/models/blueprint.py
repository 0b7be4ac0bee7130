"""
Workflow graph models.

NodeDefinition / WorkflowGraph are what collaborators hand us (editor and
storage layers). A Blueprint is the compiled, execution-ready form: it is
produced on demand by the compiler, holds the toposorted execution order and
an index-based adjacency structure, and is NOT persisted.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from qflow.errors import ValidationIssue


_PACKAGE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*(\[[A-Za-z0-9,._-]+\])?$")
_CONSTRAINT = re.compile(r"^(===|==|!=|~=|>=|<=|>|<)\s*[A-Za-z0-9.*+!-]+(\s*,\s*(===|==|!=|~=|>=|<=|>|<)\s*[A-Za-z0-9.*+!-]+)*$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PortSchema(BaseModel):
    key: str = Field(..., min_length=1)
    type_id: str = "any"
    required: bool = True
    default: Any = None


class Dependency(BaseModel):
    name: str
    constraint: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _PACKAGE_NAME.match(v):
            raise ValueError(f"Invalid package name '{v}'")
        return v

    @field_validator("constraint")
    @classmethod
    def validate_constraint(cls, v: str | None) -> str | None:
        if v is None or v == "":
            return None
        v = v.strip()
        if not _CONSTRAINT.match(v):
            raise ValueError(f"Invalid version constraint '{v}'")
        return v

    @property
    def requirement(self) -> str:
        return f"{self.name}{self.constraint or ''}"


class NodeDefinition(BaseModel):
    """One immutable version of a user-authored script node."""

    id: str = Field(..., min_length=1)
    version: int = 1
    previous_version: int | None = None
    name: str | None = None
    inputs: list[PortSchema] = Field(default_factory=list)
    outputs: list[PortSchema] = Field(default_factory=list)
    code: str
    entry_function: str = "main"
    runtime: str = "python"
    runtime_version: str | None = None
    dependencies: list[Dependency] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)

    def input_port(self, key: str) -> PortSchema | None:
        return next((p for p in self.inputs if p.key == key), None)

    def output_port(self, key: str) -> PortSchema | None:
        return next((p for p in self.outputs if p.key == key), None)


class NodeInstance(BaseModel):
    instance_id: str = Field(..., min_length=1)
    definition_id: str
    definition_version: int | None = None  # None = latest
    params: dict[str, Any] = Field(default_factory=dict)


class Connection(BaseModel):
    source: str
    source_port: str
    target: str
    target_port: str
    conversion: str | None = None

    def label(self) -> str:
        return f"{self.source}.{self.source_port} -> {self.target}.{self.target_port}"


class WorkflowSettings(BaseModel):
    max_concurrency: int | None = Field(None, ge=1)
    max_retries: int | None = Field(None, ge=0)
    limits: dict[str, Any] = Field(default_factory=dict)


class WorkflowGraph(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled"
    instances: list[NodeInstance] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)


# ---------------------------------------------------------------------------
# Compiled form
# ---------------------------------------------------------------------------


class BlueprintNode(BaseModel):
    index: int
    instance_id: str
    definition: NodeDefinition
    params: dict[str, Any] = Field(default_factory=dict)


class BlueprintConnection(BaseModel):
    source_index: int
    source_port: str
    source_type: str
    target_index: int
    target_port: str
    target_type: str
    conversion: str | None = None


class Blueprint(BaseModel):
    workflow_id: str
    name: str
    created_at: datetime = Field(default_factory=_now)
    nodes: list[BlueprintNode]
    connections: list[BlueprintConnection]
    # adjacency[i] = indices of nodes fed by node i (deduplicated)
    adjacency: list[list[int]]
    # incoming[i] = indices of connections feeding node i
    incoming: list[list[int]]
    execution_order: list[int]
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)

    def node(self, instance_id: str) -> BlueprintNode:
        return next(n for n in self.nodes if n.instance_id == instance_id)

    def descendants(self, index: int) -> list[int]:
        seen: set[int] = set()
        stack = list(self.adjacency[index])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.adjacency[current])
        return sorted(seen)


class CompilationResult(BaseModel):
    success: bool
    blueprint: Blueprint | None = None
    issues: list[ValidationIssue] = Field(default_factory=list)
