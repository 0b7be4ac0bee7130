"""
Node definition registry: source of truth for what each user node accepts and
produces.

Every edit produces a new immutable version that points at the prior one.
Definitions referenced by a registered workflow cannot be deleted.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any, Iterable

from qflow.errors import (
    DuplicateNodeError,
    NodeDefinitionError,
    NodeInUseError,
    UnknownNodeError,
)
from qflow.models.blueprint import NodeDefinition
from qflow.services.code_inspector import inspect_code
from qflow.services.type_registry import TypeRegistry


class NodeRegistry:
    def __init__(
        self,
        type_registry: TypeRegistry,
        blocked_imports: list[str] | None = None,
    ):
        self._type_registry = type_registry
        self._blocked_imports = blocked_imports or []
        self._versions: dict[str, list[NodeDefinition]] = {}
        # definition id -> workflow ids referencing it
        self._references: dict[str, set[str]] = defaultdict(set)
        self._lock = threading.Lock()

    def _check(self, definition: NodeDefinition) -> None:
        problems: list[str] = []

        for port in [*definition.inputs, *definition.outputs]:
            if port.type_id not in self._type_registry:
                problems.append(f"Port '{port.key}' uses unknown type '{port.type_id}'")

        for ports, label in ((definition.inputs, "input"), (definition.outputs, "output")):
            keys = [p.key for p in ports]
            duplicates = sorted({k for k in keys if keys.count(k) > 1})
            if duplicates:
                problems.append(f"Duplicate {label} ports: {', '.join(duplicates)}")

        inspection = inspect_code(
            definition.code,
            definition.entry_function,
            input_ports=[p.key for p in definition.inputs],
            blocked_imports=self._blocked_imports,
            type_registry=self._type_registry,
        )
        problems.extend(inspection.errors)

        if problems:
            raise NodeDefinitionError(
                f"Invalid node definition '{definition.id}': {'; '.join(problems)}",
                errors=problems,
            )

    def register(self, definition: NodeDefinition) -> NodeDefinition:
        self._check(definition)
        stored = definition.model_copy(update={"version": 1, "previous_version": None})
        with self._lock:
            if definition.id in self._versions:
                raise DuplicateNodeError(f"Node definition '{definition.id}' already exists")
            self._versions[definition.id] = [stored]
        return stored

    def edit(self, node_id: str, **changes: Any) -> NodeDefinition:
        changes.pop("id", None)
        changes.pop("version", None)
        changes.pop("previous_version", None)
        changes.pop("created_at", None)

        current = self.get(node_id)
        candidate = NodeDefinition.model_validate(
            {**current.model_dump(exclude={"created_at"}), **changes}
        )
        self._check(candidate)

        with self._lock:
            history = self._versions[node_id]
            latest = history[-1]
            new_version = candidate.model_copy(update={
                "version": latest.version + 1,
                "previous_version": latest.version,
            })
            history.append(new_version)
        return new_version

    def get(self, node_id: str, version: int | None = None) -> NodeDefinition:
        history = self._versions.get(node_id)
        if not history:
            raise UnknownNodeError(f"Unknown node definition '{node_id}'")
        if version is None:
            return history[-1]
        for definition in history:
            if definition.version == version:
                return definition
        raise UnknownNodeError(f"Node definition '{node_id}' has no version {version}")

    def find(self, node_id: str, version: int | None = None) -> NodeDefinition | None:
        try:
            return self.get(node_id, version)
        except UnknownNodeError:
            return None

    def versions(self, node_id: str) -> list[NodeDefinition]:
        self.get(node_id)
        return list(self._versions[node_id])

    def all(self) -> list[NodeDefinition]:
        return [history[-1] for history in self._versions.values()]

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    # An owner is a registered workflow id or an active run id

    def add_references(self, owner_id: str, node_ids: Iterable[str]) -> None:
        with self._lock:
            for node_id in node_ids:
                self._references[node_id].add(owner_id)

    def remove_references(self, owner_id: str) -> None:
        with self._lock:
            for owners in self._references.values():
                owners.discard(owner_id)

    def referenced_by(self, node_id: str) -> list[str]:
        return sorted(self._references.get(node_id, ()))

    def delete(self, node_id: str) -> None:
        self.get(node_id)
        with self._lock:
            owners = sorted(self._references.get(node_id, ()))
            if owners:
                raise NodeInUseError(node_id, owners)
            del self._versions[node_id]
            self._references.pop(node_id, None)
