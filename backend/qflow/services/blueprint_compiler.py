"""
Blueprint compiler: turns a WorkflowGraph into a validated, toposorted Blueprint.

Pipeline: Resolve definitions -> Validate connections -> Toposort -> Build Blueprint

Validation is batch: every problem found is reported, nothing stops at the
first error. A workflow with any issue never produces a Blueprint.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Any

import pydantic

from qflow.config import ResourceLimits
from qflow.errors import UnknownNodeError, ValidationIssue, WorkflowValidationError
from qflow.models.blueprint import (
    Blueprint,
    BlueprintConnection,
    BlueprintNode,
    CompilationResult,
    NodeDefinition,
    WorkflowGraph,
)
from qflow.models.node_registry import NodeRegistry
from qflow.services.type_registry import TypeRegistry

logger = logging.getLogger(__name__)


class CompilationError(WorkflowValidationError):
    """Raised by compile_or_raise with the full issue list."""


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def compile_workflow(
    graph: WorkflowGraph,
    node_registry: NodeRegistry,
    type_registry: TypeRegistry,
    initial_inputs: dict[str, dict[str, Any]] | None = None,
) -> CompilationResult:
    """
    Compile a workflow graph into a Blueprint.

    `initial_inputs` maps instance id -> {input port: value}; ports supplied
    there count as satisfied when checking required inputs.
    """
    initial_inputs = initial_inputs or {}
    issues: list[ValidationIssue] = []

    if not graph.instances:
        issues.append(ValidationIssue(
            code="empty_workflow",
            message="Workflow must contain at least one node",
        ))
        return CompilationResult(success=False, issues=issues)

    # 1. Resolve node definitions
    index_of: dict[str, int] = {}
    definitions: dict[str, NodeDefinition] = {}
    for instance in graph.instances:
        iid = instance.instance_id
        if iid in index_of:
            issues.append(ValidationIssue(
                code="duplicate_instance",
                message=f"Duplicate node instance id '{iid}'",
                instance_id=iid,
            ))
            continue
        index_of[iid] = len(index_of)
        try:
            definitions[iid] = node_registry.get(instance.definition_id, instance.definition_version)
        except UnknownNodeError as e:
            issues.append(ValidationIssue(
                code="unknown_node",
                message=f"Instance '{iid}': {e}",
                instance_id=iid,
            ))

    for definition in definitions.values():
        for port in [*definition.inputs, *definition.outputs]:
            if port.type_id not in type_registry:
                issues.append(ValidationIssue(
                    code="unknown_type",
                    message=f"Node '{definition.id}' port '{port.key}' uses unknown type '{port.type_id}'",
                    port=port.key,
                ))

    # 2. Validate connections
    issues.extend(_validate_connections(graph, index_of, definitions, type_registry))
    issues.extend(_validate_required_inputs(graph, definitions, initial_inputs))
    issues.extend(_validate_limits(graph))

    # 3. Toposort over every connection between known instances
    edges = [
        (index_of[c.source], index_of[c.target])
        for c in graph.connections
        if c.source in index_of and c.target in index_of
    ]
    order, cyclic = _toposort(len(index_of), edges)
    if cyclic:
        names = [iid for iid, idx in index_of.items() if idx in cyclic]
        issues.append(ValidationIssue(
            code="cycle",
            message=f"Cycle detected involving nodes: {', '.join(names)}",
        ))

    if issues:
        logger.debug("Workflow %s rejected with %d issues", graph.id, len(issues))
        return CompilationResult(success=False, issues=issues)

    # 4. Build the Blueprint
    instances = {i.instance_id: i for i in graph.instances}
    nodes = [
        BlueprintNode(
            index=idx,
            instance_id=iid,
            definition=definitions[iid],
            params=dict(instances[iid].params),
        )
        for iid, idx in index_of.items()
    ]

    connections: list[BlueprintConnection] = []
    adjacency: list[list[int]] = [[] for _ in nodes]
    incoming: list[list[int]] = [[] for _ in nodes]
    for conn in graph.connections:
        src_idx, tgt_idx = index_of[conn.source], index_of[conn.target]
        incoming[tgt_idx].append(len(connections))
        if tgt_idx not in adjacency[src_idx]:
            adjacency[src_idx].append(tgt_idx)
        connections.append(BlueprintConnection(
            source_index=src_idx,
            source_port=conn.source_port,
            source_type=definitions[conn.source].output_port(conn.source_port).type_id,
            target_index=tgt_idx,
            target_port=conn.target_port,
            target_type=definitions[conn.target].input_port(conn.target_port).type_id,
            conversion=conn.conversion,
        ))

    blueprint = Blueprint(
        workflow_id=graph.id,
        name=graph.name,
        nodes=nodes,
        connections=connections,
        adjacency=adjacency,
        incoming=incoming,
        execution_order=order,
        settings=graph.settings,
    )
    return CompilationResult(success=True, blueprint=blueprint)


def compile_or_raise(
    graph: WorkflowGraph,
    node_registry: NodeRegistry,
    type_registry: TypeRegistry,
    initial_inputs: dict[str, dict[str, Any]] | None = None,
) -> Blueprint:
    result = compile_workflow(graph, node_registry, type_registry, initial_inputs)
    if not result.success:
        raise CompilationError(result.issues)
    return result.blueprint


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate_connections(
    graph: WorkflowGraph,
    index_of: dict[str, int],
    definitions: dict[str, NodeDefinition],
    type_registry: TypeRegistry,
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    operators = {op.name: op for op in type_registry.conversions()}
    input_connections: dict[tuple[str, str], list[str]] = defaultdict(list)

    for conn in graph.connections:
        label = conn.label()

        missing = [iid for iid in (conn.source, conn.target) if iid not in index_of]
        for iid in missing:
            issues.append(ValidationIssue(
                code="unknown_instance",
                message=f"Connection {label} references unknown node '{iid}'",
                instance_id=iid,
                connection=label,
            ))
        if missing:
            continue

        input_connections[(conn.target, conn.target_port)].append(label)

        src_def = definitions.get(conn.source)
        tgt_def = definitions.get(conn.target)
        src_port = src_def.output_port(conn.source_port) if src_def else None
        tgt_port = tgt_def.input_port(conn.target_port) if tgt_def else None

        if src_def and src_port is None:
            issues.append(ValidationIssue(
                code="unknown_port",
                message=f"Node '{conn.source}' has no output port '{conn.source_port}'",
                instance_id=conn.source,
                port=conn.source_port,
                connection=label,
            ))
        if tgt_def and tgt_port is None:
            issues.append(ValidationIssue(
                code="unknown_port",
                message=f"Node '{conn.target}' has no input port '{conn.target_port}'",
                instance_id=conn.target,
                port=conn.target_port,
                connection=label,
            ))
        if src_port is None or tgt_port is None:
            continue
        if src_port.type_id not in type_registry or tgt_port.type_id not in type_registry:
            continue

        src_type, tgt_type = src_port.type_id, tgt_port.type_id

        if conn.conversion is not None:
            operator = operators.get(conn.conversion)
            if operator is None:
                issues.append(ValidationIssue(
                    code="unknown_conversion",
                    message=f"Connection {label} uses unregistered conversion '{conn.conversion}'",
                    instance_id=conn.target,
                    port=conn.target_port,
                    connection=label,
                ))
            elif (operator.source_type, operator.target_type) != (src_type, tgt_type):
                issues.append(ValidationIssue(
                    code="conversion_mismatch",
                    message=(
                        f"Conversion '{operator.name}' converts {operator.source_type} -> "
                        f"{operator.target_type}, but connection {label} is {src_type} -> {tgt_type}"
                    ),
                    instance_id=conn.target,
                    port=conn.target_port,
                    connection=label,
                ))
            continue

        if not type_registry.is_compatible(src_type, tgt_type):
            suggestion = type_registry.suggest_conversion(src_type, tgt_type)
            hint = f"; conversion '{suggestion.name}' is available" if suggestion else ""
            issues.append(ValidationIssue(
                code="incompatible_types",
                message=f"Incompatible connection {label}: '{src_type}' cannot feed '{tgt_type}'{hint}",
                instance_id=conn.target,
                port=conn.target_port,
                connection=label,
            ))

    for (node_id, port), labels in input_connections.items():
        if len(labels) > 1:
            issues.append(ValidationIssue(
                code="multiple_connections",
                message=(
                    f"Multiple connections feed input '{port}' of node '{node_id}' "
                    f"(only one connection per input allowed): {'; '.join(labels)}"
                ),
                instance_id=node_id,
                port=port,
            ))

    return issues


def _validate_required_inputs(
    graph: WorkflowGraph,
    definitions: dict[str, NodeDefinition],
    initial_inputs: dict[str, dict[str, Any]],
) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []
    wired = {(c.target, c.target_port) for c in graph.connections}

    for iid, supplied in initial_inputs.items():
        definition = definitions.get(iid)
        if definition is None:
            if iid not in {i.instance_id for i in graph.instances}:
                issues.append(ValidationIssue(
                    code="unknown_instance",
                    message=f"Initial inputs given for unknown node '{iid}'",
                    instance_id=iid,
                ))
            continue
        for port in supplied:
            if definition.input_port(port) is None:
                issues.append(ValidationIssue(
                    code="unknown_port",
                    message=f"Initial input '{port}' does not match any input of node '{iid}'",
                    instance_id=iid,
                    port=port,
                ))
            elif (iid, port) in wired:
                issues.append(ValidationIssue(
                    code="multiple_connections",
                    message=f"Input '{port}' of node '{iid}' is both connected and supplied as an initial input",
                    instance_id=iid,
                    port=port,
                ))

    for iid, definition in definitions.items():
        supplied = initial_inputs.get(iid, {})
        for port in definition.inputs:
            if not port.required or port.default is not None:
                continue
            if (iid, port.key) not in wired and port.key not in supplied:
                issues.append(ValidationIssue(
                    code="missing_input",
                    message=f"Required input '{port.key}' of node '{iid}' is neither connected nor supplied",
                    instance_id=iid,
                    port=port.key,
                ))

    return issues


def _validate_limits(graph: WorkflowGraph) -> list[ValidationIssue]:
    """Limit overrides must be valid on their own, whatever the engine defaults are."""
    try:
        ResourceLimits().merged(graph.settings.limits)
    except pydantic.ValidationError as e:
        return [
            ValidationIssue(
                code="invalid_limits",
                message=(
                    f"Resource limit '{'.'.join(str(part) for part in error['loc'])}' "
                    f"is invalid: {error['msg']}"
                ),
            )
            for error in e.errors()
        ]
    return []


# ---------------------------------------------------------------------------
# Toposort (Kahn's algorithm)
# ---------------------------------------------------------------------------

def _toposort(count: int, edges: list[tuple[int, int]]) -> tuple[list[int], set[int]]:
    """Return (order, nodes left on or behind a cycle)."""
    in_degree = [0] * count
    adjacency: list[list[int]] = [[] for _ in range(count)]
    for src, tgt in edges:
        adjacency[src].append(tgt)
        in_degree[tgt] += 1

    queue: deque[int] = deque(i for i in range(count) if in_degree[i] == 0)
    order: list[int] = []

    while queue:
        idx = queue.popleft()
        order.append(idx)
        for neighbor in adjacency[idx]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    cyclic = {i for i in range(count) if in_degree[i] > 0}
    return order, cyclic
