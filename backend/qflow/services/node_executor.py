"""
Node Executor: runs one node definition against decoded inputs inside a leased
sandbox and classifies what happened.

Failure classification:
- exception raised by user code               -> UserCodeError
- undecodable / type-mismatched input         -> UserCodeError (attributed to the producer)
- output that does not match its port type    -> TypeViolation
- MemoryError, SIGXCPU, SIGKILL               -> ResourceExceeded
- spawn failure, crash, missing envelope      -> SandboxFault
- wall-clock limit hit                        -> ExecutionTimeout
"""

from __future__ import annotations

import logging
import pickle
import signal
from typing import Any, Literal, Union

from pydantic import BaseModel, Field

from qflow.config import ResourceLimits
from qflow.errors import CodecError, ErrorKind, SandboxFault
from qflow.models.blueprint import NodeDefinition
from qflow.services.codec import DataFlowCodec, WireValue
from qflow.services.sandbox_manager import (
    ExecutionRequest,
    SandboxHandle,
    SandboxOutcome,
    SandboxUsage,
)
from qflow.services.type_registry import TypeRegistry

logger = logging.getLogger(__name__)

_RESOURCE_SIGNALS = {signal.SIGXCPU, signal.SIGKILL}
_REUSABLE_KINDS = {ErrorKind.USER_CODE_ERROR, ErrorKind.TYPE_VIOLATION}


class ExecutionSuccess(BaseModel):
    status: Literal["success"] = "success"
    outputs: dict[str, WireValue] = Field(default_factory=dict)
    resource_usage: SandboxUsage = Field(default_factory=SandboxUsage)
    stdout: str = ""

    @property
    def sandbox_reusable(self) -> bool:
        return True


class ExecutionFailure(BaseModel):
    status: Literal["failure"] = "failure"
    error_kind: ErrorKind
    error_type: str
    message: str
    stack_detail: str | None = None
    attributed_to: str | None = None
    resource_usage: SandboxUsage = Field(default_factory=SandboxUsage)
    stdout: str = ""

    @property
    def sandbox_reusable(self) -> bool:
        return self.error_kind in _REUSABLE_KINDS


class ExecutionTimeout(BaseModel):
    status: Literal["timeout"] = "timeout"
    timeout_seconds: float
    resource_usage: SandboxUsage = Field(default_factory=SandboxUsage)
    stdout: str = ""

    @property
    def sandbox_reusable(self) -> bool:
        return False


ExecutionResult = Union[ExecutionSuccess, ExecutionFailure, ExecutionTimeout]


class NodeExecutor:
    def __init__(
        self,
        type_registry: TypeRegistry,
        codec: DataFlowCodec,
        blocked_imports: list[str] | None = None,
    ):
        self.type_registry = type_registry
        self.codec = codec
        self.blocked_imports = blocked_imports or []

    async def run(
        self,
        definition: NodeDefinition,
        inputs: dict[str, WireValue],
        sandbox: SandboxHandle,
        *,
        limits: ResourceLimits,
        params: dict[str, Any] | None = None,
        input_sources: dict[str, str] | None = None,
        instance_id: str | None = None,
    ) -> ExecutionResult:
        """
        Execute `definition` once.

        `input_sources` maps input port -> producing instance id so input
        failures can be attributed upstream; `instance_id` is used for
        failures that belong to this node.
        """
        input_sources = input_sources or {}
        values: dict[str, Any] = {}

        for port in definition.inputs:
            wire = inputs.get(port.key)
            if wire is None:
                if port.required and port.default is None:
                    return ExecutionFailure(
                        error_kind=ErrorKind.USER_CODE_ERROR,
                        error_type="MissingInput",
                        message=f"Required input '{port.key}' was not provided",
                        attributed_to=instance_id,
                    )
                values[port.key] = port.default
                continue
            try:
                values[port.key] = await self.codec.decode_async(wire, port.type_id)
            except CodecError as e:
                return ExecutionFailure(
                    error_kind=ErrorKind.USER_CODE_ERROR,
                    error_type=type(e).__name__,
                    message=f"Input '{port.key}': {e}",
                    attributed_to=input_sources.get(port.key, instance_id),
                )

        try:
            payload = pickle.dumps(values, protocol=4)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            return ExecutionFailure(
                error_kind=ErrorKind.USER_CODE_ERROR,
                error_type=type(e).__name__,
                message=f"Inputs cannot be transferred to the sandbox: {e}",
                attributed_to=instance_id,
            )

        request = ExecutionRequest(
            definition_id=definition.id,
            code=definition.code,
            entry_function=definition.entry_function,
            inputs=payload,
            params=params or {},
            blocked_imports=self.blocked_imports,
        )

        try:
            outcome = await sandbox.execute(request, limits)
        except SandboxFault as e:
            logger.warning("Sandbox %s failed to execute %s: %s", sandbox.sandbox_id, definition.id, e)
            return ExecutionFailure(
                error_kind=ErrorKind.SANDBOX_FAULT,
                error_type=type(e).__name__,
                message=str(e),
                attributed_to=instance_id,
            )

        logger.debug(
            "Node %s in sandbox %s finished with %s (%.3fs)",
            definition.id, sandbox.sandbox_id, outcome.status, outcome.usage.wall_seconds,
        )

        if outcome.status != "ok":
            return self._classify(outcome, limits, instance_id)
        return await self._map_outputs(definition, outcome, instance_id)

    def _classify(
        self,
        outcome: SandboxOutcome,
        limits: ResourceLimits,
        instance_id: str | None,
    ) -> ExecutionResult:
        common = {"resource_usage": outcome.usage, "stdout": outcome.stdout}

        if outcome.status == "timeout":
            return ExecutionTimeout(timeout_seconds=limits.wall_timeout_seconds, **common)

        if outcome.status == "cancelled":
            return ExecutionFailure(
                error_kind=ErrorKind.CANCELLED,
                error_type="Cancelled",
                message="Execution was cancelled",
                attributed_to=instance_id,
                **common,
            )

        if outcome.status == "error":
            if outcome.error_type == "MemoryError":
                kind = ErrorKind.RESOURCE_EXCEEDED
                message = f"Memory limit of {limits.memory_mb} MB exceeded"
            elif outcome.stage == "inputs":
                kind = ErrorKind.SANDBOX_FAULT
                message = outcome.message or "Sandbox could not load its inputs"
            else:
                kind = ErrorKind.USER_CODE_ERROR
                message = outcome.message or ""
            return ExecutionFailure(
                error_kind=kind,
                error_type=outcome.error_type or "Exception",
                message=message,
                stack_detail=outcome.traceback,
                attributed_to=instance_id,
                **common,
            )

        if outcome.status == "killed":
            if outcome.signal in _RESOURCE_SIGNALS:
                name = signal.Signals(outcome.signal).name
                return ExecutionFailure(
                    error_kind=ErrorKind.RESOURCE_EXCEEDED,
                    error_type=name,
                    message=f"Process killed by {name} (cpu_share={limits.cpu_share}, memory={limits.memory_mb} MB)",
                    attributed_to=instance_id,
                    **common,
                )
            return ExecutionFailure(
                error_kind=ErrorKind.SANDBOX_FAULT,
                error_type="Signal",
                message=f"Process terminated by signal {outcome.signal}",
                stack_detail=outcome.stderr or None,
                attributed_to=instance_id,
                **common,
            )

        # crashed
        if "MemoryError" in outcome.stderr:
            kind = ErrorKind.RESOURCE_EXCEEDED
        else:
            kind = ErrorKind.SANDBOX_FAULT
        return ExecutionFailure(
            error_kind=kind,
            error_type="SandboxCrash",
            message=outcome.message or f"Sandbox exited with code {outcome.exit_code}",
            stack_detail=outcome.stderr or None,
            attributed_to=instance_id,
            **common,
        )

    async def _map_outputs(
        self,
        definition: NodeDefinition,
        outcome: SandboxOutcome,
        instance_id: str | None,
    ) -> ExecutionResult:
        common = {"resource_usage": outcome.usage, "stdout": outcome.stdout}

        def violation(message: str) -> ExecutionFailure:
            return ExecutionFailure(
                error_kind=ErrorKind.TYPE_VIOLATION,
                error_type="TypeViolation",
                message=message,
                attributed_to=instance_id,
                **common,
            )

        try:
            result = pickle.loads(outcome.result or b"")
        except Exception as e:
            return ExecutionFailure(
                error_kind=ErrorKind.USER_CODE_ERROR,
                error_type=type(e).__name__,
                message=f"Return value could not be transferred out of the sandbox: {e}",
                attributed_to=instance_id,
                **common,
            )

        ports = definition.outputs
        produced: dict[str, Any] = {}
        if len(ports) == 1:
            produced[ports[0].key] = result
        elif len(ports) > 1:
            keys = [p.key for p in ports]
            if isinstance(result, dict):
                missing = [p.key for p in ports if p.required and p.key not in result]
                if missing:
                    return violation(f"Return value is missing output ports: {', '.join(missing)}")
                produced = {k: result[k] for k in keys if k in result}
            elif isinstance(result, (tuple, list)) and len(result) == len(keys):
                produced = dict(zip(keys, result))
            else:
                return violation(
                    f"Expected a dict keyed by {keys} or a {len(keys)}-tuple, got {type(result).__name__}"
                )

        outputs: dict[str, WireValue] = {}
        for port in ports:
            if port.key not in produced:
                continue
            value = produced[port.key]
            if not self.type_registry.value_matches(value, port.type_id):
                inferred = self.type_registry.infer_type(value) or type(value).__name__
                return violation(
                    f"Output '{port.key}' produced '{inferred}' but is declared as '{port.type_id}'"
                )

            wire_type = port.type_id
            if self.type_registry.get(port.type_id).is_universal:
                wire_type = self.type_registry.infer_type(value) or port.type_id
            try:
                outputs[port.key] = await self.codec.encode_async(value, wire_type)
            except CodecError as e:
                for wire in outputs.values():
                    self.codec.release(wire)
                return violation(f"Output '{port.key}' cannot be encoded: {e}")

        return ExecutionSuccess(outputs=outputs, **common)
