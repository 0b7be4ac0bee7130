"""
Workflow Scheduler.

Takes a WorkflowGraph through Validating -> Scheduling -> Executing -> Finished.

Key concepts:
- Validation is batch (see blueprint_compiler); a rejected run is recorded as
  failed with every issue and nothing executes.
- Parallel execution: a dynamic ready queue over the Blueprint's index
  adjacency. A node is dispatched once every upstream node has succeeded,
  bounded by the per-run limit and the host-wide semaphore.
- A failed node skips all of its descendants; unrelated branches keep going
  and their results are kept.
- Retryable failures (resource, sandbox, timeout, provisioning) are retried
  with a fresh sandbox up to max_retries; user errors are never retried.
- Cancellation stops dispatch, gives in-flight nodes a grace period, then
  force-stops their sandbox processes.
- Every state change is published as a RunEvent; late subscribers get the
  full history first.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from qflow.config import EngineConfig, ResourceLimits
from qflow.errors import (
    RETRYABLE_KINDS,
    CodecError,
    ErrorKind,
    SandboxFault,
    ValidationIssue,
    WorkflowValidationError,
)
from qflow.models.blueprint import Blueprint, WorkflowGraph
from qflow.models.node_registry import NodeRegistry
from qflow.models.run_record import (
    AttemptRecord,
    ErrorDetail,
    NodeExecutionRecord,
    NodeStatus,
    RunEvent,
    RunPhase,
    RunRecord,
    RunStatus,
)
from qflow.services.blueprint_compiler import compile_workflow
from qflow.services.codec import DataFlowCodec, WireValue
from qflow.services.node_executor import (
    ExecutionFailure,
    ExecutionResult,
    ExecutionSuccess,
    NodeExecutor,
)
from qflow.services.run_store import RunStore
from qflow.services.sandbox_manager import SandboxManager
from qflow.services.type_registry import TypeRegistry

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CancellationToken:
    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class _RunContext:
    """Per-run state owned by the run's coordinator task."""

    def __init__(self, record: RunRecord, blueprint: Blueprint | None = None):
        self.record = record
        self.blueprint = blueprint
        self.token = CancellationToken()
        self.initial: dict[str, dict[str, WireValue]] = {}
        self.limits: ResourceLimits | None = None
        self.max_retries = 0
        self.events: list[RunEvent] = []
        self.subscribers: list[asyncio.Queue] = []
        self.done = asyncio.Event()
        self.task: asyncio.Task | None = None


class WorkflowScheduler:
    def __init__(
        self,
        config: EngineConfig,
        type_registry: TypeRegistry,
        node_registry: NodeRegistry,
        codec: DataFlowCodec,
        sandbox_manager: SandboxManager,
        executor: NodeExecutor,
        run_store: RunStore,
    ):
        self.config = config
        self.type_registry = type_registry
        self.node_registry = node_registry
        self.codec = codec
        self.sandbox_manager = sandbox_manager
        self.executor = executor
        self.run_store = run_store
        self._host_slots = asyncio.Semaphore(config.max_concurrency_per_host)
        self._runs: dict[str, _RunContext] = {}
        self._finished: deque[str] = deque()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_run(
        self,
        graph: WorkflowGraph,
        initial_inputs: dict[str, dict[str, Any]] | None = None,
    ) -> str:
        """
        Validate, schedule and start a run. Returns the run id immediately.

        Raises WorkflowValidationError (carrying the rejected run's id) when
        the workflow is invalid; nothing is executed in that case.
        """
        initial_inputs = initial_inputs or {}
        record = RunRecord(workflow_id=graph.id, workflow_name=graph.name)
        self.run_store.put(record)
        ctx = _RunContext(record)
        self._runs[record.run_id] = ctx

        result = compile_workflow(graph, self.node_registry, self.type_registry, initial_inputs)
        issues = list(result.issues)
        if result.success:
            # Definitions stay undeletable until the run finishes
            self.node_registry.add_references(
                record.run_id, {node.definition.id for node in result.blueprint.nodes}
            )
            record.phase = RunPhase.SCHEDULING
            issues.extend(await self._encode_initial_inputs(ctx, result.blueprint, initial_inputs))

        if issues:
            await self._reject(ctx, issues)
            raise WorkflowValidationError(issues, run_id=record.run_id)

        blueprint = result.blueprint
        ctx.blueprint = blueprint
        ctx.limits = self.config.limits.merged(blueprint.settings.limits)
        ctx.max_retries = (
            blueprint.settings.max_retries
            if blueprint.settings.max_retries is not None
            else self.config.max_retries
        )
        record.execution_order = [blueprint.nodes[i].instance_id for i in blueprint.execution_order]
        record.nodes = {
            node.instance_id: NodeExecutionRecord(
                instance_id=node.instance_id,
                definition_id=node.definition.id,
                definition_version=node.definition.version,
            )
            for node in blueprint.nodes
        }
        for iid, wires in ctx.initial.items():
            record.nodes[iid].inputs = dict(wires)

        ctx.task = asyncio.create_task(self._execute(ctx))
        logger.info(
            "Run %s submitted for workflow %s (%d nodes)",
            record.run_id, graph.id, len(blueprint.nodes),
        )
        return record.run_id

    def get_run_status(self, run_id: str) -> RunRecord:
        return self.run_store.get(run_id)

    def cancel_run(self, run_id: str) -> bool:
        """Request cancellation. Returns False when the run already finished."""
        ctx = self._runs.get(run_id)
        if ctx is None:
            self.run_store.get(run_id)
            return False
        if ctx.record.status.terminal:
            return False
        if not ctx.token.cancelled:
            logger.info("Cancellation requested for run %s", run_id)
            ctx.token.cancel()
        return True

    async def wait_for_run(self, run_id: str, timeout: float | None = None) -> RunRecord:
        ctx = self._runs.get(run_id)
        if ctx is None:
            return self.run_store.get(run_id)
        await asyncio.wait_for(ctx.done.wait(), timeout=timeout)
        return self.run_store.get(run_id)

    async def execute(
        self,
        graph: WorkflowGraph,
        initial_inputs: dict[str, dict[str, Any]] | None = None,
        timeout: float | None = None,
    ) -> RunRecord:
        run_id = await self.submit_run(graph, initial_inputs)
        return await self.wait_for_run(run_id, timeout=timeout)

    async def events(self, run_id: str) -> AsyncIterator[RunEvent]:
        """
        Yield every event of the run, history first, until run_completed.

        Runs whose context was already dropped only yield their completion.
        """
        ctx = self._runs.get(run_id)
        if ctx is None:
            record = self.run_store.get(run_id)
            yield RunEvent(
                event="run_completed",
                run_id=run_id,
                sequence=0,
                status=record.status.value,
                error=record.root_cause,
            )
            return
        history = list(ctx.events)
        queue: asyncio.Queue = asyncio.Queue()
        finished = ctx.done.is_set()
        if not finished:
            ctx.subscribers.append(queue)

        try:
            for event in history:
                yield event
            if finished:
                return
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        finally:
            if queue in ctx.subscribers:
                ctx.subscribers.remove(queue)

    async def shutdown(self) -> None:
        tasks = []
        for ctx in self._runs.values():
            if ctx.task is not None and not ctx.task.done():
                ctx.token.cancel()
                tasks.append(ctx.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def forget(self, run_id: str) -> None:
        ctx = self._runs.get(run_id)
        if ctx is None:
            return
        if not ctx.done.is_set():
            raise ValueError(f"Run {run_id} is still active")
        del self._runs[run_id]
        if run_id in self._finished:
            self._finished.remove(run_id)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    async def _encode_initial_inputs(
        self,
        ctx: _RunContext,
        blueprint: Blueprint,
        initial_inputs: dict[str, dict[str, Any]],
    ) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        for iid, values in initial_inputs.items():
            definition = blueprint.node(iid).definition
            for port_key, value in values.items():
                port = definition.input_port(port_key)
                if not self.type_registry.value_matches(value, port.type_id):
                    inferred = self.type_registry.infer_type(value) or type(value).__name__
                    issues.append(ValidationIssue(
                        code="incompatible_types",
                        message=(
                            f"Initial input '{port_key}' of node '{iid}' is '{inferred}', "
                            f"expected '{port.type_id}'"
                        ),
                        instance_id=iid,
                        port=port_key,
                    ))
                    continue
                try:
                    wire = await self.codec.encode_async(value, port.type_id)
                except CodecError as e:
                    issues.append(ValidationIssue(
                        code="unencodable_input",
                        message=f"Initial input '{port_key}' of node '{iid}' cannot be encoded: {e}",
                        instance_id=iid,
                        port=port_key,
                    ))
                    continue
                ctx.initial.setdefault(iid, {})[port_key] = wire

        if issues:
            for wires in ctx.initial.values():
                for wire in wires.values():
                    self.codec.release(wire)
            ctx.initial.clear()
        return issues

    async def _reject(self, ctx: _RunContext, issues: list[ValidationIssue]) -> None:
        record = ctx.record
        record.status = RunStatus.FAILED
        record.phase = RunPhase.FINISHED
        record.validation_errors = issues
        record.finished_at = _now()
        record.root_cause = ErrorDetail(
            kind="ValidationError",
            message=f"Workflow validation failed with {len(issues)} issue(s): "
                    + "; ".join(i.message for i in issues),
        )
        logger.info("Run %s rejected: %d validation issues", record.run_id, len(issues))
        await asyncio.to_thread(self.run_store.finalize, record)
        self._emit(ctx, "run_completed", status=record.status.value, error=record.root_cause)
        self._close(ctx)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _emit(self, ctx: _RunContext, event: str, **fields: Any) -> RunEvent:
        run_event = RunEvent(
            event=event,
            run_id=ctx.record.run_id,
            sequence=len(ctx.events),
            **fields,
        )
        ctx.events.append(run_event)
        for queue in ctx.subscribers:
            queue.put_nowait(run_event)
        return run_event

    def _close(self, ctx: _RunContext) -> None:
        run_id = ctx.record.run_id
        self.node_registry.remove_references(run_id)
        for queue in ctx.subscribers:
            queue.put_nowait(None)
        ctx.subscribers.clear()
        ctx.done.set()

        self._finished.append(run_id)
        while len(self._finished) > self.config.retained_run_contexts:
            self._runs.pop(self._finished.popleft(), None)

    # ------------------------------------------------------------------
    # Executing
    # ------------------------------------------------------------------

    def _run_limit(self, blueprint: Blueprint) -> int:
        requested = blueprint.settings.max_concurrency or self.config.max_concurrency_per_run
        return max(1, min(requested, self.config.max_concurrency_per_run))

    async def _execute(self, ctx: _RunContext) -> None:
        record = ctx.record
        blueprint = ctx.blueprint
        record.status = RunStatus.RUNNING
        record.phase = RunPhase.EXECUTING
        record.started_at = _now()
        self._emit(ctx, "run_started", status=record.status.value)

        in_degree = [0] * len(blueprint.nodes)
        for targets in blueprint.adjacency:
            for target in targets:
                in_degree[target] += 1

        ready: deque[int] = deque(i for i in blueprint.execution_order if in_degree[i] == 0)
        pending: dict[asyncio.Task, int] = {}  # task -> node index
        blocked: set[int] = set()
        limit = self._run_limit(blueprint)
        internal_error: Exception | None = None

        try:
            while True:
                while ready and len(pending) < limit and not ctx.token.cancelled:
                    idx = ready.popleft()
                    task = asyncio.create_task(self._run_node(ctx, idx))
                    pending[task] = idx
                    logger.debug("Started node %s", blueprint.nodes[idx].instance_id)

                if not pending:
                    break

                cancel_wait = asyncio.create_task(ctx.token.wait())
                done, _ = await asyncio.wait(
                    [*pending.keys(), cancel_wait], return_when=asyncio.FIRST_COMPLETED
                )
                if cancel_wait not in done:
                    cancel_wait.cancel()

                for task in done:
                    if task is cancel_wait:
                        continue
                    idx = pending.pop(task)
                    status = task.result()
                    if status == NodeStatus.SUCCEEDED:
                        for downstream in blueprint.adjacency[idx]:
                            in_degree[downstream] -= 1
                            if in_degree[downstream] == 0 and downstream not in blocked:
                                ready.append(downstream)
                                logger.debug(
                                    "Node %s now ready (unblocked by %s)",
                                    blueprint.nodes[downstream].instance_id,
                                    blueprint.nodes[idx].instance_id,
                                )
                    elif status == NodeStatus.FAILED:
                        self._skip_descendants(ctx, idx, blocked)

                if ctx.token.cancelled and pending:
                    await self._drain(ctx, pending)
                    pending.clear()
                    break

        except Exception as e:
            internal_error = e
            logger.exception("Coordinator error in run %s: %s", record.run_id, e)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending.keys(), return_exceptions=True)

        finally:
            await self._finish(ctx, internal_error)

    def _skip_descendants(self, ctx: _RunContext, idx: int, blocked: set[int]) -> None:
        blueprint = ctx.blueprint
        failed_id = blueprint.nodes[idx].instance_id
        for downstream in blueprint.descendants(idx):
            blocked.add(downstream)
            node = ctx.record.nodes[blueprint.nodes[downstream].instance_id]
            if node.status != NodeStatus.PENDING:
                continue
            node.status = NodeStatus.SKIPPED
            node.skipped_because = failed_id
            node.finished_at = _now()
            self._emit(
                ctx, "skipped",
                instance_id=node.instance_id,
                status=node.status.value,
                skipped_because=failed_id,
            )

    async def _drain(self, ctx: _RunContext, pending: dict[asyncio.Task, int]) -> None:
        """Give in-flight nodes the grace period, then force-stop them."""
        grace = self.config.cancel_grace_seconds
        _, still_running = await asyncio.wait(pending.keys(), timeout=grace)
        if not still_running:
            return

        await self.sandbox_manager.abort_scope(ctx.record.run_id, grace=0)
        _, still_running = await asyncio.wait(still_running, timeout=max(grace, 1.0))
        for task in still_running:
            task.cancel()
        await asyncio.gather(*pending.keys(), return_exceptions=True)

    async def _finish(self, ctx: _RunContext, internal_error: Exception | None) -> None:
        record = ctx.record
        now = _now()

        for node in record.nodes.values():
            if node.status.terminal:
                continue
            node.status = NodeStatus.CANCELLED
            node.finished_at = now
            self._emit(ctx, "cancelled", instance_id=node.instance_id, status=node.status.value)

        if ctx.token.cancelled:
            record.status = RunStatus.CANCELLED
        elif internal_error is not None:
            record.status = RunStatus.FAILED
            if record.root_cause is None:
                record.root_cause = ErrorDetail(
                    kind=ErrorKind.SANDBOX_FAULT,
                    error_type=type(internal_error).__name__,
                    message=f"Internal error: {internal_error}",
                )
        elif any(n.status == NodeStatus.FAILED for n in record.nodes.values()):
            record.status = RunStatus.FAILED
        else:
            record.status = RunStatus.SUCCEEDED

        record.phase = RunPhase.FINISHED
        record.finished_at = now

        try:
            await self.sandbox_manager.release_scope(record.run_id)
        except Exception as e:
            logger.exception("Failed to release sandboxes of run %s: %s", record.run_id, e)

        await asyncio.to_thread(self.run_store.finalize, record)
        logger.info(
            "Run %s finished: %s in %dms",
            record.run_id, record.status.value, record.total_execution_time_ms,
        )
        self._emit(
            ctx, "run_completed",
            status=record.status.value,
            error=record.root_cause,
        )
        self._close(ctx)

    # ------------------------------------------------------------------
    # Single node
    # ------------------------------------------------------------------

    async def _gather_inputs(
        self, ctx: _RunContext, idx: int
    ) -> tuple[dict[str, WireValue], dict[str, str], ErrorDetail | None]:
        blueprint = ctx.blueprint
        iid = blueprint.nodes[idx].instance_id
        inputs: dict[str, WireValue] = dict(ctx.initial.get(iid, {}))
        sources: dict[str, str] = {}
        operators = {op.name: op for op in self.type_registry.conversions()}

        for conn_idx in blueprint.incoming[idx]:
            conn = blueprint.connections[conn_idx]
            source_id = blueprint.nodes[conn.source_index].instance_id
            wire = ctx.record.nodes[source_id].outputs.get(conn.source_port)
            if wire is None:
                continue
            sources[conn.target_port] = source_id
            if conn.conversion:
                try:
                    wire = await asyncio.to_thread(self.codec.convert, wire, operators[conn.conversion])
                except CodecError as e:
                    return inputs, sources, ErrorDetail(
                        kind=ErrorKind.USER_CODE_ERROR,
                        error_type=type(e).__name__,
                        message=f"Input '{conn.target_port}': {e}",
                        attributed_to=source_id,
                        instance_id=iid,
                    )
            else:
                self.codec.retain(wire)
            inputs[conn.target_port] = wire

        return inputs, sources, None

    async def _run_node(self, ctx: _RunContext, idx: int) -> NodeStatus:
        bp_node = ctx.blueprint.nodes[idx]
        definition = bp_node.definition
        node = ctx.record.nodes[bp_node.instance_id]
        run_id = ctx.record.run_id

        node.status = NodeStatus.RUNNING
        node.started_at = _now()
        self._emit(ctx, "started", instance_id=node.instance_id, status=node.status.value, attempt=1)

        inputs, sources, input_error = await self._gather_inputs(ctx, idx)
        node.inputs = inputs
        if input_error is not None:
            return self._fail(ctx, node, input_error)

        async with self._host_slots:
            while True:
                attempt = len(node.attempts) + 1
                attempt_started = _now()
                handle = None
                result: ExecutionResult
                try:
                    handle = await self.sandbox_manager.acquire(
                        runtime=definition.runtime,
                        version=definition.runtime_version,
                        dependencies=definition.dependencies,
                        limits=ctx.limits,
                        scope=run_id,
                    )
                    result = await self.executor.run(
                        definition,
                        inputs,
                        handle,
                        limits=ctx.limits,
                        params=bp_node.params,
                        input_sources=sources,
                        instance_id=node.instance_id,
                    )
                except asyncio.CancelledError:
                    if handle is not None:
                        await asyncio.shield(self.sandbox_manager.release(handle, discard=True))
                    node.status = NodeStatus.CANCELLED
                    node.finished_at = _now()
                    self._emit(ctx, "cancelled", instance_id=node.instance_id, status=node.status.value)
                    raise
                except SandboxFault as e:
                    result = self._environment_failure(e, e.kind, node.instance_id)
                except Exception as e:
                    # Anything else is still local to this node: fail the attempt, not the run
                    logger.exception("Unexpected error executing node %s: %s", node.instance_id, e)
                    result = self._environment_failure(e, ErrorKind.SANDBOX_FAULT, node.instance_id)

                if handle is not None:
                    await asyncio.shield(
                        self.sandbox_manager.release(handle, discard=not result.sandbox_reusable)
                    )

                node.attempts.append(self._attempt(attempt, handle, result, attempt_started))
                node.resource_usage.append(result.resource_usage)

                if isinstance(result, ExecutionSuccess):
                    node.outputs = result.outputs
                    node.stdout = result.stdout
                    node.status = NodeStatus.SUCCEEDED
                    node.finished_at = _now()
                    self._emit(
                        ctx, "succeeded",
                        instance_id=node.instance_id,
                        status=node.status.value,
                        attempt=attempt,
                        outputs={port: wire.summary() for port, wire in node.outputs.items()},
                    )
                    return node.status

                node.stdout = result.stdout
                error = self._error_detail(result, node.instance_id)

                if error.kind == ErrorKind.CANCELLED:
                    node.status = NodeStatus.CANCELLED
                    node.finished_at = _now()
                    self._emit(ctx, "cancelled", instance_id=node.instance_id, status=node.status.value)
                    return node.status

                if (
                    error.kind in RETRYABLE_KINDS
                    and node.retry_count < ctx.max_retries
                    and not ctx.token.cancelled
                ):
                    node.retry_count += 1
                    node.status = NodeStatus.RETRYING
                    logger.warning(
                        "Node %s attempt %d failed with %s; retrying (%d/%d)",
                        node.instance_id, attempt, error.kind.value, node.retry_count, ctx.max_retries,
                    )
                    self._emit(
                        ctx, "retrying",
                        instance_id=node.instance_id,
                        status=node.status.value,
                        attempt=attempt + 1,
                        error=error,
                    )
                    continue

                return self._fail(ctx, node, error)

    def _fail(self, ctx: _RunContext, node: NodeExecutionRecord, error: ErrorDetail) -> NodeStatus:
        node.status = NodeStatus.FAILED
        node.error = error
        node.finished_at = _now()
        if ctx.record.root_cause is None:
            ctx.record.root_cause = error
        logger.info("Node %s failed: %s: %s", node.instance_id, error.kind, error.message)
        self._emit(ctx, "failed", instance_id=node.instance_id, status=node.status.value, error=error)
        return node.status

    @staticmethod
    def _environment_failure(error: Exception, kind: ErrorKind, instance_id: str) -> ExecutionFailure:
        return ExecutionFailure(
            error_kind=kind,
            error_type=type(error).__name__,
            message=str(error),
            attributed_to=instance_id,
        )

    @staticmethod
    def _error_detail(result: ExecutionResult, instance_id: str) -> ErrorDetail:
        if isinstance(result, ExecutionFailure):
            return ErrorDetail(
                kind=result.error_kind,
                error_type=result.error_type,
                message=result.message,
                stack=result.stack_detail,
                attributed_to=result.attributed_to,
                instance_id=instance_id,
            )
        return ErrorDetail(
            kind=ErrorKind.TIMEOUT,
            error_type="Timeout",
            message=f"Execution exceeded the {result.timeout_seconds}s wall-clock limit",
            attributed_to=instance_id,
            instance_id=instance_id,
        )

    @staticmethod
    def _attempt(attempt, handle, result: ExecutionResult, started: datetime) -> AttemptRecord:
        if isinstance(result, ExecutionSuccess):
            outcome, kind, message = "success", None, None
        elif isinstance(result, ExecutionFailure):
            outcome, kind, message = "failure", result.error_kind, result.message
        else:
            outcome, kind, message = "timeout", ErrorKind.TIMEOUT, None
        return AttemptRecord(
            attempt=attempt,
            sandbox_id=handle.sandbox_id if handle is not None else None,
            outcome=outcome,
            error_kind=kind,
            message=message,
            resource_usage=result.resource_usage,
            started_at=started,
            finished_at=_now(),
        )
