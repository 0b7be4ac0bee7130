"""
Engine wiring.

Every component is constructed here and passed its collaborators
explicitly; nothing reaches for module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from qflow.config import EngineConfig, load_config
from qflow.models.blueprint import WorkflowGraph
from qflow.models.node_registry import NodeRegistry
from qflow.models.run_record import RunEvent, RunRecord
from qflow.services.codec import DataFlowCodec
from qflow.services.node_executor import NodeExecutor
from qflow.services.run_store import RunStore
from qflow.services.sandbox_manager import SandboxManager
from qflow.services.scheduler import WorkflowScheduler
from qflow.services.type_registry import TypeRegistry
from qflow.storage.blob_store import BlobStore, LocalBlobStore
from qflow.storage.r2 import R2BlobStore, get_r2

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    config: EngineConfig
    type_registry: TypeRegistry
    node_registry: NodeRegistry
    blob_store: BlobStore
    codec: DataFlowCodec
    sandbox_manager: SandboxManager
    executor: NodeExecutor
    run_store: RunStore
    scheduler: WorkflowScheduler
    workflows: dict[str, WorkflowGraph] = field(default_factory=dict)

    # Registered workflows pin the node definitions they reference; runs pin
    # theirs only while active

    def register_workflow(self, graph: WorkflowGraph) -> WorkflowGraph:
        self.node_registry.remove_references(graph.id)
        self.node_registry.add_references(graph.id, {i.definition_id for i in graph.instances})
        self.workflows[graph.id] = graph
        return graph

    def unregister_workflow(self, workflow_id: str) -> None:
        self.workflows.pop(workflow_id, None)
        self.node_registry.remove_references(workflow_id)

    async def submit_run(
        self,
        graph: WorkflowGraph,
        initial_inputs: dict[str, dict[str, Any]] | None = None,
    ) -> str:
        return await self.scheduler.submit_run(graph, initial_inputs)

    def get_run_status(self, run_id: str) -> RunRecord:
        return self.scheduler.get_run_status(run_id)

    def cancel_run(self, run_id: str) -> bool:
        return self.scheduler.cancel_run(run_id)

    async def wait_for_run(self, run_id: str, timeout: float | None = None) -> RunRecord:
        return await self.scheduler.wait_for_run(run_id, timeout=timeout)

    async def execute(
        self,
        graph: WorkflowGraph,
        initial_inputs: dict[str, dict[str, Any]] | None = None,
        timeout: float | None = None,
    ) -> RunRecord:
        run_id = await self.submit_run(graph, initial_inputs)
        return await self.wait_for_run(run_id, timeout=timeout)

    def events(self, run_id: str) -> AsyncIterator[RunEvent]:
        return self.scheduler.events(run_id)

    def get_output(self, run_id: str, instance_id: str, port: str) -> Any:
        """Decode one recorded output value of a run."""
        record = self.run_store.get(run_id)
        node = record.nodes.get(instance_id)
        if node is None or port not in node.outputs:
            raise KeyError(f"Run {run_id} has no output {instance_id}.{port}")
        wire = node.outputs[port]
        return self.codec.decode(wire, wire.type_id)

    def purge_run(self, run_id: str) -> None:
        self.scheduler.forget(run_id)
        self.run_store.purge(run_id, self.codec)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        await self.sandbox_manager.shutdown()
        logger.info("Engine shut down")


def create_blob_store(config: EngineConfig) -> BlobStore:
    if config.blob_backend == "r2":
        return R2BlobStore(get_r2().client)
    return LocalBlobStore(config.blob_root)


def create_engine(
    config: EngineConfig | None = None,
    type_registry: TypeRegistry | None = None,
    blob_store: BlobStore | None = None,
) -> Engine:
    config = config or load_config()
    type_registry = type_registry or TypeRegistry.with_builtins()
    blob_store = blob_store or create_blob_store(config)

    node_registry = NodeRegistry(type_registry, blocked_imports=config.blocked_imports)
    codec = DataFlowCodec(type_registry, blob_store, config.spill_threshold_bytes)
    sandbox_manager = SandboxManager(config)
    executor = NodeExecutor(type_registry, codec, blocked_imports=config.blocked_imports)
    run_store = RunStore(persist=config.persist_runs)
    scheduler = WorkflowScheduler(
        config,
        type_registry,
        node_registry,
        codec,
        sandbox_manager,
        executor,
        run_store,
    )
    logger.info(
        "Engine created (blob backend=%s, pool_size=%d, max_sandboxes=%d)",
        config.blob_backend, config.pool_size, config.max_sandboxes,
    )
    return Engine(
        config=config,
        type_registry=type_registry,
        node_registry=node_registry,
        blob_store=blob_store,
        codec=codec,
        sandbox_manager=sandbox_manager,
        executor=executor,
        run_store=run_store,
        scheduler=scheduler,
    )
