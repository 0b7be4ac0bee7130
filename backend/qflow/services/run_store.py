"""
Run record storage.

RunStore keeps every RunRecord in memory keyed by run id and hands out deep
copies. When persistence is enabled, finished runs are also written to
Supabase: one row in `executions` per run and one row in `node_executions`
per node. A persistence failure never fails the run; it becomes the record's
`persistence_warning`.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from qflow.db.supabase import get_supabase
from qflow.errors import UnknownRunError
from qflow.models.run_record import NodeStatus, RunRecord
from qflow.services.codec import DataFlowCodec

logger = logging.getLogger(__name__)


def persist_run_record(record: RunRecord) -> tuple[str | None, str | None]:
    """
    Persist a finished run summary and its per-node records.

    Returns:
        (execution_id, persistence_warning)
    """
    node_summaries = [
        {
            "instance_id": node.instance_id,
            "definition_id": node.definition_id,
            "definition_version": node.definition_version,
            "status": node.status.value,
            "error": node.error.message if node.error else None,
            "retry_count": node.retry_count,
            "execution_time_ms": node.execution_time_ms,
        }
        for node in record.nodes.values()
    ]

    execution_row = {
        "run_id": record.run_id,
        "workflow_id": record.workflow_id,
        "status": record.status.value,
        "success": record.status.value == "succeeded",
        "error": record.root_cause.message if record.root_cause else None,
        "total_execution_time_ms": record.total_execution_time_ms,
        "node_count": len(record.nodes),
        "nodes_completed": sum(1 for n in record.nodes.values() if n.status == NodeStatus.SUCCEEDED),
        "nodes_errored": sum(1 for n in record.nodes.values() if n.status == NodeStatus.FAILED),
        "node_summaries": node_summaries,
        "validation_errors": [issue.model_dump() for issue in record.validation_errors],
    }

    try:
        supabase = get_supabase().client
        insert_result = supabase.table("executions").insert(execution_row).execute()
        if not insert_result.data:
            logger.warning("Execution log insert returned no data for run %s", record.run_id)
            return None, "Run finished but its summary could not be confirmed as saved."
        execution_id = str(insert_result.data[0]["id"])
    except Exception as e:
        logger.exception("Failed to save run %s: %s", record.run_id, str(e))
        return None, "Run completed but could not be saved to history."

    if not record.nodes:
        return execution_id, None

    node_rows = [
        {
            "execution_id": execution_id,
            "run_id": record.run_id,
            "instance_id": node.instance_id,
            "status": node.status.value,
            "error": node.error.model_dump(mode="json") if node.error else None,
            "skipped_because": node.skipped_because,
            "retry_count": node.retry_count,
            "attempts": [a.model_dump(mode="json") for a in node.attempts],
            "outputs": {port: wire.summary() for port, wire in node.outputs.items()},
            "stdout": node.stdout,
        }
        for node in record.nodes.values()
    ]
    try:
        supabase.table("node_executions").insert(node_rows).execute()
    except Exception as e:
        logger.exception("Failed to save node records for run %s: %s", record.run_id, str(e))
        return execution_id, "Run summary saved, but node records could not be persisted."

    return execution_id, None


class RunStore:
    def __init__(
        self,
        persist: bool = False,
        persister: Callable[[RunRecord], tuple[str | None, str | None]] = persist_run_record,
    ):
        self.persist = persist
        self._persister = persister
        self._records: dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: RunRecord) -> None:
        with self._lock:
            self._records[record.run_id] = record

    def get(self, run_id: str) -> RunRecord:
        """Deep copy of the current record."""
        with self._lock:
            record = self._records.get(run_id)
            if record is None:
                raise UnknownRunError(f"Unknown run '{run_id}'")
            return record.model_copy(deep=True)

    def live(self, run_id: str) -> RunRecord:
        """The mutable record; only the owning scheduler task may write to it."""
        record = self._records.get(run_id)
        if record is None:
            raise UnknownRunError(f"Unknown run '{run_id}'")
        return record

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._records

    def list(self, workflow_id: str | None = None) -> list[RunRecord]:
        with self._lock:
            records = [
                r.model_copy(deep=True)
                for r in self._records.values()
                if workflow_id is None or r.workflow_id == workflow_id
            ]
        return sorted(records, key=lambda r: r.submitted_at, reverse=True)

    def finalize(self, record: RunRecord) -> None:
        """Store a finished record and persist it when enabled."""
        self.put(record)
        if not self.persist:
            return
        _, warning = self._persister(record)
        if warning:
            logger.warning("Run %s: %s", record.run_id, warning)
            record.persistence_warning = warning

    def purge(self, run_id: str, codec: DataFlowCodec) -> None:
        """Forget a finished run and drop its references to spilled blobs."""
        with self._lock:
            record = self._records.pop(run_id, None)
        if record is None:
            raise UnknownRunError(f"Unknown run '{run_id}'")
        for node in record.nodes.values():
            for wire in [*node.inputs.values(), *node.outputs.values()]:
                codec.release(wire)
        codec.blob_store.collect_garbage()
