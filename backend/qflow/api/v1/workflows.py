"""
Workflow run API endpoints.

Runs are submitted with the full workflow graph; validation problems come back
as a single 422 listing every issue. Progress can be polled
(GET /runs/{run_id}) or streamed as server-sent events.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from qflow.api.dependencies import get_engine
from qflow.engine import Engine
from qflow.errors import UnknownRunError, WorkflowValidationError
from qflow.models.blueprint import WorkflowGraph
from qflow.services.blueprint_compiler import compile_workflow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])


class RunRequest(BaseModel):
    """Submit a workflow graph for execution."""
    graph: WorkflowGraph
    initial_inputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class RunSubmitted(BaseModel):
    run_id: str
    status: str


class ValidationResponse(BaseModel):
    valid: bool
    issues: List[Dict[str, Any]]
    execution_order: List[str] = Field(default_factory=list)


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
    status: str


def _run_or_404(engine: Engine, run_id: str):
    try:
        return engine.get_run_status(run_id)
    except UnknownRunError:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/validate", response_model=ValidationResponse)
async def validate_workflow(
    request: RunRequest,
    engine: Engine = Depends(get_engine),
):
    """
    Validate a workflow graph without running it.
    Returns every issue found, or the execution order when valid.
    """
    result = compile_workflow(
        request.graph,
        engine.node_registry,
        engine.type_registry,
        request.initial_inputs,
    )
    order: List[str] = []
    if result.success:
        nodes = result.blueprint.nodes
        order = [nodes[i].instance_id for i in result.blueprint.execution_order]
    return ValidationResponse(
        valid=result.success,
        issues=[issue.model_dump() for issue in result.issues],
        execution_order=order,
    )


@router.post("/runs", response_model=RunSubmitted, status_code=status.HTTP_202_ACCEPTED)
async def submit_run(
    request: RunRequest,
    engine: Engine = Depends(get_engine),
):
    try:
        run_id = await engine.submit_run(request.graph, request.initial_inputs)
    except WorkflowValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Workflow validation failed",
                "run_id": e.run_id,
                "issues": [issue.model_dump() for issue in e.issues],
            },
        )
    record = engine.get_run_status(run_id)
    return RunSubmitted(run_id=run_id, status=record.status.value)


@router.get("/runs")
async def list_runs(
    workflow_id: Optional[str] = None,
    engine: Engine = Depends(get_engine),
):
    return [record.summary() for record in engine.run_store.list(workflow_id)]


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    engine: Engine = Depends(get_engine),
):
    record = _run_or_404(engine, run_id)
    return record.model_dump(mode="json")


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(
    run_id: str,
    engine: Engine = Depends(get_engine),
):
    try:
        cancelled = engine.cancel_run(run_id)
    except UnknownRunError:
        raise HTTPException(status_code=404, detail="Run not found")
    record = engine.get_run_status(run_id)
    return CancelResponse(run_id=run_id, cancelled=cancelled, status=record.status.value)


@router.get("/runs/{run_id}/events")
async def stream_run_events(
    run_id: str,
    engine: Engine = Depends(get_engine),
):
    """
    Stream run events as SSE. Events already emitted are replayed first.

    Each message is `data: {json}` with an `event` field: run_started,
    started, retrying, succeeded, failed, skipped, cancelled, run_completed.
    """
    _run_or_404(engine, run_id)

    async def event_source():
        async for event in engine.events(run_id):
            yield event.to_sse()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
