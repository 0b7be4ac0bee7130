"""
Node definition API endpoints.

Every edit creates a new immutable version; definitions referenced by a
registered workflow cannot be deleted.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel

from qflow.api.dependencies import get_engine
from qflow.engine import Engine
from qflow.errors import (
    DuplicateNodeError,
    NodeDefinitionError,
    NodeInUseError,
    UnknownNodeError,
)
from qflow.models.blueprint import Dependency, NodeDefinition, PortSchema
from qflow.services.code_inspector import CodeInspection, inspect_code

router = APIRouter(prefix="/nodes", tags=["nodes"])


class NodeUpdate(BaseModel):
    name: Optional[str] = None
    inputs: Optional[List[PortSchema]] = None
    outputs: Optional[List[PortSchema]] = None
    code: Optional[str] = None
    entry_function: Optional[str] = None
    runtime_version: Optional[str] = None
    dependencies: Optional[List[Dependency]] = None


class CodeValidationRequest(BaseModel):
    code: str
    entry_function: Optional[str] = "main"
    input_ports: Optional[List[str]] = None


def _definition_error(e: NodeDefinitionError) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"message": str(e), "errors": e.errors},
    )


@router.get("", response_model=List[NodeDefinition])
async def list_nodes(engine: Engine = Depends(get_engine)):
    return engine.node_registry.all()


@router.post("", response_model=NodeDefinition, status_code=status.HTTP_201_CREATED)
async def register_node(
    definition: NodeDefinition,
    engine: Engine = Depends(get_engine),
):
    try:
        return engine.node_registry.register(definition)
    except DuplicateNodeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NodeDefinitionError as e:
        raise _definition_error(e)


@router.post("/validate", response_model=CodeInspection)
async def validate_code(
    request: CodeValidationRequest,
    engine: Engine = Depends(get_engine),
):
    """Static check of a node script: syntax, functions, entry point, suggested types."""
    return inspect_code(
        request.code,
        request.entry_function,
        input_ports=request.input_ports,
        blocked_imports=engine.config.blocked_imports,
        type_registry=engine.type_registry,
    )


@router.get("/{node_id}", response_model=NodeDefinition)
async def get_node(
    node_id: str,
    version: Optional[int] = None,
    engine: Engine = Depends(get_engine),
):
    try:
        return engine.node_registry.get(node_id, version)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{node_id}", response_model=NodeDefinition)
async def edit_node(
    node_id: str,
    update: NodeUpdate,
    engine: Engine = Depends(get_engine),
):
    changes: Dict[str, Any] = update.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    try:
        return engine.node_registry.edit(node_id, **changes)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NodeDefinitionError as e:
        raise _definition_error(e)


@router.get("/{node_id}/versions", response_model=List[NodeDefinition])
async def list_node_versions(
    node_id: str,
    engine: Engine = Depends(get_engine),
):
    try:
        return engine.node_registry.versions(node_id)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{node_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(
    node_id: str,
    engine: Engine = Depends(get_engine),
):
    try:
        engine.node_registry.delete(node_id)
    except UnknownNodeError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NodeInUseError as e:
        raise HTTPException(
            status_code=409,
            detail={"message": str(e), "referenced_by": e.referenced_by},
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
