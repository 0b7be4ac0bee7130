"""
Type registry API endpoints.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from qflow.api.dependencies import get_engine
from qflow.engine import Engine
from qflow.errors import DuplicateTypeError, UnknownTypeError
from qflow.models.types import CompatibilityCheck, DataType, TypeCategory

router = APIRouter(prefix="/types", tags=["types"])


class TypeCreate(BaseModel):
    id: str = Field(..., min_length=1)
    category: TypeCategory
    compatible_with: List[str] = Field(default_factory=list)
    python_types: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class CompatibilityRequest(BaseModel):
    source_type: str
    target_type: str


class ConversionInfo(BaseModel):
    name: str
    source_type: str
    target_type: str
    description: Optional[str] = None


@router.get("", response_model=List[DataType])
async def list_types(engine: Engine = Depends(get_engine)):
    return engine.type_registry.all()


@router.post("", response_model=DataType, status_code=status.HTTP_201_CREATED)
async def register_type(
    request: TypeCreate,
    engine: Engine = Depends(get_engine),
):
    unknown = [t for t in request.compatible_with if t not in engine.type_registry]
    if unknown:
        raise HTTPException(
            status_code=422,
            detail=f"compatible_with references unknown types: {', '.join(unknown)}",
        )
    data_type = DataType(
        id=request.id,
        category=request.category,
        compatible_with=frozenset(request.compatible_with),
        python_types=tuple(request.python_types),
        description=request.description,
    )
    try:
        return engine.type_registry.register(data_type)
    except DuplicateTypeError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/compatibility", response_model=List[CompatibilityCheck])
async def compatibility_matrix(engine: Engine = Depends(get_engine)):
    return engine.type_registry.compatibility_matrix()


@router.post("/compatibility/check", response_model=CompatibilityCheck)
async def check_compatibility(
    request: CompatibilityRequest,
    engine: Engine = Depends(get_engine),
):
    try:
        return engine.type_registry.check(request.source_type, request.target_type)
    except UnknownTypeError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/conversions", response_model=List[ConversionInfo])
async def list_conversions(engine: Engine = Depends(get_engine)):
    return [
        ConversionInfo(
            name=op.name,
            source_type=op.source_type,
            target_type=op.target_type,
            description=op.description,
        )
        for op in engine.type_registry.conversions()
    ]


@router.get("/{type_id}", response_model=DataType)
async def get_type(type_id: str, engine: Engine = Depends(get_engine)):
    try:
        return engine.type_registry.get(type_id)
    except UnknownTypeError as e:
        raise HTTPException(status_code=404, detail=str(e))
