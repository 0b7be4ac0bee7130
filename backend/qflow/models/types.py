"""
Data type models.

Types are immutable once registered. Compatibility is declared on the
producer's side: `compatible_with` lists the input types a value of this type
may flow into, one hop only.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field


UNIVERSAL_TYPE = "any"


class TypeCategory(str, Enum):
    SCALAR = "scalar"
    COLLECTION = "collection"
    OPAQUE = "opaque"
    UNIVERSAL = "universal"


class DataType(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    category: TypeCategory
    compatible_with: frozenset[str] = Field(default_factory=frozenset)
    # Qualified names ("builtins.list", "array.array") used for runtime inference
    python_types: tuple[str, ...] = ()
    description: str | None = None
    is_builtin: bool = False

    @property
    def is_universal(self) -> bool:
        return self.category == TypeCategory.UNIVERSAL


class ConversionOperator(BaseModel):
    """A named, explicit one-step conversion between two types."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    source_type: str
    target_type: str
    fn: Callable[[Any], Any] = Field(exclude=True)
    description: str | None = None

    def apply(self, value: Any) -> Any:
        return self.fn(value)


class CompatibilityCheck(BaseModel):
    source: str
    target: str
    compatible: bool
    conversion_required: bool
    conversion_method: str | None = None
