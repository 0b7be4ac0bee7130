"""
Type Registry & Compatibility Resolver.

Source of truth for which data types exist and which output type may feed
which input type. Every lookup is a pure read over immutable DataType
entries; only registration takes the lock.

Compatibility rules:
- same type: compatible
- either side is the universal type ("any"): compatible
- input type listed in the output type's `compatible_with`: compatible
- nothing else. There is no transitive closure, so list -> tuple and
  tuple -> array does NOT make list -> array compatible unless declared.
"""

from __future__ import annotations

import array
import logging
import threading
from typing import Any, Iterable

from qflow.errors import DuplicateTypeError, UnknownTypeError
from qflow.models.types import (
    UNIVERSAL_TYPE,
    CompatibilityCheck,
    ConversionOperator,
    DataType,
    TypeCategory,
)

logger = logging.getLogger(__name__)


def _qualname(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


class TypeRegistry:
    def __init__(self, types: Iterable[DataType] = ()):
        self._types: dict[str, DataType] = {}
        self._conversions: dict[tuple[str, str], ConversionOperator] = {}
        self._python_index: dict[str, str] = {}
        self._lock = threading.Lock()
        for data_type in types:
            self.register(data_type)

    @classmethod
    def with_builtins(cls) -> "TypeRegistry":
        registry = cls(BUILTIN_TYPES)
        for operator in BUILTIN_CONVERSIONS:
            registry.register_conversion(operator)
        return registry

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, data_type: DataType) -> DataType:
        with self._lock:
            if data_type.id in self._types:
                raise DuplicateTypeError(f"Type '{data_type.id}' is already registered")
            self._types[data_type.id] = data_type
            for py_name in data_type.python_types:
                self._python_index.setdefault(py_name, data_type.id)
        logger.debug("Registered type %s (%s)", data_type.id, data_type.category.value)
        return data_type

    def register_conversion(self, operator: ConversionOperator) -> ConversionOperator:
        self.get(operator.source_type)
        self.get(operator.target_type)
        key = (operator.source_type, operator.target_type)
        with self._lock:
            if key in self._conversions:
                raise DuplicateTypeError(
                    f"Conversion {operator.source_type} -> {operator.target_type} already registered"
                )
            self._conversions[key] = operator
        return operator

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, type_id: str) -> DataType:
        data_type = self._types.get(type_id)
        if data_type is None:
            raise UnknownTypeError(f"Unknown type '{type_id}'")
        return data_type

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._types

    def all(self) -> list[DataType]:
        return sorted(self._types.values(), key=lambda t: t.id)

    def is_compatible(self, output_type: str, input_type: str) -> bool:
        source = self.get(output_type)
        target = self.get(input_type)
        if source.id == target.id:
            return True
        if source.is_universal or target.is_universal:
            return True
        return target.id in source.compatible_with

    def compatible_targets(self, output_type: str) -> set[DataType]:
        source = self.get(output_type)
        if source.is_universal:
            return set(self._types.values())
        targets = {source}
        for data_type in self._types.values():
            if data_type.is_universal or data_type.id in source.compatible_with:
                targets.add(data_type)
        return targets

    def suggest_conversion(self, output_type: str, input_type: str) -> ConversionOperator | None:
        self.get(output_type)
        self.get(input_type)
        return self._conversions.get((output_type, input_type))

    def conversions(self) -> list[ConversionOperator]:
        return list(self._conversions.values())

    def check(self, output_type: str, input_type: str) -> CompatibilityCheck:
        compatible = self.is_compatible(output_type, input_type)
        operator = None if compatible else self.suggest_conversion(output_type, input_type)
        return CompatibilityCheck(
            source=output_type,
            target=input_type,
            compatible=compatible,
            conversion_required=operator is not None,
            conversion_method=operator.name if operator else None,
        )

    def compatibility_matrix(self) -> list[CompatibilityCheck]:
        ids = [t.id for t in self.all()]
        return [self.check(src, tgt) for src in ids for tgt in ids if src != tgt]

    # ------------------------------------------------------------------
    # Runtime inference
    # ------------------------------------------------------------------

    def infer_type(self, value: Any) -> str | None:
        """Return the registered type id for a Python value, most specific class first."""
        for cls in type(value).__mro__:
            type_id = self._python_index.get(_qualname(cls))
            if type_id is not None:
                return type_id
        return None

    def value_matches(self, value: Any, type_id: str) -> bool:
        declared = self.get(type_id)
        if declared.is_universal:
            return True
        if declared.category == TypeCategory.OPAQUE and not declared.python_types:
            return True
        inferred = self.infer_type(value)
        if inferred is None:
            return False
        return self.is_compatible(inferred, type_id)


# ---------------------------------------------------------------------------
# Built-in types and conversions
# ---------------------------------------------------------------------------


def _builtin(
    type_id: str,
    category: TypeCategory,
    python_types: tuple[str, ...] = (),
    compatible_with: Iterable[str] = (),
    description: str | None = None,
) -> DataType:
    return DataType(
        id=type_id,
        category=category,
        python_types=python_types,
        compatible_with=frozenset(compatible_with),
        description=description,
        is_builtin=True,
    )


BUILTIN_TYPES: list[DataType] = [
    _builtin(UNIVERSAL_TYPE, TypeCategory.UNIVERSAL, description="Accepts and feeds every type"),
    _builtin("string", TypeCategory.SCALAR, ("builtins.str",), description="Python string type"),
    _builtin("integer", TypeCategory.SCALAR, ("builtins.int",), ("float", "string"),
             description="Python integer type"),
    _builtin("float", TypeCategory.SCALAR, ("builtins.float",), ("string",),
             description="Python float type"),
    _builtin("boolean", TypeCategory.SCALAR, ("builtins.bool",), ("integer", "string"),
             description="Python bool type"),
    _builtin("bytes", TypeCategory.SCALAR, ("builtins.bytes", "builtins.bytearray"),
             description="Raw bytes"),
    _builtin("null", TypeCategory.SCALAR, ("builtins.NoneType",), description="None"),
    _builtin("list", TypeCategory.COLLECTION, ("builtins.list",), ("array", "tuple", UNIVERSAL_TYPE),
             description="Python list type"),
    _builtin("tuple", TypeCategory.COLLECTION, ("builtins.tuple",), ("list", "array"),
             description="Python tuple type"),
    _builtin("set", TypeCategory.COLLECTION, ("builtins.set", "builtins.frozenset"), ("list",),
             description="Python set type"),
    _builtin("array", TypeCategory.COLLECTION, ("array.array",), description="Homogeneous array"),
    _builtin("dict", TypeCategory.COLLECTION, ("builtins.dict",), ("object",),
             description="Python dictionary type"),
    _builtin("object", TypeCategory.OPAQUE, description="Arbitrary Python object"),
    _builtin("dataframe", TypeCategory.OPAQUE, ("pandas.core.frame.DataFrame",), ("object",),
             description="pandas DataFrame"),
]


def _split_lines(value: str) -> list[str]:
    return value.splitlines()


def _array_to_list(value: Any) -> list:
    if isinstance(value, array.array):
        return value.tolist()
    return list(value)


def _sorted_tuple(value: Any) -> tuple:
    try:
        return tuple(sorted(value))
    except TypeError:
        return tuple(sorted(value, key=repr))


BUILTIN_CONVERSIONS: list[ConversionOperator] = [
    ConversionOperator(name="parse_int", source_type="string", target_type="integer",
                       fn=lambda v: int(v.strip())),
    ConversionOperator(name="parse_float", source_type="string", target_type="float",
                       fn=lambda v: float(v.strip())),
    ConversionOperator(name="split_lines", source_type="string", target_type="list",
                       fn=_split_lines),
    ConversionOperator(name="truthiness", source_type="integer", target_type="boolean",
                       fn=bool),
    ConversionOperator(name="dict_items", source_type="dict", target_type="list",
                       fn=lambda v: [[k, val] for k, val in v.items()]),
    ConversionOperator(name="array_to_list", source_type="array", target_type="list",
                       fn=_array_to_list),
    ConversionOperator(name="to_set", source_type="list", target_type="set", fn=set),
    ConversionOperator(name="sorted_tuple", source_type="set", target_type="tuple",
                       fn=_sorted_tuple),
]
