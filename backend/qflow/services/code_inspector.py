"""
Static inspection of node scripts.

Parses the script with `ast` (never executes it) and reports syntax errors,
the top-level functions it defines, whether the entry function exists, and
input/output type suggestions taken from annotations.
"""

from __future__ import annotations

import ast
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from qflow.services.type_registry import TypeRegistry


# Annotation name -> registered type id
_ANNOTATION_TYPES = {
    "str": "string",
    "int": "integer",
    "float": "float",
    "bool": "boolean",
    "bytes": "bytes",
    "list": "list",
    "List": "list",
    "tuple": "tuple",
    "Tuple": "tuple",
    "set": "set",
    "Set": "set",
    "frozenset": "set",
    "dict": "dict",
    "Dict": "dict",
    "Any": "any",
    "object": "object",
    "DataFrame": "dataframe",
    "array": "array",
    "None": "null",
}


class SuggestedTypes(BaseModel):
    input: dict[str, str] = Field(default_factory=dict)
    output: str | None = None


class CodeInspection(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)
    suggested_types: SuggestedTypes = Field(default_factory=SuggestedTypes)


def _annotation_type(node: ast.expr | None, type_registry: "TypeRegistry | None") -> str | None:
    if node is None:
        return None
    if isinstance(node, ast.Constant) and node.value is None:
        name = "None"
    elif isinstance(node, ast.Constant) and isinstance(node.value, str):
        name = node.value
    elif isinstance(node, ast.Name):
        name = node.id
    elif isinstance(node, ast.Attribute):
        name = node.attr
    elif isinstance(node, ast.Subscript):
        return _annotation_type(node.value, type_registry)
    else:
        return None

    type_id = _ANNOTATION_TYPES.get(name)
    if type_id is None and type_registry is not None and name in type_registry:
        type_id = name
    return type_id


def _imported_modules(tree: ast.Module) -> set[str]:
    modules: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            modules.update(alias.name.split(".")[0] for alias in node.names)
        elif isinstance(node, ast.ImportFrom) and node.module and node.level == 0:
            modules.add(node.module.split(".")[0])
    return modules


def inspect_code(
    code: str,
    entry_function: str | None = None,
    *,
    input_ports: list[str] | None = None,
    blocked_imports: list[str] | None = None,
    type_registry: "TypeRegistry | None" = None,
) -> CodeInspection:
    try:
        tree = ast.parse(code)
    except SyntaxError as e:
        return CodeInspection(
            valid=False,
            errors=[f"SyntaxError: {e.msg} (line {e.lineno}, column {e.offset})"],
        )

    errors: list[str] = []
    warnings: list[str] = []
    functions: dict[str, ast.FunctionDef | ast.AsyncFunctionDef] = {}
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            functions[node.name] = node

    for module in sorted(_imported_modules(tree) & set(blocked_imports or [])):
        warnings.append(f"Import of '{module}' is blocked inside sandboxes")

    suggested = SuggestedTypes()
    if entry_function is not None:
        fn = functions.get(entry_function)
        if fn is None:
            errors.append(f"Entry function '{entry_function}' is not defined at module level")
        else:
            if isinstance(fn, ast.AsyncFunctionDef):
                warnings.append(f"Entry function '{entry_function}' is async; it will be run with asyncio.run")

            params = fn.args.posonlyargs + fn.args.args + fn.args.kwonlyargs
            param_names = [p.arg for p in params]
            for param in params:
                type_id = _annotation_type(param.annotation, type_registry)
                if type_id:
                    suggested.input[param.arg] = type_id
            suggested.output = _annotation_type(fn.returns, type_registry)

            if input_ports is not None and fn.args.kwarg is None:
                missing = [p for p in input_ports if p not in param_names]
                if missing:
                    errors.append(
                        f"Entry function '{entry_function}' does not accept input ports: {', '.join(missing)}"
                    )

    return CodeInspection(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        functions=list(functions),
        suggested_types=suggested,
    )
