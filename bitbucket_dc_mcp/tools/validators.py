"""Type and enum checks for call_id parameters, driven by each operation's OpenAPI schema."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from bitbucket_dc_mcp.data.operations import Operation

_SCALAR_TYPES = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "object": dict[str, Any],
}


class _ParameterBase(BaseModel):
    # Query strings arrive as text and ids as numbers; both are accepted as long
    # as they convert cleanly.
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


def schema_type(schema: Optional[dict[str, Any]]) -> Any:
    """Map an OpenAPI parameter schema onto a Python annotation."""
    if not schema:
        return Any
    enum = schema.get("enum")
    if enum:
        return Literal[tuple(enum)]
    if schema.get("type") == "array":
        return list[schema_type(schema.get("items"))]
    return _SCALAR_TYPES.get(schema.get("type"), Any)


def parameter_model(operation: Operation) -> type[BaseModel]:
    """Build a pydantic model covering the operation's path and query parameters.

    Fields are aliased to the parameter names, so names that are not Python
    identifiers (``filter-text``) still validate. Presence of required
    parameters is checked separately; here every field may be omitted.
    """
    fields: dict[str, Any] = {}
    for i, param in enumerate(operation.parameters):
        if param.get("in") not in ("path", "query"):
            continue
        annotation = Optional[schema_type(param.get("schema"))]
        fields[f"p{i}"] = (annotation, Field(default=None, alias=param["name"]))
    return create_model(f"{operation.operation_id}Parameters", __base__=_ParameterBase, **fields)


def type_errors(operation: Operation, params: dict[str, Any]) -> list[dict[str, str]]:
    """Return one {field, message} entry per value that does not match its schema."""
    model = parameter_model(operation)
    try:
        model.model_validate(params)
    except ValidationError as e:
        return [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": error["msg"],
            }
            for error in e.errors()
        ]
    return []
