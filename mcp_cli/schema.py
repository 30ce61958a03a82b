"""
Mapping between MCP tool schemas, command parameters and call results.

    Operation.input_schema ──to_parameter_set──▶ ParameterSet
    raw CLI values ──parse_values──▶ arguments sent to the server
    CallResult ──normalize_result──▶ plain JSON-able output
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from mcp_cli.errors import ParameterError
from mcp_cli.types import CallResult, Operation, key_to_label

STRING = "string"
NUMBER = "number"
BOOLEAN = "boolean"
ARRAY = "array"

_JSON_TYPES = {
    "string": STRING,
    "number": NUMBER,
    "integer": NUMBER,
    "boolean": BOOLEAN,
    "array": ARRAY,
}

_TRUE_LITERALS = ("true", "1")


@dataclass
class Parameter:
    """One typed command parameter derived from a schema property."""
    name: str
    type: str = STRING
    label: str = ""
    description: str = ""
    required: bool = False
    default: Any = None
    has_default: bool = False
    choices: list[Any] | None = None
    minimum: float | None = None
    maximum: float | None = None
    integer: bool = False
    item_type: str | None = None
    order: int = 0


@dataclass
class ParameterSet:
    """Ordered parameters of one tool."""
    parameters: dict[str, Parameter] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Parameter]:
        return iter(self.parameters.values())

    def __len__(self) -> int:
        return len(self.parameters)

    def __contains__(self, name: object) -> bool:
        return name in self.parameters

    def __getitem__(self, name: str) -> Parameter:
        return self.parameters[name]

    def get(self, name: str) -> Parameter | None:
        return self.parameters.get(name)

    @property
    def required(self) -> list[str]:
        return [p.name for p in self if p.required]


def _schema_type(prop: Mapping[str, Any]) -> tuple[str, bool]:
    declared = prop.get("type")
    if isinstance(declared, list):
        declared = next((t for t in declared if t != "null"), None)
    return _JSON_TYPES.get(declared, STRING), declared == "integer"


def to_parameter(key: str, prop: Mapping[str, Any], is_required: bool, order: int) -> Parameter:
    """Convert a single JSON Schema property to a Parameter."""
    if not isinstance(prop, Mapping):
        prop = {}
    ptype, integer = _schema_type(prop)

    param = Parameter(
        name=key,
        type=ptype,
        label=key_to_label(key),
        description=prop.get("description") or f"The {key} parameter",
        required=is_required,
        integer=integer,
        order=order,
    )

    # A parameter with a default is never mandatory for the caller.
    if "default" in prop:
        param.default = prop["default"]
        param.has_default = True
        param.required = False

    enum = prop.get("enum")
    if isinstance(enum, list) and enum:
        param.choices = list(enum)

    if ptype == NUMBER:
        param.minimum = prop.get("minimum")
        param.maximum = prop.get("maximum")

    if ptype == ARRAY:
        items = prop.get("items")
        if isinstance(items, Mapping):
            param.item_type, _ = _schema_type(items)

    return param


def to_parameter_set(operation: Operation) -> ParameterSet:
    """Build the parameter set for a tool from its input schema."""
    schema = operation.input_schema
    if not isinstance(schema, Mapping):
        return ParameterSet()

    properties = schema.get("properties")
    if not isinstance(properties, Mapping):
        return ParameterSet()

    required = set(schema.get("required") or [])
    return ParameterSet({
        key: to_parameter(key, prop, key in required, order)
        for order, (key, prop) in enumerate(properties.items())
    })


def _to_number(name: str, value: Any, integer: bool) -> float | int:
    if isinstance(value, bool):
        raise ParameterError([f"{name}: expected a number, got {value!r}"])
    if isinstance(value, (int, float)):
        number = value
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            raise ParameterError([f"{name}: expected a number, got {value!r}"]) from None
    if integer and isinstance(number, float) and math.isfinite(number) and number.is_integer():
        return int(number)
    return number


def _to_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value) in _TRUE_LITERALS


def _to_array(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [part.strip() for part in str(value).split(",")]


def parse_values(values: Mapping[str, Any], parameters: ParameterSet) -> dict[str, Any]:
    """
    Coerce raw values to their parameter types.

    None values are dropped so they are never sent to the server as
    explicit nulls. Keys without a parameter pass through unchanged.
    """
    result: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue

        param = parameters.get(key)
        if param is None:
            result[key] = value
        elif param.type == NUMBER:
            result[key] = _to_number(key, value, param.integer)
        elif param.type == BOOLEAN:
            result[key] = _to_boolean(value)
        elif param.type == ARRAY:
            result[key] = _to_array(value)
        else:
            result[key] = value
    return result


def validate_values(values: Mapping[str, Any], parameters: ParameterSet) -> None:
    """Raise ParameterError listing every missing or out-of-range value."""
    problems = []
    for param in parameters:
        if param.name not in values:
            if param.required:
                problems.append(f"{param.name}: required parameter is missing")
            continue

        value = values[param.name]
        if param.choices is not None:
            candidates = value if param.type == ARRAY and isinstance(value, list) else [value]
            bad = [v for v in candidates if v not in param.choices]
            if bad:
                problems.append(
                    f"{param.name}: {bad[0]!r} is not one of {param.choices}"
                )
        if param.type == NUMBER and isinstance(value, (int, float)):
            if param.minimum is not None and value < param.minimum:
                problems.append(f"{param.name}: {value} is below the minimum {param.minimum}")
            if param.maximum is not None and value > param.maximum:
                problems.append(f"{param.name}: {value} is above the maximum {param.maximum}")

    if problems:
        raise ParameterError(problems)


def _parse_text(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (TypeError, ValueError):
        return False, text


def normalize_result(result: CallResult) -> Any:
    """
    Turn a call result into plain data.

    Structured content wins. A single text item is parsed as JSON, or
    wrapped as ``{"text": ...}`` when it is not JSON. Anything else
    becomes a list of tagged entries.
    """
    if result.structured_content is not None:
        return result.structured_content

    content = result.content
    if len(content) == 1 and content[0].type == "text" and content[0].text:
        parsed, value = _parse_text(content[0].text)
        return value if parsed else {"text": value}

    entries = []
    for item in content:
        if item.type == "text":
            _, value = _parse_text(item.text or "")
            entries.append({"type": "text", "content": value})
        else:
            entries.append(item.to_dict())
    return entries
