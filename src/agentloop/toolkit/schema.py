"""Compile JSON Schema tool input definitions into Pydantic models.

Tools describe their input with the JSON Schema subset that model
providers accept for function calling. Validation is delegated to Pydantic
by building an equivalent model once per descriptor:

- ``object`` with ``properties`` / ``required`` / ``additionalProperties``
- ``string``, ``integer``, ``number``, ``boolean``, ``null`` (strict, no coercion)
- ``array`` with ``items``
- ``enum`` (any JSON scalar values)
- ``type`` given as a list (union)
- ``default``

Property names are carried as aliases, so names such as ``schema`` or
``copy`` never collide with BaseModel attributes.
"""

from __future__ import annotations

import re
from typing import Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    create_model,
)

from agentloop.exceptions import RegistryError

_SCALARS: dict[str, Any] = {
    "string": StrictStr,
    "integer": StrictInt,
    "number": Union[StrictInt, StrictFloat],
    "boolean": StrictBool,
    "null": type(None),
}

_NAME_RE = re.compile(r"[^0-9a-zA-Z_]")

# Marks fields whose schema declares a default, so dumps keep them when unset.
_DECLARED_DEFAULT = "x-declared-default"


def _model_name(path: str) -> str:
    return _NAME_RE.sub("_", path) or "ToolInput"


def _field_type(schema: dict, path: str) -> Any:
    if "enum" in schema:
        values = tuple(schema["enum"])
        if not values:
            raise RegistryError(f"{path}: enum must not be empty")
        return Literal[values]  # type: ignore[valid-type]

    declared = schema.get("type")
    if isinstance(declared, list):
        members = tuple(_field_type({**schema, "type": t}, path) for t in declared)
        return Union[members]  # type: ignore[valid-type]

    if declared == "object":
        if schema.get("properties"):
            return model_from_schema(path, schema)
        return dict[str, Any]
    if declared == "array":
        items = schema.get("items")
        if isinstance(items, dict) and items:
            return list[_field_type(items, f"{path}_item")]  # type: ignore[misc]
        return list[Any]
    if declared is None:
        return Any
    try:
        return _SCALARS[declared]
    except KeyError:
        raise RegistryError(f"{path}: unsupported schema type {declared!r}") from None


def model_from_schema(name: str, schema: dict) -> type[BaseModel]:
    """Build a Pydantic model validating instances of an object schema.

    Args:
        name: Base name for the generated model (used in error messages).
        schema: JSON Schema dict describing an object.

    Returns:
        A BaseModel subclass. Validate with ``model_validate(data)`` and
        dump with :func:`dump_input`.

    Raises:
        RegistryError: If the schema uses an unsupported construct.
    """
    if not isinstance(schema, dict):
        raise RegistryError(f"{name}: input schema must be a dict")
    declared = schema.get("type", "object")
    if declared != "object":
        raise RegistryError(f"{name}: top-level input schema must be an object")

    properties: dict[str, dict] = schema.get("properties") or {}
    required = set(schema.get("required") or ())
    missing = required - properties.keys()
    if missing:
        raise RegistryError(f"{name}: required properties not declared: {sorted(missing)}")

    additional = schema.get("additionalProperties", True)
    if additional is False:
        extra = "forbid"
    elif properties:
        extra = "ignore"
    else:
        # Free-form object: pass every key through.
        extra = "allow"

    fields: dict[str, Any] = {}
    for index, (prop, prop_schema) in enumerate(properties.items()):
        prop_schema = prop_schema or {}
        annotation = _field_type(prop_schema, f"{name}_{prop}")
        if prop in required:
            fields[f"f{index}"] = (annotation, Field(alias=prop))
        elif "default" in prop_schema:
            fields[f"f{index}"] = (
                annotation,
                Field(
                    default=prop_schema["default"],
                    alias=prop,
                    json_schema_extra={_DECLARED_DEFAULT: True},
                ),
            )
        else:
            # Absent means absent; null only validates if the type allows it.
            fields[f"f{index}"] = (annotation, Field(default=None, alias=prop))

    return create_model(  # type: ignore[call-overload]
        _model_name(name),
        __config__=ConfigDict(extra=extra, populate_by_name=False),
        **fields,
    )


def dump_input(instance: BaseModel) -> dict[str, Any]:
    """Dump a validated instance back to plain arguments keyed by property name.

    Properties the caller supplied are kept, as are absent properties whose
    schema declares a ``default``. Other absent properties stay absent, so
    handlers see their own keyword defaults.
    """
    data: dict[str, Any] = {}
    for attr, info in type(instance).model_fields.items():
        if attr not in instance.model_fields_set and not _declares_default(info):
            continue
        data[info.alias or attr] = _dump_value(getattr(instance, attr))
    if instance.model_extra:
        data.update(instance.model_extra)
    return data


def _declares_default(info: Any) -> bool:
    extra = info.json_schema_extra
    return isinstance(extra, dict) and bool(extra.get(_DECLARED_DEFAULT))


def _dump_value(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return dump_input(value)
    if isinstance(value, list):
        return [_dump_value(item) for item in value]
    return value
