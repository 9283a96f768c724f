"""
Tool definitions and JSON-Schema reflection from dataclasses.

Field options live in ``dataclasses.field(metadata=...)``:

* ``"json"``: property name override; ``"-"`` leaves the field out.
* ``"description"``: copied into the property schema.

A field is required unless its annotation is ``Optional[...]`` / ``X | None``.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Tuple, Union

from .errors import MalformedMessageError, UnsupportedTypeError


_SCALARS: Dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
}

_SEQUENCE_ORIGINS = (
    list,
    tuple,
    set,
    frozenset,
    collections.abc.Sequence,
    collections.abc.Iterable,
)


@dataclass(frozen=True, slots=True)
class Definition:
    name: str
    description: str
    input_schema: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dataclass(cls, name: str, description: str, input_type: Any) -> "Definition":
        return cls(
            name=name,
            description=description,
            input_schema=generate_schema(input_type),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Definition":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise MalformedMessageError("tool definition requires a name")
        schema = data.get("input_schema") or {}
        if not isinstance(schema, dict):
            raise MalformedMessageError("tool input_schema must be an object")
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            input_schema=schema,
        )


def generate_schema(input_type: Any) -> Dict[str, Any]:
    """Build an object schema for a dataclass type or instance."""
    cls = input_type if isinstance(input_type, type) else type(input_type)
    if not dataclasses.is_dataclass(cls):
        raise UnsupportedTypeError(
            f"generate_schema: expected a dataclass, got {cls.__name__}"
        )
    return _object_schema(cls)


def _object_schema(cls: type) -> Dict[str, Any]:
    try:
        hints = typing.get_type_hints(cls)
    except NameError as exc:
        raise UnsupportedTypeError(f"{cls.__name__}: unresolved annotation: {exc}") from exc

    properties: Dict[str, Any] = {}
    required: List[str] = []
    for f in dataclasses.fields(cls):
        name = f.metadata.get("json") or f.name
        if name == "-":
            continue
        annotation = hints.get(f.name, f.type)
        try:
            prop, is_required = _field_schema(annotation)
        except UnsupportedTypeError as exc:
            raise UnsupportedTypeError(f"{cls.__name__}.{f.name}: {exc}") from exc
        description = f.metadata.get("description")
        if description:
            prop["description"] = description
        properties[name] = prop
        if is_required:
            required.append(name)

    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _field_schema(annotation: Any) -> Tuple[Dict[str, Any], bool]:
    origin = typing.get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) != 1:
            raise UnsupportedTypeError(f"unsupported union type: {annotation!r}")
        optional = len(args) < len(typing.get_args(annotation))
        schema, _ = _field_schema(args[0])
        return schema, not optional
    return _type_schema(annotation), True


def _type_schema(annotation: Any) -> Dict[str, Any]:
    if annotation in _SCALARS:
        return {"type": _SCALARS[annotation]}

    origin = typing.get_origin(annotation)
    args = typing.get_args(annotation)

    if origin is Literal:
        if args and all(isinstance(a, str) for a in args):
            return {"type": "string", "enum": list(args)}
        raise UnsupportedTypeError(f"only string literals are supported: {annotation!r}")

    if origin in _SEQUENCE_ORIGINS:
        if origin is tuple:
            if len(args) != 2 or args[1] is not Ellipsis:
                raise UnsupportedTypeError(f"fixed-length tuples are not supported: {annotation!r}")
            args = args[:1]
        if len(args) != 1:
            raise UnsupportedTypeError(f"array type needs an item type: {annotation!r}")
        return {"type": "array", "items": _type_schema(args[0])}

    if origin in (dict, collections.abc.Mapping):
        if args and args[0] is not str:
            raise UnsupportedTypeError(f"object keys must be strings: {annotation!r}")
        return {"type": "object"}

    if isinstance(annotation, type) and dataclasses.is_dataclass(annotation):
        return _object_schema(annotation)

    raise UnsupportedTypeError(f"unsupported type: {annotation!r}")
