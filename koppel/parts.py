"""
Provider-agnostic conversation content.

A message is a role plus an ordered list of parts. Parts form a closed set of
variants, each serialized with an explicit ``type`` tag.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Union

from .errors import MalformedMessageError, UnknownPartTypeError


Role = Literal["system", "user", "assistant", "model", "tool"]
ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "model", "tool"})


@dataclass(frozen=True, slots=True)
class TextPart:
    text: str


@dataclass(frozen=True, slots=True)
class BlobPart:
    mime_type: str
    data: bytes = b""

    def __post_init__(self) -> None:
        if not self.mime_type:
            raise ValueError("BlobPart requires a mime_type")


@dataclass(frozen=True, slots=True)
class ThoughtPart:
    """Private reasoning text. Never counted as response text."""

    text: str


@dataclass(frozen=True, slots=True)
class ToolCallPart:
    id: str
    name: str
    arguments: str = ""


@dataclass(frozen=True, slots=True)
class ToolResultPart:
    id: str
    name: str
    content: str = ""


Part = Union[TextPart, BlobPart, ThoughtPart, ToolCallPart, ToolResultPart]
PART_TYPES = (TextPart, BlobPart, ThoughtPart, ToolCallPart, ToolResultPart)


def part_to_dict(part: Part) -> Dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, BlobPart):
        return {
            "type": "blob",
            "mime_type": part.mime_type,
            "data": base64.b64encode(part.data).decode("ascii"),
        }
    if isinstance(part, ThoughtPart):
        return {"type": "thought", "thought": part.text}
    if isinstance(part, ToolCallPart):
        return {
            "type": "tool_call",
            "id": part.id,
            "name": part.name,
            "arguments": part.arguments,
        }
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "id": part.id,
            "name": part.name,
            "content": part.content,
        }
    raise TypeError(f"Expected a Part, got {type(part).__name__}")


def part_from_dict(data: Any) -> Part:
    if not isinstance(data, dict):
        raise MalformedMessageError(f"part must be an object, got {type(data).__name__}")

    part_type = data.get("type")
    if part_type == "text":
        return TextPart(text=_str_field(data, "text"))
    if part_type == "blob":
        mime_type = _str_field(data, "mime_type")
        if not mime_type:
            raise MalformedMessageError("blob part is missing mime_type")
        try:
            raw = base64.b64decode(_str_field(data, "data"), validate=True)
        except binascii.Error as exc:
            raise MalformedMessageError(f"blob part has invalid base64 data: {exc}") from exc
        return BlobPart(mime_type=mime_type, data=raw)
    if part_type == "thought":
        return ThoughtPart(text=_str_field(data, "thought"))
    if part_type == "tool_call":
        return ToolCallPart(
            id=_str_field(data, "id"),
            name=_str_field(data, "name"),
            arguments=_str_field(data, "arguments"),
        )
    if part_type == "tool_result":
        content = data.get("content")
        if content is None:
            content = ""
        elif not isinstance(content, str):
            # Structured results are stored as their JSON text.
            content = json.dumps(content)
        return ToolResultPart(
            id=_str_field(data, "id"),
            name=_str_field(data, "name"),
            content=content,
        )
    raise UnknownPartTypeError(part_type)


def _str_field(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MalformedMessageError(
            f"{data.get('type')} part field {key!r} must be a string, got {type(value).__name__}"
        )
    return value


@dataclass(slots=True)
class Message:
    role: Role
    parts: List[Part] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise MalformedMessageError(f"unknown message role: {self.role!r}")

    def append(self, part: Part) -> None:
        self.parts.append(part)

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "parts": [part_to_dict(part) for part in self.parts],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Message":
        if not isinstance(data, dict):
            raise MalformedMessageError(
                f"message must be an object, got {type(data).__name__}"
            )
        role = data.get("role")
        if not isinstance(role, str):
            raise MalformedMessageError("message is missing a role")
        raw_parts = data.get("parts") or []
        if not isinstance(raw_parts, list):
            raise MalformedMessageError("message parts must be a list")
        return cls(role=role, parts=[part_from_dict(p) for p in raw_parts])  # type: ignore[arg-type]
