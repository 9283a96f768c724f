from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import MalformedMessageError
from .tool import Definition


@dataclass(frozen=True, slots=True)
class Options:
    """Per-call generation options."""

    cache_name: Optional[str] = None
    tools: Tuple[Definition, ...] = field(default_factory=tuple)

    def __init__(
        self,
        cache_name: Optional[str] = None,
        tools: Sequence[Definition] = (),
    ) -> None:
        object.__setattr__(self, "cache_name", cache_name or None)
        object.__setattr__(self, "tools", tuple(tools))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.cache_name:
            data["cache_name"] = self.cache_name
        if self.tools:
            data["tools"] = [tool.to_dict() for tool in self.tools]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Options":
        if not isinstance(data, dict):
            raise MalformedMessageError("options must be an object")
        tools = data.get("tools") or []
        if not isinstance(tools, list):
            raise MalformedMessageError("options tools must be a list")
        return cls(
            cache_name=data.get("cache_name"),
            tools=[Definition.from_dict(tool) for tool in tools],
        )


@dataclass(frozen=True, slots=True)
class ContextCache:
    """Handle to a vendor-side cached conversation prefix."""

    name: str
    model: str
    display_name: str = ""
    expire_time: Optional[datetime] = None
