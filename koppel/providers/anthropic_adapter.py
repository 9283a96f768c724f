"""
Adapter for the Anthropic Messages API.

Translation policy:

* ``system`` messages go to the top-level ``system`` parameter as text
  blocks; a non-text part in a system message is a ``TranslationError``.
* ``user`` and ``tool`` turns become ``user`` messages, ``assistant`` and
  ``model`` turns become ``assistant`` messages.
* ``ThoughtPart`` is dropped: Anthropic only accepts thinking blocks with the
  signature it issued, which a ThoughtPart does not carry.
* Empty text parts are skipped, and a turn left without blocks is omitted.
* ``BlobPart`` must be ``image/*`` or ``application/pdf``; both are sent as
  base64 sources.
* Named context caches do not exist here; ``Options.cache_name`` is rejected.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from anthropic import APIError, AsyncAnthropic

from ..errors import TranslationError
from ..options import Options
from ..parts import (
    BlobPart,
    Message,
    Part,
    TextPart,
    ThoughtPart,
    ToolCallPart,
    ToolResultPart,
)
from .base import (
    BaseProviderAdapter,
    IteratorStream,
    ProviderRequest,
    ProviderResponse,
    Response,
    StreamResponse,
    normalize_role,
    parse_tool_arguments,
    split_system,
    system_text_blocks,
)

DEFAULT_MAX_TOKENS = 4096

ROLE_MAP: Dict[str, str] = {
    "user": "user",
    "tool": "user",
    "assistant": "assistant",
}


class AnthropicProvider(BaseProviderAdapter):
    """Provider backed by ``anthropic.AsyncAnthropic``."""

    transport_errors = (APIError,)

    def __init__(
        self,
        client: Any,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        thinking_budget: Optional[int] = None,
        provider_id: str = "anthropic",
    ) -> None:
        self.client = client
        self.max_tokens = max_tokens
        self.thinking_budget = thinking_budget
        self.provider_id = provider_id

    @classmethod
    def from_settings(cls, settings: Any) -> "AnthropicProvider":
        client = AsyncAnthropic(api_key=settings.anthropic_api_key, max_retries=4)
        return cls(
            client,
            max_tokens=settings.max_tokens,
            thinking_budget=settings.thinking_budget,
        )

    def prepare_request(
        self,
        model: str,
        history: Sequence[Message],
        options: Options,
    ) -> ProviderRequest:
        if options.cache_name:
            raise TranslationError("Anthropic does not support named context caches")

        system_messages, turns = split_system(history)
        request_kwargs: Dict[str, Any] = {
            "model": model,
            "messages": _messages_to_params(turns),
            "max_tokens": self.max_tokens,
        }

        system_blocks = [
            {"type": "text", "text": text}
            for text in system_text_blocks(system_messages)
            if text
        ]
        if system_blocks:
            request_kwargs["system"] = system_blocks

        if options.tools:
            request_kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.input_schema or {"type": "object", "properties": {}},
                }
                for tool in options.tools
            ]

        if self.thinking_budget:
            request_kwargs["thinking"] = {
                "type": "enabled",
                "budget_tokens": self.thinking_budget,
            }

        return request_kwargs

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        return await self.client.messages.create(**request)

    def parse_response(self, response: ProviderResponse) -> Response:
        parts: List[Part] = []
        for block in response.content:
            block_type = getattr(block, "type", None)
            if block_type == "text":
                parts.append(TextPart(block.text))
            elif block_type == "thinking":
                parts.append(ThoughtPart(block.thinking))
            elif block_type == "tool_use":
                parts.append(
                    ToolCallPart(
                        id=block.id,
                        name=block.name,
                        arguments=json.dumps(block.input or {}),
                    )
                )
        return Response(
            parts=parts,
            finish_reason=getattr(response, "stop_reason", None),
            usage=_usage(getattr(response, "usage", None)),
            raw=response,
        )

    async def invoke_stream(self, request: ProviderRequest) -> StreamResponse:
        stream = await self.client.messages.create(**request, stream=True)
        return IteratorStream(
            stream.__aiter__(),
            _StreamEventConverter(),
            closer=stream.close,
            error_types=self.transport_errors,
        )


class _StreamEventConverter:
    """Turns raw stream events into deltas.

    Tool input arrives as JSON fragments addressed by block index, so the id
    and name announced by ``content_block_start`` are remembered per index.
    """

    def __init__(self) -> None:
        self._tool_blocks: Dict[int, Tuple[str, str]] = {}

    def __call__(self, event: Any) -> Optional[Response]:
        event_type = getattr(event, "type", None)

        if event_type == "content_block_start":
            block = event.content_block
            if getattr(block, "type", None) != "tool_use":
                return None
            self._tool_blocks[event.index] = (block.id, block.name)
            arguments = json.dumps(block.input) if block.input else ""
            return Response(
                parts=[ToolCallPart(id=block.id, name=block.name, arguments=arguments)],
                raw=event,
            )

        if event_type == "content_block_delta":
            delta = event.delta
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                return Response(parts=[TextPart(delta.text)], raw=event)
            if delta_type == "thinking_delta":
                return Response(parts=[ThoughtPart(delta.thinking)], raw=event)
            if delta_type == "input_json_delta":
                call_id, name = self._tool_blocks.get(event.index, ("", ""))
                return Response(
                    parts=[ToolCallPart(id=call_id, name=name, arguments=delta.partial_json)],
                    raw=event,
                )
            return None

        if event_type == "message_delta":
            return Response(
                finish_reason=getattr(event.delta, "stop_reason", None),
                usage=_usage(getattr(event, "usage", None)),
                raw=event,
            )

        return None


def _messages_to_params(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    params: List[Dict[str, Any]] = []
    for message in messages:
        role = ROLE_MAP[normalize_role(message.role)]
        content = []
        for part in message.parts:
            block = _part_to_block(part)
            if block is not None:
                content.append(block)
        if content:
            params.append({"role": role, "content": content})
    return params


def _part_to_block(part: Part) -> Optional[Dict[str, Any]]:
    if isinstance(part, TextPart):
        if not part.text:
            return None
        return {"type": "text", "text": part.text}
    if isinstance(part, BlobPart):
        return _blob_to_block(part)
    if isinstance(part, ThoughtPart):
        return None
    if isinstance(part, ToolCallPart):
        return {
            "type": "tool_use",
            "id": part.id,
            "name": part.name,
            "input": parse_tool_arguments(part),
        }
    if isinstance(part, ToolResultPart):
        return {
            "type": "tool_result",
            "tool_use_id": part.id,
            "content": part.content,
        }
    raise TranslationError(f"unsupported part {type(part).__name__}")


def _blob_to_block(part: BlobPart) -> Dict[str, Any]:
    source = {
        "type": "base64",
        "media_type": part.mime_type,
        "data": base64.b64encode(part.data).decode("ascii"),
    }
    if part.mime_type.startswith("image/"):
        return {"type": "image", "source": source}
    if part.mime_type == "application/pdf":
        return {"type": "document", "source": source}
    raise TranslationError(f"Anthropic cannot accept blobs of type {part.mime_type!r}")


def _usage(usage: Any) -> Dict[str, int]:
    if usage is None:
        return {}
    counts: Dict[str, int] = {}
    for key in ("input_tokens", "output_tokens"):
        value = getattr(usage, key, None)
        if isinstance(value, int):
            counts[key] = value
    return counts
