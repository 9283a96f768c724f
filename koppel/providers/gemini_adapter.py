"""
Adapter for Google Gemini through the ``google-genai`` SDK.

Translation policy:

* ``system`` messages go to ``system_instruction``; non-text system parts
  are rejected.
* ``user`` and ``tool`` turns become ``user`` contents, ``assistant`` and
  ``model`` turns become ``model`` contents.
* ``ThoughtPart`` is sent as a text part flagged ``thought=True``.
* Empty text and thought parts are skipped, and a turn left without parts
  is omitted.
* ``BlobPart`` is sent as native ``inline_data`` bytes.
* ``ToolResultPart`` content is parsed as a JSON object for
  ``function_response``; any other content is wrapped as ``{"result": ...}``.
* ``Options.cache_name`` becomes ``cached_content``.

Also implements the context cache capability over ``client.aio.caches``.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..errors import TranslationError
from ..log import get_logger
from ..options import ContextCache, Options
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
    ContextCacher,
    IteratorStream,
    ProviderRequest,
    ProviderResponse,
    Response,
    StreamResponse,
    new_call_id,
    normalize_role,
    parse_tool_arguments,
    split_system,
    system_text_blocks,
    to_transport_error,
)

logger = get_logger(__name__)

ROLE_MAP: Dict[str, str] = {
    "user": "user",
    "tool": "user",
    "assistant": "model",
}


class GeminiProvider(BaseProviderAdapter, ContextCacher):
    """Provider backed by ``google.genai.Client``."""

    transport_errors = (genai_errors.APIError,)

    def __init__(
        self,
        client: Any,
        *,
        max_tokens: Optional[int] = None,
        thinking_budget: Optional[int] = None,
        provider_id: str = "gemini",
    ) -> None:
        self.client = client
        self.max_tokens = max_tokens
        self.thinking_budget = thinking_budget
        self.provider_id = provider_id

    @classmethod
    def from_settings(cls, settings: Any) -> "GeminiProvider":
        client = genai.Client(api_key=settings.gemini_api_key)
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
        system_messages, turns = split_system(history)
        config = types.GenerateContentConfig()

        system_text = "\n\n".join(t for t in system_text_blocks(system_messages) if t)
        if system_text:
            config.system_instruction = system_text
        if options.cache_name:
            config.cached_content = options.cache_name
        if options.tools:
            config.tools = [
                types.Tool(
                    function_declarations=[
                        types.FunctionDeclaration(
                            name=tool.name,
                            description=tool.description,
                            parameters_json_schema=tool.input_schema or None,
                        )
                        for tool in options.tools
                    ]
                )
            ]
        if self.max_tokens:
            config.max_output_tokens = self.max_tokens
        if self.thinking_budget:
            config.thinking_config = types.ThinkingConfig(
                include_thoughts=True,
                thinking_budget=self.thinking_budget,
            )

        return {
            "model": model,
            "contents": to_genai_contents(turns),
            "config": config,
        }

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        return await self.client.aio.models.generate_content(**request)

    def parse_response(self, response: ProviderResponse) -> Response:
        candidates = response.candidates or []
        candidate = candidates[0] if candidates else None
        parts: List[Part] = []
        finish_reason = None
        if candidate is not None:
            if candidate.content is not None:
                parts = _from_genai_parts(candidate.content.parts or [])
            if candidate.finish_reason is not None:
                finish_reason = getattr(candidate.finish_reason, "value", str(candidate.finish_reason))
        return Response(
            parts=parts,
            finish_reason=finish_reason,
            usage=_usage(response.usage_metadata),
            raw=response,
        )

    async def invoke_stream(self, request: ProviderRequest) -> StreamResponse:
        chunks = await self.client.aio.models.generate_content_stream(**request)

        async def close() -> None:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

        return IteratorStream(
            chunks.__aiter__(),
            self.parse_response,
            closer=close,
            error_types=self.transport_errors,
        )

    async def create_cache(
        self,
        model: str,
        history: Sequence[Message],
        display_name: str = "",
        ttl: timedelta = timedelta(hours=1),
    ) -> ContextCache:
        system_messages, turns = split_system(history)
        config = types.CreateCachedContentConfig(
            contents=to_genai_contents(turns),
            ttl=f"{int(ttl.total_seconds())}s",
        )
        system_text = "\n\n".join(t for t in system_text_blocks(system_messages) if t)
        if system_text:
            config.system_instruction = system_text
        if display_name:
            config.display_name = display_name

        cached = await self._call(self.client.aio.caches.create(model=model, config=config))
        logger.debug("created context cache %s for %s", cached.name, model)
        return _to_context_cache(cached)

    async def get_cache(self, name: str) -> ContextCache:
        return _to_context_cache(await self._call(self.client.aio.caches.get(name=name)))

    async def delete_cache(self, name: str) -> None:
        await self._call(self.client.aio.caches.delete(name=name))
        logger.debug("deleted context cache %s", name)

    async def list_caches(self) -> List[ContextCache]:
        pager = await self._call(self.client.aio.caches.list())
        caches: List[ContextCache] = []
        try:
            async for cached in pager:
                caches.append(_to_context_cache(cached))
        except self.transport_errors as exc:
            raise to_transport_error(exc) from exc
        return caches

    async def _call(self, awaitable: Any) -> Any:
        try:
            return await awaitable
        except self.transport_errors as exc:
            raise to_transport_error(exc) from exc


def to_genai_contents(messages: Sequence[Message]) -> List[types.Content]:
    contents: List[types.Content] = []
    for message in messages:
        role = normalize_role(message.role)
        if role == "system":
            raise TranslationError("system messages must be passed as system_instruction")
        parts = [
            _to_genai_part(part)
            for part in message.parts
            if not (isinstance(part, (TextPart, ThoughtPart)) and not part.text)
        ]
        if parts:
            contents.append(types.Content(role=ROLE_MAP[role], parts=parts))
    return contents


def _to_genai_part(part: Part) -> types.Part:
    if isinstance(part, TextPart):
        return types.Part(text=part.text)
    if isinstance(part, BlobPart):
        return types.Part(inline_data=types.Blob(mime_type=part.mime_type, data=part.data))
    if isinstance(part, ThoughtPart):
        return types.Part(text=part.text, thought=True)
    if isinstance(part, ToolCallPart):
        return types.Part(
            function_call=types.FunctionCall(
                id=part.id or None,
                name=part.name,
                args=parse_tool_arguments(part),
            )
        )
    if isinstance(part, ToolResultPart):
        return types.Part(
            function_response=types.FunctionResponse(
                id=part.id or None,
                name=part.name,
                response=_tool_response(part.content),
            )
        )
    raise TranslationError(f"unsupported part {type(part).__name__}")


def _tool_response(content: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        return {"result": content}
    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}


def _from_genai_parts(genai_parts: Sequence[types.Part]) -> List[Part]:
    parts: List[Part] = []
    for part in genai_parts:
        if part.function_call is not None:
            call = part.function_call
            parts.append(
                ToolCallPart(
                    id=call.id or new_call_id(),
                    name=call.name or "",
                    arguments=json.dumps(call.args or {}),
                )
            )
        elif part.inline_data is not None:
            parts.append(
                BlobPart(
                    mime_type=part.inline_data.mime_type or "application/octet-stream",
                    data=part.inline_data.data or b"",
                )
            )
        elif part.text is not None:
            if part.thought:
                parts.append(ThoughtPart(part.text))
            elif part.text:
                parts.append(TextPart(part.text))
    return parts


def _to_context_cache(cached: Any) -> ContextCache:
    return ContextCache(
        name=cached.name or "",
        model=cached.model or "",
        display_name=cached.display_name or "",
        expire_time=cached.expire_time,
    )


def _usage(metadata: Any) -> Dict[str, int]:
    if metadata is None:
        return {}
    counts: Dict[str, int] = {}
    for key, attr in (
        ("input_tokens", "prompt_token_count"),
        ("output_tokens", "candidates_token_count"),
        ("thought_tokens", "thoughts_token_count"),
    ):
        value = getattr(metadata, attr, None)
        if isinstance(value, int):
            counts[key] = value
    return counts
