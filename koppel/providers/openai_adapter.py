"""
Adapter for OpenAI-compatible chat completion endpoints, spoken over httpx.

Translation policy:

* ``system`` messages stay in place as ``system`` chat messages (the wire
  format's own instruction channel); non-text system parts are rejected.
* ``ThoughtPart`` is dropped from requests; chat completions have no
  reasoning input. ``reasoning_content`` returned by compatible reasoning
  servers is surfaced as a ThoughtPart ahead of the text.
* User turns carry text and ``image/*`` blobs as data URLs. Tool results found
  in a user turn are sent as ``tool`` messages ahead of the user content.
  A tool call in a user turn is a ``TranslationError``.
* Assistant turns carry text and ``tool_calls``; blobs and tool results there
  are rejected.
* ``tool`` turns may only hold tool results.
* Tool calls and results need a non-empty id, and tool call arguments must be
  a JSON object; the arguments string itself is sent unchanged.
* Named context caches are not supported; ``Options.cache_name`` is rejected.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import httpx

from ..errors import MalformedMessageError, TranslationError
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
from ..tool import Definition
from .base import (
    BaseProviderAdapter,
    IteratorStream,
    ProviderRequest,
    ProviderResponse,
    Response,
    StreamResponse,
    new_call_id,
    normalize_role,
    parse_tool_arguments,
    system_text_blocks,
)

DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_ENDPOINT = "/v1/chat/completions"


@dataclass(slots=True)
class OpenAIProviderRequest:
    url: str
    headers: Dict[str, str]
    payload: Dict[str, Any]
    timeout: Optional[float] = None


@dataclass(slots=True)
class OpenAIProviderResponse:
    http_response: httpx.Response
    payload: Dict[str, Any]


class OpenAIProvider(BaseProviderAdapter):
    """Provider targeting OpenAI-compatible chat completion endpoints.

    Without an injected ``http_client`` each call opens and closes its own
    ``httpx.AsyncClient``.
    """

    transport_errors = (httpx.HTTPError,)

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: Optional[float] = None,
        max_tokens: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        provider_id: str = "openai",
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url
        self.endpoint = endpoint
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.http_client = http_client
        self.provider_id = provider_id

    @classmethod
    def from_settings(cls, settings: Any) -> "OpenAIProvider":
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            endpoint=settings.openai_endpoint,
            timeout=settings.openai_timeout,
            max_tokens=settings.max_tokens,
        )

    def prepare_request(
        self,
        model: str,
        history: Sequence[Message],
        options: Options,
    ) -> ProviderRequest:
        if options.cache_name:
            raise TranslationError("OpenAI-compatible endpoints do not support named context caches")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": _history_to_openai_messages(history),
        }
        if self.max_tokens:
            payload["max_tokens"] = self.max_tokens
        if options.tools:
            payload["tools"] = [_definition_to_openai(tool) for tool in options.tools]
            payload["tool_choice"] = "auto"

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        return OpenAIProviderRequest(
            url=f"{self.base_url.rstrip('/')}{self.endpoint}",
            headers=headers,
            payload=payload,
            timeout=self.timeout,
        )

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        assert isinstance(request, OpenAIProviderRequest)
        client, owned = self._client(request)
        try:
            response = await client.post(
                request.url,
                headers=request.headers,
                json=request.payload,
            )
            response.raise_for_status()
        finally:
            if owned:
                await client.aclose()

        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise MalformedMessageError(f"OpenAI response is not JSON: {exc}") from exc
        return OpenAIProviderResponse(http_response=response, payload=payload)

    def parse_response(self, response: ProviderResponse) -> Response:
        assert isinstance(response, OpenAIProviderResponse)
        choices: List[Dict[str, Any]] = response.payload.get("choices") or []
        if not choices:
            raise MalformedMessageError("OpenAI response missing choices")
        message_payload = choices[0].get("message") or {}

        parts: List[Part] = []
        reasoning = message_payload.get("reasoning_content")
        if reasoning:
            parts.append(ThoughtPart(reasoning))

        content = message_payload.get("content")
        if isinstance(content, str):
            if content:
                parts.append(TextPart(content))
        elif isinstance(content, list):
            for block in content:
                if block.get("type") == "text" and block.get("text"):
                    parts.append(TextPart(block["text"]))

        for call in message_payload.get("tool_calls") or []:
            function = call.get("function") or {}
            parts.append(
                ToolCallPart(
                    id=call.get("id") or new_call_id(),
                    name=function.get("name", ""),
                    arguments=function.get("arguments") or "",
                )
            )

        return Response(
            parts=parts,
            finish_reason=choices[0].get("finish_reason"),
            usage=_usage(response.payload.get("usage")),
            raw=response.payload,
        )

    async def invoke_stream(self, request: ProviderRequest) -> StreamResponse:
        assert isinstance(request, OpenAIProviderRequest)
        client, owned = self._client(request)
        payload = dict(request.payload, stream=True)
        http_request = client.build_request(
            "POST", request.url, headers=request.headers, json=payload
        )
        response: Optional[httpx.Response] = None
        try:
            response = await client.send(http_request, stream=True)
            if response.is_error:
                await response.aread()
                response.raise_for_status()
        except BaseException:
            if response is not None:
                await response.aclose()
            if owned:
                await client.aclose()
            raise

        chunks = _sse_chunks(response.aiter_lines())

        async def close() -> None:
            await chunks.aclose()
            await response.aclose()
            if owned:
                await client.aclose()

        return IteratorStream(
            chunks,
            _ChunkConverter(),
            closer=close,
            error_types=self.transport_errors,
        )

    def _client(self, request: OpenAIProviderRequest) -> Tuple[httpx.AsyncClient, bool]:
        if self.http_client is not None:
            return self.http_client, False
        return httpx.AsyncClient(timeout=request.timeout), True


async def _sse_chunks(lines: AsyncIterator[str]) -> AsyncIterator[Dict[str, Any]]:
    async for line in lines:
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except json.JSONDecodeError as exc:
            raise MalformedMessageError(f"invalid stream chunk: {exc}") from exc


class _ChunkConverter:
    """Turns ``chat.completion.chunk`` payloads into deltas.

    Tool-call fragments after the first only carry their index, so the id and
    name seen first are remembered per index.
    """

    def __init__(self) -> None:
        self._calls: Dict[int, Tuple[str, str]] = {}

    def __call__(self, chunk: Dict[str, Any]) -> Optional[Response]:
        usage = _usage(chunk.get("usage"))
        choices = chunk.get("choices") or []
        if not choices:
            return Response(usage=usage, raw=chunk) if usage else None

        choice = choices[0]
        delta = choice.get("delta") or {}
        parts: List[Part] = []
        if delta.get("reasoning_content"):
            parts.append(ThoughtPart(delta["reasoning_content"]))
        if delta.get("content"):
            parts.append(TextPart(delta["content"]))
        for call in delta.get("tool_calls") or []:
            parts.append(self._call_fragment(call))

        finish_reason = choice.get("finish_reason")
        if not parts and not finish_reason and not usage:
            return None
        return Response(parts=parts, finish_reason=finish_reason, usage=usage, raw=chunk)

    def _call_fragment(self, call: Dict[str, Any]) -> ToolCallPart:
        index = call.get("index", 0)
        function = call.get("function") or {}
        known_id, known_name = self._calls.get(index, ("", ""))
        call_id = call.get("id") or known_id or new_call_id()
        name = function.get("name") or known_name
        self._calls[index] = (call_id, name)
        return ToolCallPart(id=call_id, name=name, arguments=function.get("arguments") or "")


def _history_to_openai_messages(history: Sequence[Message]) -> List[Dict[str, Any]]:
    payload: List[Dict[str, Any]] = []
    for message in history:
        role = normalize_role(message.role)
        if role == "system":
            text = "".join(system_text_blocks([message]))
            if text:
                payload.append({"role": "system", "content": text})
        elif role == "user":
            payload.extend(_user_message(message))
        elif role == "assistant":
            payload.extend(_assistant_message(message))
        elif role == "tool":
            payload.extend(_tool_messages(message))
    return payload


def _user_message(message: Message) -> List[Dict[str, Any]]:
    payload: List[Dict[str, Any]] = []
    content: List[Dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            if part.text:
                content.append({"type": "text", "text": part.text})
        elif isinstance(part, BlobPart):
            content.append(_blob_to_content(part))
        elif isinstance(part, ToolResultPart):
            payload.append(_tool_result_to_message(part))
        elif isinstance(part, ThoughtPart):
            continue
        elif isinstance(part, ToolCallPart):
            raise TranslationError("tool calls cannot appear in a user turn")
        else:
            raise TranslationError(f"unsupported part {type(part).__name__}")

    if len(content) == 1 and content[0]["type"] == "text":
        payload.append({"role": "user", "content": content[0]["text"]})
    elif content:
        payload.append({"role": "user", "content": content})
    return payload


def _assistant_message(message: Message) -> List[Dict[str, Any]]:
    text_parts: List[str] = []
    tool_calls: List[Dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            text_parts.append(part.text)
        elif isinstance(part, ToolCallPart):
            tool_calls.append(_tool_call_to_openai(part))
        elif isinstance(part, ThoughtPart):
            continue
        else:
            raise TranslationError(
                f"{type(part).__name__} cannot appear in an assistant turn"
            )

    text = "".join(text_parts)
    if not text and not tool_calls:
        return []
    msg: Dict[str, Any] = {"role": "assistant", "content": text or None}
    if tool_calls:
        msg["tool_calls"] = tool_calls
    return [msg]


def _tool_messages(message: Message) -> List[Dict[str, Any]]:
    payload: List[Dict[str, Any]] = []
    for part in message.parts:
        if isinstance(part, ToolResultPart):
            payload.append(_tool_result_to_message(part))
        elif isinstance(part, ThoughtPart):
            continue
        else:
            raise TranslationError(f"{type(part).__name__} cannot appear in a tool turn")
    return payload


def _blob_to_content(part: BlobPart) -> Dict[str, Any]:
    if not part.mime_type.startswith("image/"):
        raise TranslationError(
            f"OpenAI chat completions cannot accept blobs of type {part.mime_type!r}"
        )
    encoded = base64.b64encode(part.data).decode("ascii")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{part.mime_type};base64,{encoded}"},
    }


def _tool_result_to_message(part: ToolResultPart) -> Dict[str, Any]:
    if not part.id:
        raise TranslationError(f"tool result {part.name!r} has no call id")
    return {
        "role": "tool",
        "tool_call_id": part.id,
        "content": part.content,
    }


def _tool_call_to_openai(part: ToolCallPart) -> Dict[str, Any]:
    if not part.id:
        raise TranslationError(f"tool call {part.name!r} has no call id")
    parse_tool_arguments(part)
    return {
        "id": part.id,
        "type": "function",
        "function": {
            "name": part.name,
            "arguments": part.arguments or "{}",
        },
    }


def _definition_to_openai(definition: Definition) -> Dict[str, Any]:
    parameters = definition.input_schema or {"type": "object", "properties": {}}
    return {
        "type": "function",
        "function": {
            "name": definition.name,
            "description": definition.description or "",
            "parameters": parameters,
        },
    }


def _usage(usage: Any) -> Dict[str, int]:
    if not isinstance(usage, dict):
        return {}
    counts: Dict[str, int] = {}
    if isinstance(usage.get("prompt_tokens"), int):
        counts["input_tokens"] = usage["prompt_tokens"]
    if isinstance(usage.get("completion_tokens"), int):
        counts["output_tokens"] = usage["completion_tokens"]
    return counts
