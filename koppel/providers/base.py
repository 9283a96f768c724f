from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Type,
)
from uuid import uuid4

from ..errors import EndOfStream, TranslationError, TransportError
from ..log import get_logger
from ..options import ContextCache, Options
from ..parts import Message, Part, TextPart, ThoughtPart, ToolCallPart

logger = get_logger(__name__)


# Canonical role for every role a Message may carry. Adapters map these to
# their own vocabulary.
CANONICAL_ROLES: Dict[str, str] = {
    "system": "system",
    "user": "user",
    "assistant": "assistant",
    "model": "assistant",
    "tool": "tool",
}


def normalize_role(role: str) -> str:
    try:
        return CANONICAL_ROLES[role]
    except KeyError as exc:
        raise TranslationError(f"unsupported role {role!r}") from exc


def split_system(history: Sequence[Message]) -> Tuple[List[Message], List[Message]]:
    """Separate system messages from the conversational turns, keeping order."""
    system: List[Message] = []
    turns: List[Message] = []
    for message in history:
        if normalize_role(message.role) == "system":
            system.append(message)
        else:
            turns.append(message)
    return system, turns


def system_text_blocks(messages: Sequence[Message]) -> List[str]:
    """Return the text of system messages; any non-text part is an error."""
    blocks: List[str] = []
    for message in messages:
        for part in message.parts:
            if not isinstance(part, TextPart):
                raise TranslationError(
                    f"system messages may only contain text, got {type(part).__name__}"
                )
            blocks.append(part.text)
    return blocks


def parse_tool_arguments(part: ToolCallPart) -> Dict[str, Any]:
    if not part.arguments:
        return {}
    try:
        arguments = json.loads(part.arguments)
    except json.JSONDecodeError as exc:
        raise TranslationError(
            f"tool call {part.name!r} has malformed arguments: {exc}"
        ) from exc
    if not isinstance(arguments, dict):
        raise TranslationError(
            f"tool call {part.name!r} arguments must be a JSON object"
        )
    return arguments


def new_call_id() -> str:
    return str(uuid4())


def to_transport_error(exc: BaseException) -> TransportError:
    status_code = getattr(exc, "status_code", None)
    if status_code is None:
        status_code = getattr(exc, "code", None)
    if status_code is None:
        response = getattr(exc, "response", None)
        status_code = getattr(response, "status_code", None)
    if not isinstance(status_code, int):
        status_code = None
    return TransportError(str(exc) or type(exc).__name__, status_code=status_code)


@dataclass(slots=True)
class Response:
    """One normalized model response, or one streamed delta."""

    parts: List[Part] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Dict[str, int] = field(default_factory=dict)
    raw: Any = None

    def text(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    def thought(self) -> str:
        return "".join(p.text for p in self.parts if isinstance(p, ThoughtPart))

    def tool_calls(self) -> List[ToolCallPart]:
        return [p for p in self.parts if isinstance(p, ToolCallPart)]


class StreamResponse(ABC):
    """Iterator over response deltas.

    ``next()`` raises ``EndOfStream`` once exhausted, and keeps raising it on
    later calls. ``close()`` may be called any number of times.
    """

    @abstractmethod
    async def next(self) -> Response:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    def __aiter__(self) -> "StreamResponse":
        return self

    async def __anext__(self) -> Response:
        return await self.next()

    async def __aenter__(self) -> "StreamResponse":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class IteratorStream(StreamResponse):
    """Stream skeleton shared by the adapters.

    ``convert`` turns one vendor event into a delta, or ``None`` for events
    that carry nothing. Exceptions of ``error_types`` raised by the transport
    surface as ``TransportError``. Any failure or cancellation releases the
    transport before propagating.
    """

    def __init__(
        self,
        events: AsyncIterator[Any],
        convert: Callable[[Any], Optional[Response]],
        *,
        closer: Optional[Callable[[], Awaitable[None]]] = None,
        error_types: Tuple[Type[BaseException], ...] = (),
    ) -> None:
        self._events = events
        self._convert = convert
        self._closer = closer
        self._error_types = error_types
        self._exhausted = False
        self._closed = False

    async def next(self) -> Response:
        if self._exhausted or self._closed:
            raise EndOfStream()
        while True:
            try:
                event = await self._events.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
                await self.close()
                raise EndOfStream() from None
            except asyncio.CancelledError:
                await self.close()
                raise
            except Exception as exc:
                await self.close()
                if self._error_types and isinstance(exc, self._error_types):
                    raise to_transport_error(exc) from exc
                raise

            try:
                delta = self._convert(event)
            except Exception:
                await self.close()
                raise
            if delta is not None:
                return delta

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        logger.debug("closing stream (exhausted=%s)", self._exhausted)
        if self._closer is not None:
            await self._closer()


class DeltaAccumulator:
    """Folds streamed deltas into the content of one model message."""

    def __init__(self) -> None:
        self._text: List[str] = []
        self._thought: List[str] = []
        self._calls: List[ToolCallPart] = []

    def add(self, delta: Response) -> None:
        for part in delta.parts:
            if isinstance(part, TextPart):
                self._text.append(part.text)
            elif isinstance(part, ThoughtPart):
                self._thought.append(part.text)
            elif isinstance(part, ToolCallPart):
                self._add_call(part)

    def _add_call(self, fragment: ToolCallPart) -> None:
        last = self._calls[-1] if self._calls else None
        if last is not None and (not fragment.id or fragment.id == last.id):
            self._calls[-1] = ToolCallPart(
                id=last.id,
                name=last.name or fragment.name,
                arguments=last.arguments + fragment.arguments,
            )
        else:
            self._calls.append(fragment)

    def text(self) -> str:
        return "".join(self._text)

    def thought(self) -> str:
        return "".join(self._thought)

    def tool_calls(self) -> List[ToolCallPart]:
        return list(self._calls)

    def to_parts(self) -> List[Part]:
        return model_parts(self.thought(), self.text(), self._calls)


def model_parts(thought: str, text: str, tool_calls: Sequence[ToolCallPart]) -> List[Part]:
    """Parts of the model message recorded for one turn."""
    parts: List[Part] = []
    if thought:
        parts.append(ThoughtPart(thought))
    parts.append(TextPart(text))
    parts.extend(tool_calls)
    return parts


class Provider(ABC):
    """A model backend able to run one conversational turn."""

    provider_id: str

    @abstractmethod
    async def generate_content(
        self,
        model: str,
        history: Sequence[Message],
        options: Optional[Options] = None,
    ) -> Response:
        ...

    @abstractmethod
    async def generate_content_stream(
        self,
        model: str,
        history: Sequence[Message],
        options: Optional[Options] = None,
    ) -> StreamResponse:
        ...


class ContextCacher(ABC):
    """Optional capability: manage vendor-side context caches."""

    @abstractmethod
    async def create_cache(
        self,
        model: str,
        history: Sequence[Message],
        display_name: str = "",
        ttl: timedelta = timedelta(hours=1),
    ) -> ContextCache:
        ...

    @abstractmethod
    async def get_cache(self, name: str) -> ContextCache:
        ...

    @abstractmethod
    async def delete_cache(self, name: str) -> None:
        ...

    @abstractmethod
    async def list_caches(self) -> List[ContextCache]:
        ...


def supports_context_cache(provider: Any) -> bool:
    return isinstance(provider, ContextCacher)


ProviderRequest = Any
ProviderResponse = Any


class BaseProviderAdapter(Provider):
    """Provider built from request preparation, invocation and parsing steps.

    Translation happens in ``prepare_request`` so an untranslatable history
    fails before any network I/O.
    """

    transport_errors: Tuple[Type[BaseException], ...] = ()

    @abstractmethod
    def prepare_request(
        self,
        model: str,
        history: Sequence[Message],
        options: Options,
    ) -> ProviderRequest:
        ...

    @abstractmethod
    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        ...

    @abstractmethod
    def parse_response(self, response: ProviderResponse) -> Response:
        ...

    @abstractmethod
    async def invoke_stream(self, request: ProviderRequest) -> StreamResponse:
        ...

    async def generate_content(
        self,
        model: str,
        history: Sequence[Message],
        options: Optional[Options] = None,
    ) -> Response:
        request = self.prepare_request(model, history, options or Options())
        logger.debug("%s: generate_content model=%s messages=%d", self.provider_id, model, len(history))
        try:
            raw = await self.invoke(request)
        except self.transport_errors as exc:
            raise to_transport_error(exc) from exc
        return self.parse_response(raw)

    async def generate_content_stream(
        self,
        model: str,
        history: Sequence[Message],
        options: Optional[Options] = None,
    ) -> StreamResponse:
        request = self.prepare_request(model, history, options or Options())
        logger.debug("%s: generate_content_stream model=%s messages=%d", self.provider_id, model, len(history))
        try:
            return await self.invoke_stream(request)
        except self.transport_errors as exc:
            raise to_transport_error(exc) from exc


class ProviderFactory(Protocol):
    def __call__(self, settings: Any) -> Provider:
        ...


class ProviderRegistry:
    """Runtime registry mapping provider identifiers to adapter factories."""

    def __init__(self) -> None:
        self._registry: Dict[str, ProviderFactory] = {}

    def register(self, provider_id: str, factory: ProviderFactory) -> None:
        if provider_id in self._registry:
            raise ValueError(f"Provider '{provider_id}' already registered")
        self._registry[provider_id] = factory

    def create(self, provider_id: str, settings: Any) -> Provider:
        try:
            factory = self._registry[provider_id]
        except KeyError as exc:
            raise KeyError(f"Provider '{provider_id}' not registered") from exc
        provider = factory(settings)
        if provider.provider_id != provider_id:
            raise ValueError(
                f"Adapter for '{provider_id}' reported provider_id '{provider.provider_id}'"
            )
        return provider

    def available_providers(self) -> List[str]:
        return list(self._registry.keys())
