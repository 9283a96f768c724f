"""
Turn-taking chat sessions.

A session owns the model id and the conversation history. Each ``send`` or
``send_stream`` records the user turn first and the model turn once the
provider has answered. A session is not safe for concurrent turns; callers
serialize them.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import EndOfStream, MalformedMessageError, SessionError
from .log import get_logger
from .options import Options
from .parts import Message, Part, ToolCallPart
from .providers.base import (
    DeltaAccumulator,
    Provider,
    Response,
    StreamResponse,
    model_parts,
)

logger = get_logger(__name__)

MODEL_ROLE = "model"


class Session:
    def __init__(
        self,
        model: str,
        provider: Optional[Provider] = None,
        history: Optional[Iterable[Message]] = None,
        *,
        rollback_on_error: bool = False,
    ) -> None:
        self.model = model
        self.history: List[Message] = list(history or [])
        self.rollback_on_error = rollback_on_error
        self._provider = provider

    @property
    def provider(self) -> Optional[Provider]:
        return self._provider

    def set_provider(self, provider: Provider) -> None:
        self._provider = provider

    async def send(self, *parts: Part, options: Optional[Options] = None) -> Response:
        """Run one turn and record it.

        On failure the user message stays in history unless
        ``rollback_on_error`` is set.
        """
        provider = self._require_provider()
        user_message = self._append_user(parts)
        try:
            response = await provider.generate_content(self.model, list(self.history), options)
        except BaseException:
            self._rollback(user_message)
            raise

        self.history.append(
            Message(
                role=MODEL_ROLE,
                parts=model_parts(response.thought(), response.text(), response.tool_calls()),
            )
        )
        return response

    async def send_stream(self, *parts: Part, options: Optional[Options] = None) -> "ChatStream":
        """Open a streamed turn.

        The model message is recorded when the returned stream reports its
        end, not when it is closed.
        """
        provider = self._require_provider()
        user_message = self._append_user(parts)
        try:
            stream = await provider.generate_content_stream(self.model, list(self.history), options)
        except BaseException:
            self._rollback(user_message)
            raise
        return ChatStream(self, stream)

    def _require_provider(self) -> Provider:
        if self._provider is None:
            raise SessionError("no provider bound to this session")
        return self._provider

    def _append_user(self, parts: Iterable[Part]) -> Message:
        message = Message(role="user", parts=list(parts))
        self.history.append(message)
        return message

    def _rollback(self, message: Message) -> None:
        if self.rollback_on_error and self.history and self.history[-1] is message:
            self.history.pop()
            logger.debug("rolled back user message after failed turn")

    def _commit(self, accumulator: DeltaAccumulator) -> None:
        self.history.append(Message(role=MODEL_ROLE, parts=accumulator.to_parts()))
        logger.debug("committed streamed model message (history=%d)", len(self.history))

    # Persistence. The bound provider is never serialized.

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "history": [message.to_dict() for message in self.history],
        }

    @classmethod
    def from_dict(cls, data: Any, provider: Optional[Provider] = None) -> "Session":
        if not isinstance(data, dict) or not isinstance(data.get("model"), str):
            raise MalformedMessageError("session requires a model")
        history = data.get("history") or []
        if not isinstance(history, list):
            raise MalformedMessageError("session history must be a list")
        return cls(
            data["model"],
            provider=provider,
            history=[Message.from_dict(item) for item in history],
        )

    def dumps(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    @classmethod
    def loads(cls, text: str, provider: Optional[Provider] = None) -> "Session":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedMessageError(f"session is not valid JSON: {exc}") from exc
        return cls.from_dict(data, provider=provider)

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_text(self.dumps(), encoding="utf-8")

    @classmethod
    def load(cls, path: Union[str, Path], provider: Optional[Provider] = None) -> "Session":
        return cls.loads(Path(path).read_text(encoding="utf-8"), provider=provider)


class ChatStream(StreamResponse):
    """Stream returned by ``Session.send_stream``.

    Deltas pass through unchanged and are accumulated. The first end-of-stream
    commits the accumulated model message to the session, exactly once. After
    an error or cancellation the turn is abandoned and nothing is committed.
    """

    def __init__(self, session: Session, stream: StreamResponse) -> None:
        self._session = session
        self._stream = stream
        self._accumulator = DeltaAccumulator()
        self._committed = False
        self._closed = False
        self._failed = False

    @property
    def committed(self) -> bool:
        return self._committed

    async def next(self) -> Response:
        if self._committed or self._closed or self._failed:
            raise EndOfStream()
        try:
            delta = await self._stream.next()
        except EndOfStream:
            self._committed = True
            self._session._commit(self._accumulator)
            raise
        except BaseException:
            # A failed or cancelled turn is never committed.
            self._failed = True
            logger.debug("stream failed, discarding partial output")
            raise
        self._accumulator.add(delta)
        return delta

    async def close(self) -> None:
        if not self._committed and not self._closed and not self._failed:
            logger.debug("stream closed before completion, discarding partial output")
        self._closed = True
        await self._stream.close()

    def text(self) -> str:
        return self._accumulator.text()

    def thought(self) -> str:
        return self._accumulator.thought()

    def tool_calls(self) -> List[ToolCallPart]:
        return self._accumulator.tool_calls()
