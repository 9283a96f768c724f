import asyncio
import json
from typing import List, Optional, Sequence

import httpx
import pytest

from koppel import (
    BlobPart,
    EndOfStream,
    Message,
    Options,
    Provider,
    Response,
    Session,
    SessionError,
    StreamResponse,
    TextPart,
    ThoughtPart,
    ToolCallPart,
    ToolResultPart,
    TransportError,
    UnknownPartTypeError,
)
from koppel.providers import IteratorStream


class StubStream(StreamResponse):
    def __init__(self, deltas: List[Response]):
        self.deltas = list(deltas)
        self.close_calls = 0

    async def next(self) -> Response:
        if not self.deltas:
            raise EndOfStream()
        item = self.deltas.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.close_calls += 1


class StubProvider(Provider):
    provider_id = "stub"

    def __init__(
        self,
        response: Optional[Response] = None,
        deltas: Optional[List[Response]] = None,
        error: Optional[Exception] = None,
    ):
        self.response = response or Response(parts=[TextPart("hello")])
        self.deltas = deltas or []
        self.error = error
        self.calls: List[List[Message]] = []
        self.options: List[Optional[Options]] = []
        self.stream: Optional[StubStream] = None

    async def generate_content(self, model: str, history: Sequence[Message], options=None) -> Response:
        self.calls.append(list(history))
        self.options.append(options)
        if self.error:
            raise self.error
        return self.response

    async def generate_content_stream(self, model: str, history: Sequence[Message], options=None) -> StreamResponse:
        self.calls.append(list(history))
        self.options.append(options)
        if self.error:
            raise self.error
        self.stream = StubStream(self.deltas)
        return self.stream


def _text_deltas(*chunks: str) -> List[Response]:
    return [Response(parts=[TextPart(chunk)]) for chunk in chunks]


@pytest.mark.asyncio
async def test_send_records_user_and_model_messages():
    provider = StubProvider()
    session = Session("m1")
    session.set_provider(provider)

    response = await session.send(TextPart("hi"))

    assert response.text() == "hello"
    assert session.history == [
        Message(role="user", parts=[TextPart("hi")]),
        Message(role="model", parts=[TextPart("hello")]),
    ]
    assert provider.calls[0] == [Message(role="user", parts=[TextPart("hi")])]


@pytest.mark.asyncio
async def test_send_passes_full_history_each_turn():
    provider = StubProvider()
    session = Session("m1", provider=provider)

    await session.send(TextPart("one"))
    await session.send(TextPart("two"))

    assert len(session.history) == 4
    assert [m.role for m in provider.calls[1]] == ["user", "model", "user"]
    assert provider.calls[1][-1].parts == [TextPart("two")]


@pytest.mark.asyncio
async def test_send_forwards_options():
    provider = StubProvider()
    session = Session("m1", provider=provider)
    options = Options(cache_name="cachedContents/abc")

    await session.send(TextPart("hi"), options=options)

    assert provider.options == [options]


@pytest.mark.asyncio
async def test_send_records_thought_before_text_and_tool_calls():
    call = ToolCallPart(id="call_1", name="lookup", arguments='{"q": "x"}')
    provider = StubProvider(
        response=Response(parts=[ThoughtPart("a"), TextPart("b"), call])
    )
    session = Session("m1", provider=provider)

    response = await session.send(TextPart("question"))

    assert response.text() == "b"
    assert response.thought() == "a"
    assert session.history[-1] == Message(
        role="model", parts=[ThoughtPart("a"), TextPart("b"), call]
    )


@pytest.mark.asyncio
async def test_send_tool_result_correlates_by_id():
    provider = StubProvider()
    session = Session("m1", provider=provider)

    await session.send(ToolResultPart(id="call_1", name="lookup", content='{"ok": true}'))

    assert provider.calls[0][0].parts == [
        ToolResultPart(id="call_1", name="lookup", content='{"ok": true}')
    ]


@pytest.mark.asyncio
async def test_failed_send_keeps_user_message():
    provider = StubProvider(error=TransportError("boom", status_code=503))
    session = Session("m1", provider=provider)

    with pytest.raises(TransportError):
        await session.send(TextPart("hi"))

    assert session.history == [Message(role="user", parts=[TextPart("hi")])]


@pytest.mark.asyncio
async def test_failed_send_rolls_back_when_requested():
    provider = StubProvider(error=TransportError("boom"))
    session = Session("m1", provider=provider, rollback_on_error=True)

    with pytest.raises(TransportError):
        await session.send(TextPart("hi"))

    assert session.history == []


@pytest.mark.asyncio
async def test_send_without_provider_fails():
    session = Session("m1")

    with pytest.raises(SessionError):
        await session.send(TextPart("hi"))
    assert session.history == []


@pytest.mark.asyncio
async def test_drained_stream_commits_one_model_message():
    provider = StubProvider(deltas=_text_deltas("Hel", "lo ", "there"))
    session = Session("m1", provider=provider)

    stream = await session.send_stream(TextPart("hi"))
    assert len(session.history) == 1

    seen = []
    async for delta in stream:
        seen.append(delta.text())

    assert seen == ["Hel", "lo ", "there"]
    assert stream.text() == "Hello there"
    assert stream.committed
    assert session.history[-1] == Message(role="model", parts=[TextPart("Hello there")])
    assert len(session.history) == 2


@pytest.mark.asyncio
async def test_next_after_end_does_not_commit_again():
    provider = StubProvider(deltas=_text_deltas("a"))
    session = Session("m1", provider=provider)
    stream = await session.send_stream(TextPart("hi"))

    await stream.next()
    for _ in range(3):
        with pytest.raises(EndOfStream):
            await stream.next()

    assert len(session.history) == 2


@pytest.mark.asyncio
async def test_early_close_discards_partial_output():
    provider = StubProvider(deltas=_text_deltas("one", "two", "three"))
    session = Session("m1", provider=provider)
    stream = await session.send_stream(TextPart("hi"))

    first = await stream.next()
    await stream.close()
    await stream.close()

    assert first.text() == "one"
    assert stream.text() == "one"
    assert len(session.history) == 1
    with pytest.raises(EndOfStream):
        await stream.next()
    assert len(session.history) == 1
    assert provider.stream.close_calls == 2


@pytest.mark.asyncio
async def test_stream_error_abandons_turn():
    deltas = _text_deltas("a") + [TransportError("connection reset")] + _text_deltas("b")
    provider = StubProvider(deltas=deltas)
    session = Session("m1", provider=provider)
    stream = await session.send_stream(TextPart("hi"))

    assert (await stream.next()).text() == "a"
    with pytest.raises(TransportError):
        await stream.next()
    assert len(session.history) == 1

    for _ in range(2):
        with pytest.raises(EndOfStream):
            await stream.next()
    await stream.close()

    assert not stream.committed
    assert stream.text() == "a"
    assert session.history == [Message(role="user", parts=[TextPart("hi")])]


@pytest.mark.asyncio
async def test_failed_transport_stream_is_not_committed():
    async def events():
        yield "a"
        raise httpx.ReadError("connection reset")

    class FailingProvider(StubProvider):
        async def generate_content_stream(self, model, history, options=None):
            return IteratorStream(
                events(),
                lambda text: Response(parts=[TextPart(text)]),
                error_types=(httpx.HTTPError,),
            )

    session = Session("m1", provider=FailingProvider())
    stream = await session.send_stream(TextPart("hi"))

    await stream.next()
    with pytest.raises(TransportError):
        await stream.next()
    with pytest.raises(EndOfStream):
        await stream.next()

    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_cancelled_stream_is_not_committed():
    provider = StubProvider(deltas=_text_deltas("a") + [asyncio.CancelledError()])
    session = Session("m1", provider=provider)
    stream = await session.send_stream(TextPart("hi"))

    await stream.next()
    with pytest.raises(asyncio.CancelledError):
        await stream.next()
    with pytest.raises(EndOfStream):
        await stream.next()

    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_close_after_drain_keeps_committed_message():
    provider = StubProvider(deltas=_text_deltas("done"))
    session = Session("m1", provider=provider)

    async with await session.send_stream(TextPart("hi")) as stream:
        async for _ in stream:
            pass

    assert session.history[-1] == Message(role="model", parts=[TextPart("done")])


@pytest.mark.asyncio
async def test_stream_accumulates_thought_and_tool_call_fragments():
    deltas = [
        Response(parts=[ThoughtPart("let me ")]),
        Response(parts=[ThoughtPart("check")]),
        Response(parts=[TextPart("Checking.")]),
        Response(parts=[ToolCallPart(id="call_1", name="lookup", arguments="")]),
        Response(parts=[ToolCallPart(id="call_1", name="lookup", arguments='{"q":')]),
        Response(parts=[ToolCallPart(id="call_1", name="lookup", arguments=' "x"}')]),
        Response(finish_reason="tool_use"),
    ]
    provider = StubProvider(deltas=deltas)
    session = Session("m1", provider=provider)

    stream = await session.send_stream(TextPart("hi"))
    async for _ in stream:
        pass

    assert session.history[-1] == Message(
        role="model",
        parts=[
            ThoughtPart("let me check"),
            TextPart("Checking."),
            ToolCallPart(id="call_1", name="lookup", arguments='{"q": "x"}'),
        ],
    )


@pytest.mark.asyncio
async def test_empty_delta_is_not_end_of_stream():
    provider = StubProvider(deltas=[Response(), Response(parts=[TextPart("late")])])
    session = Session("m1", provider=provider)
    stream = await session.send_stream(TextPart("hi"))

    first = await stream.next()
    second = await stream.next()

    assert first.text() == ""
    assert second.text() == "late"
    assert not stream.committed


@pytest.mark.asyncio
async def test_failed_stream_open_keeps_user_message():
    provider = StubProvider(error=TransportError("unavailable"))
    session = Session("m1", provider=provider)

    with pytest.raises(TransportError):
        await session.send_stream(TextPart("hi"))

    assert len(session.history) == 1


def test_session_serialization_round_trip(tmp_path):
    session = Session("gemini-1.5-pro")
    session.history = [
        Message(
            role="user",
            parts=[TextPart("hello"), BlobPart(mime_type="image/png", data=b"fake-data")],
        ),
        Message(
            role="model",
            parts=[ThoughtPart("thinking..."), TextPart("hi there!")],
        ),
    ]

    restored = Session.loads(session.dumps())
    assert restored.model == session.model
    assert restored.history == session.history
    assert restored.provider is None

    path = tmp_path / "session.json"
    session.save(path)
    assert Session.load(path).history == session.history

    data = json.loads(path.read_text())
    assert set(data) == {"model", "history"}
    assert data["history"][1]["parts"][0] == {"type": "thought", "thought": "thinking..."}


def test_session_with_unknown_part_type_fails_to_load():
    text = json.dumps(
        {"model": "m1", "history": [{"role": "user", "parts": [{"type": "hologram"}]}]}
    )

    with pytest.raises(UnknownPartTypeError):
        Session.loads(text)
