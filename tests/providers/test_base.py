import asyncio

import httpx
import pytest

from koppel import (
    EndOfStream,
    KoppelError,
    Message,
    TextPart,
    ThoughtPart,
    ToolCallPart,
    TranslationError,
    TransportError,
)
from koppel.providers import DeltaAccumulator, IteratorStream, ProviderRegistry, Response
from koppel.providers.base import (
    model_parts,
    normalize_role,
    parse_tool_arguments,
    split_system,
    to_transport_error,
)


class Closer:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1


async def _events(*items, error=None):
    for item in items:
        yield item
    if error is not None:
        raise error


def _text_delta(event):
    if event is None:
        return None
    return Response(parts=[TextPart(event)])


def test_response_accessors_are_disjoint():
    call = ToolCallPart(id="1", name="lookup", arguments="{}")
    response = Response(parts=[ThoughtPart("why"), TextPart("a"), TextPart("b"), call])

    assert response.text() == "ab"
    assert response.thought() == "why"
    assert response.tool_calls() == [call]


def test_empty_response():
    response = Response()

    assert response.text() == ""
    assert response.thought() == ""
    assert response.tool_calls() == []


def test_end_of_stream_is_not_a_failure():
    assert issubclass(EndOfStream, StopAsyncIteration)
    assert not issubclass(EndOfStream, KoppelError)


@pytest.mark.asyncio
async def test_iterator_stream_skips_empty_events_and_ends():
    closer = Closer()
    stream = IteratorStream(_events("a", None, "b"), _text_delta, closer=closer)

    deltas = [delta.text() async for delta in stream]

    assert deltas == ["a", "b"]
    assert closer.calls == 1
    for _ in range(2):
        with pytest.raises(EndOfStream):
            await stream.next()


@pytest.mark.asyncio
async def test_iterator_stream_close_is_idempotent():
    closer = Closer()
    stream = IteratorStream(_events("a", "b"), _text_delta, closer=closer)

    assert (await stream.next()).text() == "a"
    await stream.close()
    await stream.close()

    assert closer.calls == 1
    with pytest.raises(EndOfStream):
        await stream.next()


@pytest.mark.asyncio
async def test_iterator_stream_maps_transport_errors():
    request = httpx.Request("GET", "https://example.com")
    error = httpx.ReadTimeout("timed out", request=request)
    closer = Closer()
    stream = IteratorStream(
        _events("a", error=error),
        _text_delta,
        closer=closer,
        error_types=(httpx.HTTPError,),
    )

    await stream.next()
    with pytest.raises(TransportError) as excinfo:
        await stream.next()

    assert excinfo.value.__cause__ is error
    assert closer.calls == 1


@pytest.mark.asyncio
async def test_iterator_stream_passes_other_errors_through():
    closer = Closer()
    stream = IteratorStream(_events(error=ValueError("bad")), _text_delta, closer=closer)

    with pytest.raises(ValueError):
        await stream.next()
    assert closer.calls == 1


@pytest.mark.asyncio
async def test_iterator_stream_closes_on_cancellation():
    started = asyncio.Event()

    async def slow_events():
        started.set()
        await asyncio.sleep(3600)
        yield "never"

    closer = Closer()
    stream = IteratorStream(slow_events(), _text_delta, closer=closer)
    task = asyncio.create_task(stream.next())
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert closer.calls == 1


def test_accumulator_merges_fragments_by_id():
    accumulator = DeltaAccumulator()
    for delta in [
        Response(parts=[ThoughtPart("a"), TextPart("Hel")]),
        Response(parts=[TextPart("lo")]),
        Response(parts=[ToolCallPart(id="c1", name="first", arguments='{"a":')]),
        Response(parts=[ToolCallPart(id="c1", name="first", arguments="1}")]),
        Response(parts=[ToolCallPart(id="c2", name="second", arguments="{}")]),
        Response(parts=[ToolCallPart(id="", name="", arguments="")]),
    ]:
        accumulator.add(delta)

    assert accumulator.text() == "Hello"
    assert accumulator.thought() == "a"
    assert accumulator.tool_calls() == [
        ToolCallPart(id="c1", name="first", arguments='{"a":1}'),
        ToolCallPart(id="c2", name="second", arguments="{}"),
    ]
    assert accumulator.to_parts()[:2] == [ThoughtPart("a"), TextPart("Hello")]


def test_model_parts_always_carry_text():
    assert model_parts("", "", []) == [TextPart("")]


def test_model_role_is_assistant():
    assert normalize_role("model") == "assistant"
    with pytest.raises(TranslationError):
        normalize_role("narrator")


def test_split_system_keeps_order():
    history = [
        Message(role="system", parts=[TextPart("one")]),
        Message(role="user", parts=[TextPart("hi")]),
        Message(role="system", parts=[TextPart("two")]),
    ]

    system, turns = split_system(history)

    assert [m.parts[0].text for m in system] == ["one", "two"]
    assert turns == [history[1]]


@pytest.mark.parametrize("arguments", ["{not json", "[1, 2]", '"text"'])
def test_tool_arguments_must_be_a_json_object(arguments):
    with pytest.raises(TranslationError):
        parse_tool_arguments(ToolCallPart(id="1", name="t", arguments=arguments))


def test_empty_tool_arguments_are_an_empty_object():
    assert parse_tool_arguments(ToolCallPart(id="1", name="t")) == {}


def test_transport_error_reads_response_status():
    request = httpx.Request("GET", "https://example.com")
    error = httpx.HTTPStatusError(
        "server error", request=request, response=httpx.Response(502, request=request)
    )

    assert to_transport_error(error).status_code == 502


class _Dummy:
    provider_id = "dummy"

    def __init__(self, settings):
        self.settings = settings


def test_registry_creates_registered_providers():
    registry = ProviderRegistry()
    registry.register("dummy", _Dummy)

    provider = registry.create("dummy", {"key": "value"})

    assert provider.settings == {"key": "value"}
    assert registry.available_providers() == ["dummy"]


def test_registry_rejects_duplicates_and_unknown_ids():
    registry = ProviderRegistry()
    registry.register("dummy", _Dummy)

    with pytest.raises(ValueError):
        registry.register("dummy", _Dummy)
    with pytest.raises(KeyError):
        registry.create("missing", None)


def test_registry_checks_reported_provider_id():
    registry = ProviderRegistry()
    registry.register("other", _Dummy)

    with pytest.raises(ValueError):
        registry.create("other", None)
