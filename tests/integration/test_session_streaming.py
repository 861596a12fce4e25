import asyncio
import gc

import pytest
from pydantic import BaseModel

from colloquy.errors import DecodeError, SessionBusyError
from colloquy.events import EntryEvent, RunCompleteEvent, SnapshotEvent
from colloquy.runner import Runner
from colloquy.session import Session
from colloquy.streaming import ResponseDelta
from colloquy.transcript import Prompt, Response, StructuredSegment, TextSegment

from tests.conftest import (
    MockProvider,
    echo,
    make_text_response,
    make_tool_call,
    text_deltas,
    tool_call_deltas,
)


class Message(BaseModel):
    message: str


def _responses(session):
    return [e for e in session.transcript if isinstance(e, Response)]


class TestTextStreaming:
    @pytest.mark.asyncio
    async def test_snapshots_then_one_response(self):
        provider = MockProvider()
        provider.streams = [text_deltas("Hel", "lo")]
        session = Session(provider)

        stream = session.stream_response("hi")
        texts = [snapshot.text async for snapshot in stream]

        assert texts == ["Hel", "Hello"]
        [response] = _responses(session)
        assert response.text == "Hello"
        assert stream.result.text == "Hello"
        assert stream.last.text == "Hello"
        assert not session.is_responding

    @pytest.mark.asyncio
    async def test_collect(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b", "c")]
        session = Session(provider)

        result = await session.stream_response("hi").collect()

        assert result.content == "abc"
        assert [e.kind for e in result.entries] == ["prompt", "response"]

    @pytest.mark.asyncio
    async def test_default_stream_replays_generate(self):
        provider = MockProvider()
        provider.responses = [make_text_response("whole")]
        session = Session(provider)

        texts = [s.text async for s in session.stream_response("hi")]

        assert texts == ["whole"]
        assert _responses(session)[0].text == "whole"


class TestStructuredStreaming:
    @pytest.mark.asyncio
    async def test_partial_then_decoded(self):
        provider = MockProvider()
        provider.streams = [text_deltas('{"message": "hel', 'lo"}')]
        session = Session(provider)

        stream = session.stream_response("greet", generating=Message)
        snapshots = [s async for s in stream]

        assert snapshots[0].partial.value(str, key="message") == "hel"
        assert stream.result.content == Message(message="hello")
        [segment] = _responses(session)[0].segments
        assert isinstance(segment, StructuredSegment)
        assert segment.content.value(str, key="message") == "hello"

    @pytest.mark.asyncio
    async def test_invalid_final_text_commits_nothing(self):
        provider = MockProvider()
        provider.streams = [text_deltas('{"message": ')]
        session = Session(provider)

        with pytest.raises(DecodeError):
            await session.stream_response("greet", generating=Message).collect()

        assert _responses(session) == []
        assert not session.is_responding


class TestStreamingWithTools:
    @pytest.mark.asyncio
    async def test_tool_round_then_streamed_answer(self):
        provider = MockProvider()
        provider.streams = [
            tool_call_deltas("echo", ['{"text": ', '"ping"}'], call_id="c1"),
            text_deltas("po", "ng"),
        ]
        session = Session(provider, tools=[echo])

        result = await session.stream_response("go").collect()

        assert [e.kind for e in result.entries] == ["prompt", "tool_calls", "tool_output", "response"]
        assert result.entries[2].text == "ping"
        assert result.text == "pong"

    @pytest.mark.asyncio
    async def test_iter_event_order(self):
        provider = MockProvider()
        provider.streams = [
            tool_call_deltas("echo", ['{"text": "x"}']),
            text_deltas("A", "B"),
        ]
        session = Session(provider, tools=[echo])

        events = [
            e async for e in Runner().iter(
                session, Prompt(segments=[TextSegment(content="go")]), stream=True,
            )
        ]

        kinds = [
            e.entry.kind if isinstance(e, EntryEvent) else type(e).__name__
            for e in events
        ]
        assert kinds == [
            "prompt", "tool_calls", "tool_output",
            "SnapshotEvent", "SnapshotEvent",
            "response", "RunCompleteEvent",
        ]
        assert isinstance(events[-1], RunCompleteEvent)
        assert all(e.snapshot.text for e in events if isinstance(e, SnapshotEvent))


class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_error_mid_stream_propagates(self):
        provider = MockProvider()
        provider.streams = [[ResponseDelta(text="Hel"), ConnectionError("dropped")]]
        session = Session(provider)

        stream = session.stream_response("hi")
        first = await stream.__anext__()
        assert first.text == "Hel"

        with pytest.raises(ConnectionError):
            await stream.__anext__()

        assert [e.kind for e in session.transcript] == ["prompt"]
        assert not session.is_responding

    @pytest.mark.asyncio
    async def test_aclose_commits_nothing_and_releases(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b", "c")]
        session = Session(provider)

        stream = session.stream_response("hi")
        await stream.__anext__()
        await stream.aclose()

        assert _responses(session) == []
        assert not session.is_responding
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        with pytest.raises(RuntimeError):
            await stream.collect()

    @pytest.mark.asyncio
    async def test_context_manager_closes(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b")]
        session = Session(provider)

        async with session.stream_response("hi") as stream:
            await stream.__anext__()

        assert not session.is_responding
        assert _responses(session) == []


class TestBusyDuringStream:
    @pytest.mark.asyncio
    async def test_respond_rejected_while_streaming(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b")]
        session = Session(provider)

        stream = session.stream_response("hi")
        assert not session.is_responding
        await stream.__anext__()
        assert session.is_responding

        with pytest.raises(SessionBusyError):
            await session.respond("again")
        with pytest.raises(SessionBusyError):
            session.stream_response("again")

        await stream.collect()
        assert not session.is_responding

        provider.responses = [make_text_response("free")]
        assert (await session.respond("now")).text == "free"

    @pytest.mark.asyncio
    async def test_session_usable_after_failed_stream(self):
        provider = MockProvider()
        provider.streams = [[RuntimeError("boom")]]
        provider.responses = [make_tool_call("echo", {"text": "ok"}), make_text_response("done")]
        session = Session(provider, tools=[echo])

        with pytest.raises(RuntimeError):
            await session.stream_response("hi").collect()

        result = await asyncio.wait_for(session.respond("retry"), timeout=1)
        assert result.text == "done"


class TestAbandonedStreams:
    @pytest.mark.asyncio
    async def test_break_out_of_loop_frees_session(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b", "c")]
        session = Session(provider)

        async for snapshot in session.stream_response("hi"):
            assert snapshot.text == "a"
            break
        gc.collect()

        assert not session.is_responding
        assert _responses(session) == []

        provider.responses = [make_text_response("second")]
        assert (await session.respond("again")).text == "second"

    @pytest.mark.asyncio
    async def test_never_iterated_stream_runs_nothing(self):
        provider = MockProvider()
        session = Session(provider)

        stream = session.stream_response("hi")
        assert not session.is_responding
        del stream
        gc.collect()

        assert len(session.transcript) == 0
        assert provider.call_log == []

        provider.responses = [make_text_response("ok")]
        assert (await session.respond("now")).text == "ok"

    @pytest.mark.asyncio
    async def test_collected_stream_does_not_free_a_newer_request(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b"), text_deltas("x", "y")]
        session = Session(provider)

        first = session.stream_response("one")
        await first.__anext__()
        await first.aclose()

        second = session.stream_response("two")
        await second.__anext__()
        del first
        gc.collect()

        assert session.is_responding
        result = await second.collect()
        assert result.text == "xy"
        assert not session.is_responding

    @pytest.mark.asyncio
    async def test_second_stream_rejected_on_first_iteration(self):
        provider = MockProvider()
        provider.streams = [text_deltas("a", "b")]
        session = Session(provider)

        first = session.stream_response("one")
        second = session.stream_response("two")
        await first.__anext__()

        with pytest.raises(SessionBusyError):
            await second.__anext__()

        assert session.is_responding
        assert (await first.collect()).text == "ab"
        assert sum(isinstance(e, Prompt) for e in session.transcript) == 1
