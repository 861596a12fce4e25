import asyncio

import pytest

from colloquy.context import ToolContext
from colloquy.content import GeneratedContent
from colloquy.provider import ModelProvider
from colloquy.streaming import ResponseDelta, ToolCallFragment
from colloquy.tools import tool
from colloquy.transcript import Response, TextSegment, ToolCall, ToolCalls


# ---------------------------------------------------------------------------
# Mock provider
# ---------------------------------------------------------------------------

class MockProvider(ModelProvider):
    """Provider that returns pre-queued entries. No network calls.

    ``responses`` feeds ``generate()``: each item is an entry to return or
    an exception to raise. ``streams`` feeds ``stream()``: each item is a
    list of deltas, and an exception in the list is raised at that point.
    When ``streams`` is empty, ``stream()`` replays ``generate()``.
    """

    model = "mock-model"
    system = "mock"

    def __init__(self):
        self.responses: list = []
        self.streams: list[list] = []
        self.call_log: list[dict] = []

    async def generate(self, transcript):
        self.call_log.append({"method": "generate", "entries": transcript.entries})
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def stream(self, transcript):
        if not self.streams:
            async for delta in super().stream(transcript):
                yield delta
            return
        self.call_log.append({"method": "stream", "entries": transcript.entries})
        for item in self.streams.pop(0):
            if isinstance(item, BaseException):
                raise item
            await asyncio.sleep(0)
            yield item


# ---------------------------------------------------------------------------
# Entry builder helpers
# ---------------------------------------------------------------------------

def make_text_response(text: str) -> Response:
    """Fake model response with text only (no tool calls)."""
    return Response(segments=[TextSegment(content=text)])


def make_tool_calls(calls: list[tuple[str, dict, str]]) -> ToolCalls:
    """Fake model reply requesting several tools.

    Each item in *calls* is ``(tool_name, args_dict, call_id)``.
    """
    return ToolCalls(calls=[
        ToolCall(id=call_id, tool_name=name, arguments=GeneratedContent.from_python(args))
        for name, args, call_id in calls
    ])


def make_tool_call(name: str, args: dict, call_id: str = "call_1") -> ToolCalls:
    """Fake model reply requesting a single tool."""
    return make_tool_calls([(name, args, call_id)])


def text_deltas(*chunks: str) -> list[ResponseDelta]:
    return [ResponseDelta(text=chunk) for chunk in chunks]


def tool_call_deltas(name: str, argument_chunks: list[str], call_id: str = "call_1") -> list[ResponseDelta]:
    """Deltas carrying one tool call whose arguments arrive in pieces."""
    deltas = [ResponseDelta(tool_call_fragments=[
        ToolCallFragment(index=0, call_id=call_id, name=name),
    ])]
    for chunk in argument_chunks:
        deltas.append(ResponseDelta(tool_call_fragments=[
            ToolCallFragment(index=0, arguments_delta=chunk),
        ]))
    return deltas


# ---------------------------------------------------------------------------
# Tools shared across tests
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool(name="Weather")
def weather(city: str = "Oslo"):
    """Report the current temperature."""
    return "22°C"


@pytest.fixture
def mock_provider():
    return MockProvider()


@pytest.fixture
def sample_tool():
    @tool
    def greet(name: str):
        """Say hello."""
        return f"Hello {name}"
    return greet


@pytest.fixture
def sample_async_tool():
    @tool
    async def async_greet(name: str):
        """Async greeting."""
        return f"Hello async {name}"
    return async_greet


@pytest.fixture
def sample_context_tool():
    @tool
    def history(context: ToolContext, query: str):
        """Tool that reads the transcript through its context."""
        return f"entries={len(context.transcript)}, call={context.call.id}, query={query}"
    return history
