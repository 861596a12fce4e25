from dataclasses import dataclass, field
from unittest.mock import AsyncMock

import pytest

from colloquy.content import GeneratedContent
from colloquy.errors import UnexpectedEntryError
from colloquy.options import GenerationOptions, SamplingMode
from colloquy.provider import (
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)
from colloquy.schema import GenerationSchema
from colloquy.transcript import (
    Instructions,
    Prompt,
    ResponseFormat,
    TextSegment,
    ToolCalls,
    ToolDefinition,
    ToolOutput,
    Transcript,
    Response,
)

from tests.conftest import make_text_response, make_tool_call


# ---------------------------------------------------------------------------
# Fake OpenAI client response objects
# ---------------------------------------------------------------------------

@dataclass
class FakeFunction:
    name: str | None = None
    arguments: str | None = None


@dataclass
class FakeToolCall:
    id: str | None
    function: FakeFunction
    index: int = 0
    type: str = "function"


@dataclass
class FakeMessage:
    content: str | None = None
    tool_calls: list | None = None


@dataclass
class FakeChoice:
    message: FakeMessage


@dataclass
class FakeUsage:
    prompt_tokens: int = 3
    completion_tokens: int = 5


@dataclass
class FakeCompletion:
    choices: list[FakeChoice] = field(default_factory=list)
    usage: FakeUsage | None = None
    model: str = "gpt-4o-2024-08-06"


@dataclass
class FakeDelta:
    content: str | None = None
    tool_calls: list | None = None


@dataclass
class FakeStreamChoice:
    delta: FakeDelta
    finish_reason: str | None = None


@dataclass
class FakeChunk:
    choices: list[FakeStreamChoice] = field(default_factory=list)
    usage: FakeUsage | None = None
    model: str = "gpt-4o"


def _fake_completion(content="hi", tool_calls=None):
    """Build a FakeCompletion matching the OpenAI client shape."""
    return FakeCompletion(
        choices=[FakeChoice(message=FakeMessage(
            content=content, tool_calls=tool_calls,
        ))],
        usage=FakeUsage(),
    )


async def _chunks(*chunks):
    for chunk in chunks:
        yield chunk


def _provider(monkeypatch, return_value):
    provider = OpenAIProvider("gpt-4o", api_key="test-key")
    mock_create = AsyncMock(return_value=return_value)
    monkeypatch.setattr(provider.client.chat.completions, "create", mock_create)
    return provider, mock_create


def _conversation() -> Transcript:
    return Transcript([
        Instructions(
            segments=[TextSegment(content="Be brief.")],
            tool_definitions=[ToolDefinition(
                name="Weather", description="Temperature.",
                parameters=GenerationSchema.object({"city": str}),
            )],
        ),
        Prompt(segments=[TextSegment(content="weather?")]),
        make_tool_call("Weather", {"city": "Oslo"}, call_id="call_1"),
        ToolOutput(id="call_1", tool_name="Weather", segments=[TextSegment(content="22°C")]),
        make_text_response("It's 22°C"),
    ])


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def test_openai_provider_reads_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
    p = OpenAIProvider()
    assert p.client.api_key == "sk-from-env"


def test_openrouter_reads_env(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "or-from-env")
    p = OpenRouter("some/model")
    assert p.client.api_key == "or-from-env"
    assert str(p.client.base_url).startswith("https://openrouter.ai/api/v1")


def test_vllm_base_url():
    p = VLLMProvider("llama", url="localhost", port=8000)
    assert p.base_url == "http://localhost:8000/v1"
    assert p.client.api_key == "DUMMY"


def test_compatible_provider_strips_trailing_slash():
    p = OpenAICompatibleProvider("llama3", base_url="http://localhost:11434/v1/")
    assert p.base_url == "http://localhost:11434/v1"


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

class TestRequest:
    def test_messages_follow_transcript(self):
        messages = OpenAICompatibleProvider("m").messages(_conversation())

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool", "assistant"]
        assert messages[0]["content"] == "Be brief."
        assert messages[2]["tool_calls"] == [{
            "id": "call_1",
            "type": "function",
            "function": {"name": "Weather", "arguments": '{"city": "Oslo"}'},
        }]
        assert messages[3] == {"role": "tool", "tool_call_id": "call_1", "content": "22°C"}
        assert messages[4]["content"] == "It's 22°C"

    def test_tools_come_from_instructions(self):
        request = OpenAICompatibleProvider("m").request(_conversation())

        assert request["tool_choice"] == "auto"
        assert request["tools"][0]["function"]["name"] == "Weather"
        assert request["tools"][0]["function"]["parameters"]["required"] == ["city"]

    def test_no_tools_without_instructions(self):
        request = OpenAICompatibleProvider("m").request(
            Transcript([Prompt(segments=[TextSegment(content="hi")])])
        )
        assert "tools" not in request
        assert "tool_choice" not in request

    def test_response_format_and_options(self):
        prompt = Prompt(
            segments=[TextSegment(content="hi")],
            options=GenerationOptions(
                sampling=SamplingMode.random(probability_threshold=0.9, seed=3),
                maximum_response_tokens=100,
            ),
            response_format=ResponseFormat.for_shape(
                GenerationSchema.object({"message": str}),
            ),
        )
        request = OpenAICompatibleProvider("m").request(Transcript([prompt]))

        assert request["top_p"] == 0.9
        assert request["seed"] == 3
        assert request["max_tokens"] == 100
        assert request["response_format"]["type"] == "json_schema"
        assert request["response_format"]["json_schema"]["name"] == "schema-based"
        assert request["response_format"]["json_schema"]["schema"]["required"] == ["message"]

    @pytest.mark.parametrize(
        "sampling,expected",
        [
            (SamplingMode.greedy(), {"temperature": 0.0}),
            (SamplingMode.random(top=40), {"extra_body": {"top_k": 40}}),
        ],
        ids=["greedy", "top_k"],
    )
    def test_sampling_modes(self, sampling, expected):
        assert OpenAICompatibleProvider.options(GenerationOptions(sampling=sampling)) == expected


# ---------------------------------------------------------------------------
# generate()
# ---------------------------------------------------------------------------

class TestGenerate:
    @pytest.mark.asyncio
    async def test_text_reply_becomes_response(self, monkeypatch):
        provider, mock_create = _provider(monkeypatch, _fake_completion("answer"))

        entry = await provider.generate(Transcript([Prompt(segments=[TextSegment(content="q")])]))

        assert isinstance(entry, Response)
        assert entry.text == "answer"
        _, kwargs = mock_create.call_args
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["messages"] == [{"role": "user", "content": "q"}]

    @pytest.mark.asyncio
    async def test_tool_calls_reply_becomes_tool_calls(self, monkeypatch):
        provider, _ = _provider(monkeypatch, _fake_completion(
            content=None,
            tool_calls=[FakeToolCall(id="call_9", function=FakeFunction("Weather", '{"city": "Oslo"}'))],
        ))

        entry = await provider.generate(Transcript())

        assert isinstance(entry, ToolCalls)
        assert entry.calls[0].id == "call_9"
        assert entry.calls[0].arguments == GeneratedContent.object({"city": "Oslo"})

    @pytest.mark.asyncio
    async def test_errors_propagate(self, monkeypatch):
        provider = OpenAIProvider("gpt-4o", api_key="test-key")
        monkeypatch.setattr(
            provider.client.chat.completions, "create",
            AsyncMock(side_effect=RuntimeError("rate limited")),
        )
        with pytest.raises(RuntimeError, match="rate limited"):
            await provider.generate(Transcript())


# ---------------------------------------------------------------------------
# stream()
# ---------------------------------------------------------------------------

class TestStream:
    @pytest.mark.asyncio
    async def test_chunks_become_deltas(self, monkeypatch):
        provider, mock_create = _provider(monkeypatch, _chunks(
            FakeChunk(choices=[FakeStreamChoice(FakeDelta(content="Hel"))]),
            FakeChunk(choices=[FakeStreamChoice(FakeDelta(content="lo"), finish_reason="stop")]),
            FakeChunk(choices=[], usage=FakeUsage()),
        ))

        deltas = [d async for d in provider.stream(Transcript())]

        assert [d.text for d in deltas] == ["Hel", "lo"]
        assert deltas[-1].finish_reason == "stop"
        _, kwargs = mock_create.call_args
        assert kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_tool_call_fragments(self, monkeypatch):
        provider, _ = _provider(monkeypatch, _chunks(
            FakeChunk(choices=[FakeStreamChoice(FakeDelta(tool_calls=[
                FakeToolCall(id="c1", function=FakeFunction("echo", '{"te')),
            ]))]),
            FakeChunk(choices=[FakeStreamChoice(FakeDelta(tool_calls=[
                FakeToolCall(id=None, function=FakeFunction(None, 'xt": "hi"}')),
            ]))]),
        ))

        deltas = [d async for d in provider.stream(Transcript())]

        fragments = [f for d in deltas for f in d.tool_call_fragments]
        assert fragments[0].call_id == "c1"
        assert fragments[0].name == "echo"
        assert "".join(f.arguments_delta for f in fragments) == '{"text": "hi"}'


# ---------------------------------------------------------------------------
# ModelProvider default stream()
# ---------------------------------------------------------------------------

class _OneShot(ModelProvider):
    def __init__(self, entry):
        self.entry = entry

    async def generate(self, transcript):
        return self.entry


class TestDefaultStream:
    @pytest.mark.asyncio
    async def test_response_replayed_as_one_delta(self):
        deltas = [d async for d in _OneShot(make_text_response("done")).stream(Transcript())]
        assert [d.text for d in deltas] == ["done"]

    @pytest.mark.asyncio
    async def test_tool_calls_replayed_as_fragments(self):
        entry = make_tool_call("echo", {"text": "hi"}, call_id="c7")
        [delta] = [d async for d in _OneShot(entry).stream(Transcript())]
        [fragment] = delta.tool_call_fragments
        assert (fragment.call_id, fragment.name) == ("c7", "echo")
        assert fragment.arguments_delta == '{"text": "hi"}'

    @pytest.mark.asyncio
    async def test_other_entries_rejected(self):
        with pytest.raises(UnexpectedEntryError):
            async for _ in _OneShot(Prompt()).stream(Transcript()):
                pass
