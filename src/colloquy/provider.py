import logging
import os
import re
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

from colloquy.errors import UnexpectedEntryError
from colloquy.instrumentation import generation_span, record_error, record_usage
from colloquy.options import GenerationOptions
from colloquy.streaming import ResponseDelta, ToolCallFragment, parse_arguments
from colloquy.transcript import (
    Entry,
    Instructions,
    Prompt,
    Response,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolOutput,
    Transcript,
)

logger = logging.getLogger(__name__)


class ModelProvider:
    """The model collaborator a session talks to.

    Subclasses implement :meth:`generate`. :meth:`stream` defaults to
    replaying the one-shot result as a single delta.
    """

    model: str = "unknown"
    system: str = "unknown"

    async def generate(self, transcript: Transcript) -> Entry:
        """Return the next entry (a Response or ToolCalls) for *transcript*."""
        raise NotImplementedError

    async def stream(self, transcript: Transcript) -> AsyncIterator[ResponseDelta]:
        entry = await self.generate(transcript)
        if isinstance(entry, ToolCalls):
            yield ResponseDelta(tool_call_fragments=[
                ToolCallFragment(
                    index=i, call_id=call.id, name=call.tool_name,
                    arguments_delta=call.arguments.encode(),
                )
                for i, call in enumerate(entry.calls)
            ])
        elif isinstance(entry, Response):
            yield ResponseDelta(text=entry.text)
        else:
            raise UnexpectedEntryError(entry.kind)


def _format_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name)[:64] or "response"


class OpenAICompatibleProvider(ModelProvider):
    """Talks to any OpenAI-compatible chat completions endpoint.

    The transcript is rendered to chat messages on every call: instructions
    become the system message, prompts user messages, tool calls and
    responses assistant messages, and tool outputs ``tool`` messages.
    """

    system = "openai"

    def __init__(
        self,
        model: str,
        base_url: str | None = None,
        api_key: str | None = None,
        max_retries: int = 5,
        timeout: float = 600.0,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/") if base_url else None
        if client is None:
            client = AsyncOpenAI(
                base_url=self.base_url,
                api_key=api_key or "DUMMY",
                max_retries=max_retries,
                timeout=timeout,
            )
        self.client = client

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def messages(self, transcript: Transcript) -> list[dict[str, Any]]:
        messages = []
        for entry in transcript:
            if isinstance(entry, Instructions):
                if entry.segments:
                    messages.append({"role": "system", "content": entry.text})
            elif isinstance(entry, Prompt):
                messages.append({"role": "user", "content": entry.text})
            elif isinstance(entry, Response):
                messages.append({"role": "assistant", "content": entry.text})
            elif isinstance(entry, ToolCalls):
                messages.append({
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.tool_name,
                                "arguments": call.arguments.encode(),
                            },
                        }
                        for call in entry.calls
                    ],
                })
            elif isinstance(entry, ToolOutput):
                messages.append({
                    "role": "tool", "tool_call_id": entry.id, "content": entry.text,
                })
        return messages

    def tools(self, transcript: Transcript) -> list[dict[str, Any]]:
        if not len(transcript) or not isinstance(transcript[0], Instructions):
            return []
        return [
            {
                "type": "function",
                "function": {
                    "name": d.name,
                    "description": d.description,
                    "parameters": d.parameters.to_json_schema(),
                },
            }
            for d in transcript[0].tool_definitions
        ]

    @staticmethod
    def options(options: GenerationOptions) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.maximum_response_tokens is not None:
            kwargs["max_tokens"] = options.maximum_response_tokens
        sampling = options.sampling
        if sampling is not None:
            if sampling.type == "greedy":
                kwargs["temperature"] = 0.0
            elif sampling.type == "top_p":
                kwargs["top_p"] = sampling.threshold
            elif sampling.type == "top_k":
                # Not part of the OpenAI API; vLLM and OpenRouter accept it.
                kwargs["extra_body"] = {"top_k": sampling.k}
            if sampling.seed is not None:
                kwargs["seed"] = sampling.seed
        return kwargs

    def request(self, transcript: Transcript) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self.messages(transcript),
        }
        tools = self.tools(transcript)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        prompt = next((e for e in reversed(transcript.entries) if isinstance(e, Prompt)), None)
        if prompt is not None:
            kwargs.update(self.options(prompt.options))
            fmt = prompt.response_format
            if fmt is not None and fmt.schema_ is not None:
                kwargs["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {
                        "name": _format_name(fmt.name),
                        "schema": fmt.schema_.to_json_schema(),
                    },
                }
            elif fmt is not None:
                kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    @staticmethod
    def _entry(message) -> Entry:
        if message.tool_calls:
            return ToolCalls(calls=[
                ToolCall(
                    id=tc.id,
                    tool_name=tc.function.name,
                    arguments=parse_arguments(tc.function.arguments or ""),
                )
                for tc in message.tool_calls
            ])
        return Response(segments=[TextSegment(content=message.content or "")])

    async def generate(self, transcript: Transcript) -> Entry:
        request = self.request(transcript)
        async with generation_span(self.system, self.model) as span:
            try:
                completion = await self.client.chat.completions.create(**request)
            except Exception as e:
                record_error(span, e)
                raise
            record_usage(span, getattr(completion, "usage", None), getattr(completion, "model", None))
        entry = self._entry(completion.choices[0].message)
        logger.debug(f"{self.model} returned a {entry.kind} entry")
        return entry

    async def stream(self, transcript: Transcript) -> AsyncIterator[ResponseDelta]:
        request = self.request(transcript)
        async with generation_span(self.system, self.model) as span:
            try:
                chunks = await self.client.chat.completions.create(**request, stream=True)
                async for chunk in chunks:
                    if getattr(chunk, "usage", None) is not None:
                        record_usage(span, chunk.usage, getattr(chunk, "model", None))
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    fragments = [
                        ToolCallFragment(
                            index=tc.index,
                            call_id=tc.id,
                            name=tc.function.name if tc.function else None,
                            arguments_delta=tc.function.arguments if tc.function else None,
                        )
                        for tc in choice.delta.tool_calls or []
                    ]
                    yield ResponseDelta(
                        text=choice.delta.content,
                        tool_call_fragments=fragments or None,
                        finish_reason=choice.finish_reason,
                    )
            except Exception as e:
                record_error(span, e)
                raise


class OpenAIProvider(OpenAICompatibleProvider):

    def __init__(self, model: str = "gpt-4o-mini", api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        super().__init__(model, api_key=api_key, **kwargs)


class OpenRouter(OpenAICompatibleProvider):
    system = "openrouter"

    def __init__(self, model: str, api_key: str | None = None, **kwargs):
        if not api_key:
            api_key = os.getenv("OPENROUTER_API_KEY")
        kwargs.setdefault("timeout", 180.0)
        super().__init__(
            model, base_url="https://openrouter.ai/api/v1", api_key=api_key, **kwargs,
        )


class VLLMProvider(OpenAICompatibleProvider):
    system = "vllm"

    def __init__(self, model: str, url: str, port: int, **kwargs):
        super().__init__(model, base_url=f"http://{url}:{port}/v1", **kwargs)
