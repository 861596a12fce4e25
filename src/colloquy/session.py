"""Sessions own one transcript and answer one request at a time."""

from __future__ import annotations

import logging
import uuid
import weakref
from collections.abc import AsyncIterator, Iterable
from typing import Any

from colloquy.content import GeneratedContent
from colloquy.errors import SessionBusyError
from colloquy.events import RunCompleteEvent, SnapshotEvent, StreamEvent
from colloquy.options import GenerationOptions
from colloquy.provider import ModelProvider
from colloquy.runner import Runner, SessionResult
from colloquy.streaming import Snapshot
from colloquy.tools import ToolRegistry
from colloquy.transcript import (
    Instructions,
    Prompt,
    ResponseFormat,
    StructuredSegment,
    TextSegment,
    Transcript,
)

logger = logging.getLogger(__name__)

PromptInput = str | GeneratedContent | Iterable[str | GeneratedContent | TextSegment | StructuredSegment]


def _segments(value: Any, source: str) -> list[TextSegment | StructuredSegment]:
    if isinstance(value, str):
        return [TextSegment(content=value)]
    if isinstance(value, GeneratedContent):
        return [StructuredSegment(source=source, content=value)]
    segments = []
    for item in value:
        if isinstance(item, (TextSegment, StructuredSegment)):
            segments.append(item)
        else:
            segments.extend(_segments(item, source))
    return segments


class Session:
    """A conversation with one model.

    The session owns its transcript exclusively; only its Runner appends
    to it. When the transcript starts empty and instructions or tools are
    given, an Instructions entry is written first.

    Example::

        session = Session(OpenAIProvider("gpt-4o-mini"), tools=[get_weather])
        result = await session.respond("What's the weather in Oslo?")
        print(result.text)

    Args:
        provider: The model collaborator.
        tools: Tools the model may call; names must be unique.
        instructions: Guidance for the model, as text, content or segments.
        transcript: An existing transcript to continue.
        runner: Orchestrator settings; defaults to ``Runner()``.
        session_id: Identifier used in logs and spans.
    """

    def __init__(
        self,
        provider: ModelProvider,
        tools: Iterable = (),
        instructions: PromptInput | None = None,
        transcript: Transcript | None = None,
        runner: Runner | None = None,
        session_id: str | None = None,
    ):
        self.provider = provider
        self.tools = ToolRegistry(tools)
        self.transcript = transcript if transcript is not None else Transcript()
        self.runner = runner or Runner()
        self.session_id = session_id or str(uuid.uuid4())
        self._holder: object | None = None

        if len(self.transcript) == 0 and (instructions is not None or len(self.tools)):
            self.transcript.append(Instructions(
                segments=_segments(instructions, "instructions") if instructions is not None else [],
                tool_definitions=self.tools.definitions(),
            ))

    @property
    def is_responding(self) -> bool:
        return self._holder is not None

    def _acquire(self, holder: object) -> None:
        if self._holder is not None:
            raise SessionBusyError()
        self._holder = holder

    def _release(self, holder: object) -> None:
        # A stale holder (e.g. a collected stream) must not free a newer request.
        if self._holder is holder:
            self._holder = None

    def _prompt(
        self, prompt: PromptInput, generating: Any,
        options: GenerationOptions | None, include_schema_in_prompt: bool,
    ) -> Prompt:
        return Prompt(
            segments=_segments(prompt, "prompt"),
            options=options or GenerationOptions(),
            response_format=ResponseFormat.for_shape(generating) if include_schema_in_prompt else None,
        )

    async def respond(
        self,
        prompt: PromptInput,
        generating: Any = None,
        options: GenerationOptions | None = None,
        include_schema_in_prompt: bool = True,
    ) -> SessionResult:
        """Run one turn and return its result.

        Args:
            prompt: Text, structured content, or a list of either.
            generating: Shape to decode the response into; ``None`` for text.
            options: Generation options recorded on the Prompt entry.
            include_schema_in_prompt: Record the response format on the
                Prompt so the model is told the expected structure.

        Raises:
            SessionBusyError: If another request is in progress.
        """
        entry = self._prompt(prompt, generating, options, include_schema_in_prompt)
        holder = object()
        self._acquire(holder)
        try:
            return await self.runner.run(self, entry, generating)
        finally:
            self._release(holder)

    def stream_response(
        self,
        prompt: PromptInput,
        generating: Any = None,
        options: GenerationOptions | None = None,
        include_schema_in_prompt: bool = True,
    ) -> ResponseStream:
        """Start a streaming turn.

        Nothing runs until the stream is first iterated. From then on the
        session is busy until the stream is exhausted, fails, is closed,
        or is garbage collected.

        Raises:
            SessionBusyError: If another request is in progress.
        """
        if self.is_responding:
            raise SessionBusyError()
        entry = self._prompt(prompt, generating, options, include_schema_in_prompt)
        return ResponseStream(self, entry, generating)


class ResponseStream:
    """Single-consumer async iterator of :class:`Snapshot` objects.

    ``async for snapshot in stream`` yields one snapshot per text delta.
    Once the stream is exhausted ``result`` holds the :class:`SessionResult`.
    Closing the stream early, or dropping it, commits nothing for the
    round in flight and frees the session.
    """

    def __init__(self, session: Session, prompt: Prompt, generating: Any = None):
        self._session = session
        self._prompt = prompt
        self._generating = generating
        self._events: AsyncIterator[StreamEvent] | None = None
        self._done = False
        # Separate from self so the finalizer does not keep the stream alive.
        self._holder = object()
        self._finalizer = weakref.finalize(self, session._release, self._holder)
        self.last: Snapshot | None = None
        self.result: SessionResult | None = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> Snapshot:
        if self._done:
            raise StopAsyncIteration
        try:
            if self._events is None:
                self._session._acquire(self._holder)
                self._events = self._session.runner.iter(
                    self._session, self._prompt, self._generating, stream=True,
                )
            while True:
                event = await self._events.__anext__()
                if isinstance(event, SnapshotEvent):
                    self.last = event.snapshot
                    return event.snapshot
                if isinstance(event, RunCompleteEvent):
                    self.result = event.result
        except BaseException:
            self._finish()
            raise

    async def collect(self) -> SessionResult:
        """Drain the stream and return the turn's result."""
        async for _ in self:
            pass
        if self.result is None:
            raise RuntimeError("Stream closed before the response completed")
        return self.result

    async def aclose(self) -> None:
        """Abandon the stream. Entries already committed are kept."""
        if self._done:
            return
        try:
            if self._events is not None:
                await self._events.aclose()
        finally:
            self._finish()

    def _finish(self) -> None:
        self._done = True
        self._finalizer()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
