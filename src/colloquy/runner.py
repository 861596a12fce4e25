import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from colloquy.content import Kind
from colloquy.context import ToolContext
from colloquy.errors import ToolExecutionError, TurnLimitExceededError, UnexpectedEntryError
from colloquy.events import EntryEvent, RunCompleteEvent, SnapshotEvent, StreamEvent
from colloquy.instrumentation import record_error, record_rounds, session_span, tool_span
from colloquy.streaming import StreamAggregator, structure_response
from colloquy.tools import Tool
from colloquy.transcript import (
    Entry,
    Prompt,
    Response,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolOutput,
)

if TYPE_CHECKING:
    from colloquy.session import Session

logger = logging.getLogger(__name__)


@dataclass
class SessionResult:
    """The result of one turn.

    Args:
        content: The response decoded against the requested shape, or its
            text when no shape was requested.
        response: The committed Response entry.
        entries: Every entry committed during the turn, prompt first.
    """

    content: Any
    response: Response
    entries: list[Entry] = field(default_factory=list)

    @property
    def text(self) -> str:
        return self.response.text


class Runner:
    """Drives one turn: prompt, model, tools, model, ..., response.

    Every round commits atomically: a ToolCalls entry is appended together
    with all of its ToolOutputs (in call order) or not at all, and a
    Response only after it decodes. Any error aborts the turn.

    ``run()`` drains ``iter()``.  ``iter()`` is the streaming entry point.

    Args:
        max_rounds: Maximum number of model calls per turn.
        max_duration: Maximum seconds a turn may run, checked before each
            model call. ``None`` disables the check.
        parallel_tool_calls: Run the calls of one batch concurrently.
    """

    def __init__(
        self,
        max_rounds: int = 50,
        max_duration: float | None = None,
        parallel_tool_calls: bool = True,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.max_rounds = max_rounds
        self.max_duration = max_duration
        self.parallel_tool_calls = parallel_tool_calls

    async def run(self, session: "Session", prompt: Prompt, shape: Any = None) -> SessionResult:
        """Run the turn to completion without streaming."""
        result: SessionResult | None = None
        async for event in self.iter(session, prompt, shape):
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("iter() ended without emitting RunCompleteEvent")
        return result

    async def iter(
        self, session: "Session", prompt: Prompt, shape: Any = None,
        stream: bool = False,
    ) -> AsyncIterator[StreamEvent]:
        """Run the turn, yielding events as execution proceeds.

        With ``stream=True`` the model is consumed through its streaming
        interface and a :class:`SnapshotEvent` follows every text delta.
        """
        transcript = session.transcript
        provider = session.provider
        committed: list[Entry] = []
        started = time.monotonic()
        rounds = 0

        async with session_span(session.session_id, provider.model) as span:
            try:
                transcript.append(prompt)
                committed.append(prompt)
                yield EntryEvent(entry=prompt)

                while True:
                    self._check_budget(rounds, started)
                    rounds += 1
                    logger.info(f"Session {session.session_id}: model round {rounds}")

                    if stream:
                        aggregator = StreamAggregator(shape=shape)
                        async for delta in provider.stream(transcript):
                            snapshot = aggregator.feed(delta)
                            if snapshot is not None:
                                yield SnapshotEvent(snapshot=snapshot)
                        entry = aggregator.finalize()
                    else:
                        entry = await provider.generate(transcript)

                    if isinstance(entry, Response):
                        if stream:
                            response, content = entry, aggregator.content
                        else:
                            response, content = structure_response(entry, shape)
                        transcript.append(response)
                        committed.append(response)
                        logger.info(
                            f"Session {session.session_id}: response committed "
                            f"after {rounds} round(s)"
                        )
                        record_rounds(span, rounds)
                        yield EntryEvent(entry=response)
                        yield RunCompleteEvent(result=SessionResult(
                            content=content, response=response, entries=committed,
                        ))
                        return

                    if isinstance(entry, ToolCalls):
                        outputs = await self._execute_tools(session, entry)
                        transcript.extend([entry, *outputs])
                        committed.extend([entry, *outputs])
                        for item in (entry, *outputs):
                            yield EntryEvent(entry=item)
                        continue

                    raise UnexpectedEntryError(getattr(entry, "kind", type(entry).__name__))
            except Exception as e:
                logger.error(f"Session {session.session_id}: turn failed: {e}")
                record_error(span, e)
                raise

    def _check_budget(self, rounds: int, started: float) -> None:
        elapsed = time.monotonic() - started
        if rounds >= self.max_rounds:
            raise TurnLimitExceededError(rounds, elapsed, f"max_rounds={self.max_rounds}")
        if self.max_duration is not None and elapsed > self.max_duration:
            raise TurnLimitExceededError(rounds, elapsed, f"max_duration={self.max_duration}s")

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_tools(self, session: "Session", batch: ToolCalls) -> list[ToolOutput]:
        # Resolve every name first so an unknown tool aborts before any side effect.
        resolved = [(call, session.tools.resolve(call.tool_name)) for call in batch.calls]
        if self.parallel_tool_calls and len(resolved) > 1:
            return await self._execute_parallel(session, resolved)
        return [await self._execute_one(session, call, t) for call, t in resolved]

    async def _execute_parallel(
        self, session: "Session", resolved: list[tuple[ToolCall, Tool]],
    ) -> list[ToolOutput]:
        tasks = [
            asyncio.ensure_future(self._execute_one(session, call, t))
            for call, t in resolved
        ]
        try:
            # gather keeps argument order regardless of completion order.
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _execute_one(self, session: "Session", call: ToolCall, t: Tool) -> ToolOutput:
        async with tool_span(call.tool_name, call.id) as span:
            logger.info(f"Calling {call.tool_name} ({call.id}) with {call.arguments}")
            try:
                arguments = t.decode_arguments(call.arguments)
                result = await t.invoke(arguments, context=ToolContext(session=session, call=call))
                output = t.encode_output(result)
            except Exception as e:
                logger.error(f"Tool {call.tool_name} raised: {e}")
                record_error(span, e)
                raise ToolExecutionError(call.tool_name, e) from e

        if output.kind is Kind.STRING:
            segment = TextSegment(content=str(output))
        else:
            segment = StructuredSegment(source=call.tool_name, content=output)
        return ToolOutput(id=call.id, tool_name=call.tool_name, segments=[segment])
