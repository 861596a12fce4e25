"""Streaming primitives for model responses.

Providers yield :class:`ResponseDelta` objects. A :class:`StreamAggregator`
folds them into one buffer, producing a :class:`Snapshot` after every text
delta, and finalizes exactly once into a single transcript entry. The
:class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple deltas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from colloquy.content import GeneratedContent
from colloquy.errors import MalformedInputError
from colloquy.schema import decode, is_structured, parse_response, shape_name
from colloquy.transcript import (
    Response,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    Transcript,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class ResponseDelta:
    """Normalised streaming chunk from any provider.

    ``text`` is appended to the buffer, or replaces it when ``replace``
    is set (for sources that resend the complete text so far).
    """

    text: str | None = None
    replace: bool = False
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class Snapshot:
    """Best-effort view of a response while it streams.

    ``content`` is the parsed buffer when it is complete JSON, otherwise
    the raw text as a string value.
    """

    text: str
    content: GeneratedContent

    @property
    def partial(self) -> GeneratedContent:
        """The buffer read as a JSON prefix, with open structures closed."""
        return GeneratedContent.parse_partial(self.text)


def parse_arguments(text: str) -> GeneratedContent:
    """Parse a tool call's argument text.

    Empty text means no arguments. Text that is not JSON is kept as a
    string so the tool's decoder reports the failure.
    """
    if not text.strip():
        return GeneratedContent.object()
    try:
        return GeneratedContent.parse(text)
    except MalformedInputError as e:
        logger.warning(f"Tool call arguments are not valid JSON: {e}")
        return GeneratedContent.string(text)


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments."""

    def __init__(self) -> None:
        self._pending: dict[int, _PendingCall] = {}

    def __bool__(self) -> bool:
        return bool(self._pending)

    def feed(self, fragment: ToolCallFragment) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = _PendingCall()
        tc = self._pending[fragment.index]
        if fragment.call_id is not None:
            tc.id = fragment.call_id
        if fragment.name is not None:
            tc.name = fragment.name
        if fragment.arguments_delta is not None:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order."""
        calls = []
        for i in sorted(self._pending):
            pending = self._pending[i]
            fields: dict[str, Any] = {
                "tool_name": pending.name,
                "arguments": parse_arguments(pending.arguments),
            }
            if pending.id:
                fields["id"] = pending.id
            calls.append(ToolCall(**fields))
        return calls


def structure_response(response: Response, shape: Any = None) -> tuple[Response, Any]:
    """Decode *response* against *shape*.

    Returns the entry to commit and the decoded content. For a structured
    shape a text-only response is rewritten into one structured segment
    labelled with the shape's name.

    Raises:
        DecodeError: If the text is not JSON or does not fit *shape*.
    """
    if not is_structured(shape):
        return response, response.text

    structured = [s for s in response.segments if isinstance(s, StructuredSegment)]
    if structured:
        return response, decode(structured[-1].content, shape)

    content = parse_response(response.text, shape)
    value = decode(content, shape)
    segment = StructuredSegment(source=shape_name(shape), content=content)
    return response.model_copy(update={"segments": [segment]}), value


@dataclass
class StreamAggregator:
    """Folds response deltas into snapshots and one final entry.

    Dropping an aggregator without calling :meth:`finalize` commits
    nothing.

    Args:
        shape: Target shape for the final response, or ``None`` for text.
        transcript: If given, the final Response is appended to it.
    """

    shape: Any = None
    transcript: Transcript | None = None
    last: Snapshot | None = field(default=None, init=False)
    content: Any = field(default=None, init=False)
    _buffer: str = field(default="", init=False, repr=False)
    _tool_calls: ToolCallAccumulator = field(
        default_factory=ToolCallAccumulator, init=False, repr=False,
    )
    _result: Response | ToolCalls | None = field(default=None, init=False, repr=False)

    @property
    def text(self) -> str:
        return self._buffer

    @property
    def finalized(self) -> bool:
        return self._result is not None

    def feed(self, delta: ResponseDelta) -> Snapshot | None:
        """Apply one delta; return a new Snapshot if it carried text."""
        if self._result is not None:
            raise RuntimeError("Cannot feed a finalized stream")
        for fragment in delta.tool_call_fragments or ():
            self._tool_calls.feed(fragment)
        if delta.text is None:
            return None

        self._buffer = delta.text if delta.replace else self._buffer + delta.text
        try:
            content = GeneratedContent.parse(self._buffer)
        except MalformedInputError:
            content = GeneratedContent.string(self._buffer)
        self.last = Snapshot(text=self._buffer, content=content)
        return self.last

    def finalize(self) -> Response | ToolCalls:
        """Build the final entry. Safe to call more than once.

        Tool calls, if any arrived, take precedence and are returned
        uncommitted; the caller runs them. Otherwise the buffer is
        decoded and exactly one Response is appended to ``transcript``.

        Raises:
            DecodeError: If a structured shape was requested and the
                buffer does not decode. Nothing is committed.
        """
        if self._result is not None:
            return self._result

        if self._tool_calls:
            if self._buffer:
                logger.debug(f"Dropping {len(self._buffer)} chars of text alongside tool calls")
            self._result = ToolCalls(calls=self._tool_calls.finalize())
            return self._result

        response, self.content = structure_response(
            Response(segments=[TextSegment(content=self._buffer)]), self.shape,
        )
        if self.transcript is not None:
            self.transcript.append(response)
        self._result = response
        return response
