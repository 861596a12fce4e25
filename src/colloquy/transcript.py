"""The transcript: an append-only, ordered record of one conversation.

Entries are frozen pydantic models discriminated by ``kind``. A
:class:`Transcript` serializes to a single JSON document::

    {"entries": [{"kind": "prompt", "id": "...", "segments": [...], ...}, ...]}

and :meth:`Transcript.model_validate_json` restores an equal log.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_serializer

from colloquy.content import GeneratedContent
from colloquy.options import GenerationOptions
from colloquy.schema import GenerationSchema, decode, is_structured, parse_response, shape_name


def _new_id() -> str:
    return str(uuid.uuid4())


# ----------------------------------------------------------------------
# Segments
# ----------------------------------------------------------------------

class TextSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    id: str = Field(default_factory=_new_id)
    content: str

    @property
    def text(self) -> str:
        return self.content


class StructuredSegment(BaseModel):
    """Structured content, labelled with the shape or party it came from."""

    model_config = ConfigDict(frozen=True)

    type: Literal["structure"] = "structure"
    id: str = Field(default_factory=_new_id)
    source: str
    content: GeneratedContent

    @property
    def text(self) -> str:
        return self.content.encode()


Segment = Annotated[Union[TextSegment, StructuredSegment], Field(discriminator="type")]


def _join(segments: Iterable[TextSegment | StructuredSegment]) -> str:
    return "\n".join(segment.text for segment in segments)


# ----------------------------------------------------------------------
# Supporting records
# ----------------------------------------------------------------------

class ToolDefinition(BaseModel):
    """What the model is told about one registered tool."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: GenerationSchema = Field(default_factory=GenerationSchema)


class ResponseFormat(BaseModel):
    """The structure a prompt asked the model to answer in.

    Serialized as ``{"name": "schema-based", "schema": ...}`` for a plain
    schema, or ``{"name": T, "type": T, "schema": ...}`` for a named type.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str
    type: str | None = None
    schema_: GenerationSchema | None = Field(default=None, alias="schema")

    @model_serializer(mode="wrap")
    def _omit_missing_type(self, handler):
        data = handler(self)
        if data.get("type") is None:
            data.pop("type", None)
        return data

    @classmethod
    def for_shape(cls, shape: Any) -> ResponseFormat | None:
        """Describe *shape*, or ``None`` when it asks for plain text."""
        if not is_structured(shape):
            return None
        if isinstance(shape, GenerationSchema):
            return cls(name="schema-based", schema=shape)
        name = shape_name(shape)
        schema = getattr(shape, "generation_schema", None)
        if schema is None and shape is not GeneratedContent:
            schema = GenerationSchema.for_type(shape)
        return cls(name=name, type=name, schema=schema)


class ToolCall(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    tool_name: str
    arguments: GeneratedContent = Field(default_factory=GeneratedContent.object)


# ----------------------------------------------------------------------
# Entries
# ----------------------------------------------------------------------

class _Entry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)


class Instructions(_Entry):
    """Session-wide guidance for the model; at most one, always first."""

    kind: Literal["instructions"] = "instructions"
    segments: list[Segment] = Field(default_factory=list)
    tool_definitions: list[ToolDefinition] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return _join(self.segments)


class Prompt(_Entry):
    kind: Literal["prompt"] = "prompt"
    segments: list[Segment] = Field(default_factory=list)
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    response_format: ResponseFormat | None = None

    @property
    def text(self) -> str:
        return _join(self.segments)


class Response(_Entry):
    kind: Literal["response"] = "response"
    asset_ids: list[str] = Field(default_factory=list)
    segments: list[Segment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return _join(self.segments)

    def decode(self, shape: Any = None) -> Any:
        """Return the response content decoded against *shape*.

        Without a structured shape this is the response text. Otherwise
        the last structured segment is used, or the text is parsed as JSON (bare
        text is accepted for scalar shapes).

        Raises:
            DecodeError: If the text is not JSON or does not fit *shape*.
        """
        if not is_structured(shape):
            return self.text
        structured = [s for s in self.segments if isinstance(s, StructuredSegment)]
        if structured:
            content = structured[-1].content
        else:
            content = parse_response(self.text, shape)
        return decode(content, shape)


class ToolCalls(_Entry):
    """One batch of tool calls requested by the model."""

    kind: Literal["tool_calls"] = "tool_calls"
    calls: list[ToolCall] = Field(default_factory=list)


class ToolOutput(_Entry):
    """The result of one tool call; ``id`` matches the call's id."""

    kind: Literal["tool_output"] = "tool_output"
    tool_name: str
    segments: list[Segment] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return _join(self.segments)


Entry = Annotated[
    Union[Instructions, Prompt, Response, ToolCalls, ToolOutput],
    Field(discriminator="kind"),
]
ENTRY_TYPES = (Instructions, Prompt, Response, ToolCalls, ToolOutput)


# ----------------------------------------------------------------------
# Transcript
# ----------------------------------------------------------------------

class _TranscriptDocument(BaseModel):
    entries: list[Entry] = Field(default_factory=list)


class Transcript:
    """Append-only, ordered sequence of entries.

    Entries are never replaced or removed once appended. An
    :class:`Instructions` entry may only appear first.
    """

    def __init__(self, entries: Iterable[Entry] = ()):
        self._entries: list[Entry] = []
        self.extend(entries)

    @property
    def entries(self) -> tuple[Entry, ...]:
        return tuple(self._entries)

    def append(self, entry: Entry) -> None:
        self._check(entry, len(self._entries))
        self._entries.append(entry)

    def extend(self, entries: Iterable[Entry]) -> None:
        """Append several entries; either all are appended or none."""
        batch = list(entries)
        for offset, entry in enumerate(batch):
            self._check(entry, len(self._entries) + offset)
        self._entries.extend(batch)

    @staticmethod
    def _check(entry: Any, position: int) -> None:
        if not isinstance(entry, ENTRY_TYPES):
            raise TypeError(f"Not a transcript entry: {type(entry).__name__}")
        if isinstance(entry, Instructions) and position != 0:
            raise ValueError("Instructions must be the first transcript entry")

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(tuple(self._entries))

    def __getitem__(self, index):
        if isinstance(index, slice):
            return tuple(self._entries[index])
        return self._entries[index]

    def __eq__(self, other):
        if not isinstance(other, Transcript):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self):
        kinds = ", ".join(entry.kind for entry in self._entries)
        return f"Transcript([{kinds}])"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def model_dump(self) -> dict[str, Any]:
        return _TranscriptDocument(entries=self._entries).model_dump(
            mode="json", by_alias=True,
        )

    def model_dump_json(self, indent: int | None = None) -> str:
        return _TranscriptDocument(entries=self._entries).model_dump_json(
            by_alias=True, indent=indent,
        )

    @classmethod
    def model_validate(cls, data: dict[str, Any]) -> Transcript:
        return cls(_TranscriptDocument.model_validate(data).entries)

    @classmethod
    def model_validate_json(cls, text: str | bytes) -> Transcript:
        return cls(_TranscriptDocument.model_validate_json(text).entries)
