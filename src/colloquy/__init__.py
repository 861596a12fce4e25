from colloquy.content import GeneratedContent, Kind
from colloquy.context import ToolContext
from colloquy.errors import (
    ColloquyError,
    DecodeError,
    MalformedInputError,
    SessionBusyError,
    ShapeMismatchError,
    ToolExecutionError,
    ToolNotFoundError,
    TurnLimitExceededError,
    UnexpectedEntryError,
)
from colloquy.events import EntryEvent, RunCompleteEvent, SnapshotEvent, StreamEvent
from colloquy.instrumentation import instrument, uninstrument
from colloquy.options import GenerationOptions, SamplingMode
from colloquy.provider import (
    ModelProvider,
    OpenAICompatibleProvider,
    OpenAIProvider,
    OpenRouter,
    VLLMProvider,
)
from colloquy.runner import Runner, SessionResult
from colloquy.schema import GenerationSchema, Property
from colloquy.session import ResponseStream, Session
from colloquy.streaming import (
    ResponseDelta,
    Snapshot,
    StreamAggregator,
    ToolCallAccumulator,
    ToolCallFragment,
)
from colloquy.tools import Tool, ToolCallResult, ToolRegistry, tool
from colloquy.transcript import (
    Instructions,
    Prompt,
    Response,
    ResponseFormat,
    StructuredSegment,
    TextSegment,
    ToolCall,
    ToolCalls,
    ToolDefinition,
    ToolOutput,
    Transcript,
)

__all__ = [
    "ColloquyError",
    "DecodeError",
    "EntryEvent",
    "GeneratedContent",
    "GenerationOptions",
    "GenerationSchema",
    "Instructions",
    "Kind",
    "MalformedInputError",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "OpenAIProvider",
    "OpenRouter",
    "Prompt",
    "Property",
    "Response",
    "ResponseDelta",
    "ResponseFormat",
    "ResponseStream",
    "RunCompleteEvent",
    "Runner",
    "SamplingMode",
    "Session",
    "SessionBusyError",
    "SessionResult",
    "ShapeMismatchError",
    "Snapshot",
    "SnapshotEvent",
    "StreamAggregator",
    "StreamEvent",
    "StructuredSegment",
    "TextSegment",
    "Tool",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallFragment",
    "ToolCallResult",
    "ToolCalls",
    "ToolContext",
    "ToolDefinition",
    "ToolExecutionError",
    "ToolNotFoundError",
    "ToolOutput",
    "ToolRegistry",
    "Transcript",
    "TurnLimitExceededError",
    "UnexpectedEntryError",
    "VLLMProvider",
    "instrument",
    "tool",
    "uninstrument",
]
