"""OpenTelemetry spans for sessions, model calls and tool calls.

Tracing is off until :func:`instrument` is called, and every helper here
is a no-op while it is off, so ``opentelemetry-api`` stays optional.

A traced turn looks like::

    invoke_session <session id>
      chat <model>            one per model round
      execute_tool <tool>     one per tool call, siblings when parallel
      chat <model>
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None

# usage attribute on the OpenAI response -> GenAI semantic convention key
_USAGE_ATTRIBUTES = {
    "prompt_tokens": "gen_ai.usage.input_tokens",
    "completion_tokens": "gen_ai.usage.output_tokens",
}


def instrument(*, tracer_name: str = "colloquy") -> None:
    """Start emitting spans through the globally configured TracerProvider.

    Configure the provider first (see ``examples/weather_session.py``), then::

        import colloquy
        colloquy.instrument()

    Raises:
        ImportError: ``opentelemetry-api`` is missing; install the
            ``otel`` extra (``pip install colloquy[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "Tracing needs opentelemetry-api. "
            "Install it with: pip install colloquy[otel]"
        )
    from opentelemetry import trace

    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info("No TracerProvider configured; session spans will be dropped")
    else:
        logger.info(f"Tracing colloquy sessions with tracer '{tracer_name}'")


def uninstrument() -> None:
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, kind: str | None = None):
    if _tracer is None:
        yield None
        return
    kwargs = {"attributes": attributes}
    if kind is not None:
        from opentelemetry.trace import SpanKind

        kwargs["kind"] = getattr(SpanKind, kind)
    with _tracer.start_as_current_span(name, **kwargs) as span:
        yield span


def session_span(session_id: str, model: str):
    """Span covering one turn, from prompt to response or failure."""
    return _span(f"invoke_session {session_id}", {
        "gen_ai.operation.name": "invoke_session",
        "gen_ai.conversation.id": session_id,
        "gen_ai.request.model": model,
    })


def generation_span(system: str, model: str):
    """Client span around one ``generate`` or ``stream`` call."""
    return _span(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
    }, kind="CLIENT")


def tool_span(tool_name: str, call_id: str):
    return _span(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
    })


def record_usage(span, usage, response_model: str | None = None) -> None:
    """Copy token counts and the served model name onto *span*.

    Counts missing from *usage* (some compatible servers omit them)
    are skipped.
    """
    if span is None or usage is None:
        return
    for field, attribute in _USAGE_ATTRIBUTES.items():
        count = getattr(usage, field, None)
        if count is not None:
            span.set_attribute(attribute, count)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_rounds(span, rounds: int) -> None:
    if span is not None:
        span.set_attribute("colloquy.turn.rounds", rounds)


def record_error(span, exception: BaseException) -> None:
    """Mark *span* failed with *exception* and its ``error.type``."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)
