"""Weather session example: tools, structured output and streaming.

Demonstrates:

- Defining tools with ``@tool`` and hiding fixed arguments with ``Tool.bind()``

- Asking for a structured reply with ``generating=``

- Streaming snapshots with ``Session.stream_response``

- Saving the transcript and resuming it later

- OpenTelemetry tracing with ConsoleSpanExporter (``--trace``)

Usage:
    Add OPENAI_API_KEY=sk-... to .env, then:
    uv run --env-file=.env examples/weather_session.py --stream
"""

import argparse
import asyncio
import logging
import pathlib

from pydantic import BaseModel

from colloquy import (
    GenerationOptions,
    OpenAIProvider,
    Session,
    ToolContext,
    Transcript,
    instrument,
    tool,
    uninstrument,
)

TEMPERATURES = {"oslo": 4, "lisbon": 19, "nairobi": 22}


@tool
def get_temperature(units: str, city: str) -> dict:
    """Look up the current temperature for a city.

    Args:
        units: "celsius" or "fahrenheit".
        city: Name of the city.
    """
    celsius = TEMPERATURES.get(city.lower())
    if celsius is None:
        return {"city": city, "known": False}
    value = celsius if units == "celsius" else round(celsius * 9 / 5 + 32)
    return {"city": city, "known": True, "temperature": value, "units": units}


@tool
def turn_count(context: ToolContext) -> int:
    """Return how many entries the conversation has so far."""
    return len(context.transcript)


class Forecast(BaseModel):
    city: str
    summary: str
    temperature: int


def parse_args():
    parser = argparse.ArgumentParser(description="Chat about the weather")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--units", default="celsius", choices=["celsius", "fahrenheit"])
    parser.add_argument("--stream", action="store_true", help="Stream replies")
    parser.add_argument("--trace", action="store_true", help="Print spans to the console")
    parser.add_argument("--transcript", type=pathlib.Path, help="Transcript file to resume and save")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args()


def configure_tracing():
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor, ConsoleSpanExporter

    tracer_provider = TracerProvider(
        resource=Resource({SERVICE_NAME: "weather-session"})
    )
    tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(tracer_provider)
    instrument()


async def main():
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if args.trace:
        configure_tracing()

    transcript = None
    if args.transcript and args.transcript.exists():
        transcript = Transcript.model_validate_json(args.transcript.read_text())

    session = Session(
        OpenAIProvider(args.model),
        tools=[get_temperature.bind(units=args.units), turn_count],
        instructions="You are a concise weather assistant. Use the tools.",
        transcript=transcript,
    )

    print("Weather assistant. Prefix a message with 'forecast:' for a structured reply.\n")
    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if user_input.startswith("forecast:"):
            result = await session.respond(
                user_input.removeprefix("forecast:").strip(),
                generating=Forecast,
                options=GenerationOptions(temperature=0.2),
            )
            forecast = result.content
            print(f"Assistant: {forecast.city}: {forecast.summary} ({forecast.temperature})\n")
        elif args.stream:
            stream = session.stream_response(user_input)
            printed = 0
            print("Assistant: ", end="", flush=True)
            async for snapshot in stream:
                print(snapshot.text[printed:], end="", flush=True)
                printed = len(snapshot.text)
            print("\n")
        else:
            result = await session.respond(user_input)
            print(f"Assistant: {result.text}\n")

    if args.transcript:
        args.transcript.write_text(session.transcript.model_dump_json(indent=2))
    if args.trace:
        uninstrument()


if __name__ == "__main__":
    asyncio.run(main())
