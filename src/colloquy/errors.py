"""Typed errors raised by colloquy.

Every error derives from :class:`ColloquyError` so callers can catch the
whole family, or branch on the concrete subclass.
"""

from __future__ import annotations


class ColloquyError(Exception):
    """Base class for all colloquy errors."""


class MalformedInputError(ColloquyError):
    """Content could not be parsed at all (e.g. invalid JSON text)."""


class ShapeMismatchError(ColloquyError):
    """A content value has the wrong variant for the requested projection.

    Args:
        expected: Name of the shape the caller asked for.
        actual: Name of the variant the content actually holds.
    """

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected}, got {actual}")


class DecodeError(ColloquyError):
    """Well-formed content failed to decode into the target shape."""


class ToolNotFoundError(ColloquyError):
    """The model asked for a tool that is not registered."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found")


class ToolExecutionError(ColloquyError):
    """A tool failed while decoding its arguments, running, or encoding output.

    The original exception is available as ``underlying`` and is also
    chained as ``__cause__``.
    """

    def __init__(self, tool_name: str, underlying: BaseException):
        self.tool_name = tool_name
        self.underlying = underlying
        super().__init__(f"Tool call error in '{tool_name}': {underlying}")


class UnexpectedEntryError(ColloquyError):
    """The model returned an entry kind that cannot appear mid-turn."""

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Model returned unexpected '{kind}' entry")


class TurnLimitExceededError(ColloquyError):
    """A turn used more model rounds or more time than its budget allows."""

    def __init__(self, rounds: int, elapsed: float, reason: str):
        self.rounds = rounds
        self.elapsed = elapsed
        super().__init__(
            f"Turn limit exceeded after {rounds} rounds "
            f"({elapsed:.2f}s): {reason}"
        )


class SessionBusyError(ColloquyError):
    """The session is already responding to another request."""

    def __init__(self):
        super().__init__("Session is already responding")
