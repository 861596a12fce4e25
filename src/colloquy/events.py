"""Streaming events emitted while a turn runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from colloquy.streaming import Snapshot


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class SnapshotEvent(StreamEvent):
    """Best-effort view of the response after one text delta."""

    snapshot: Snapshot


@dataclass
class EntryEvent(StreamEvent):
    """An entry was committed to the transcript."""

    entry: Any = None


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event, always the last one yielded."""

    result: Any = None
