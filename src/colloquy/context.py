from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from colloquy.session import Session
    from colloquy.transcript import ToolCall, Transcript


@dataclass
class ToolContext:
    """Runtime context injected into tools that declare a ``context`` parameter.

    The Runner builds one per tool call before dispatching it. Tools can
    read the conversation so far, but must not append to it; the Runner
    is the only writer.

    Args:
        session: The session whose turn requested the call.
        call: The tool call being executed.
    """

    session: Session
    call: ToolCall

    @property
    def transcript(self) -> Transcript:
        return self.session.transcript
