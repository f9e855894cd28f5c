"""Transcript records for simulated conversations.

A TranscriptBuilder accumulates turns while the conversation engine runs
and produces an immutable Transcript once the conversation terminates.
"""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from voice_gym.types import Speaker, TerminationReason

# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A tool invocation requested by the agent. Recorded, never executed."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Turn(BaseModel):
    """One utterance in the conversation."""

    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    text: str
    node_id: str
    tool_calls: list[ToolCall] = Field(default_factory=list)


class Transcript(BaseModel):
    """Complete record of a terminated conversation plus its metadata."""

    model_config = ConfigDict(frozen=True)

    turns: list[Turn]
    termination_reason: TerminationReason
    turn_count: int
    nodes_visited: list[str]
    tools_called: list[str] = Field(default_factory=list)
    error: str | None = None
    duration_seconds: float = 0.0

    @property
    def text(self) -> str:
        """All utterances joined by newlines, for literal rule checks."""
        return "\n".join(turn.text for turn in self.turns)

    def format(self) -> str:
        """Render the transcript as ``SPEAKER: text`` lines for prompts."""
        return format_turns(self.turns)


def format_turns(turns: list[Turn]) -> str:
    """Render turns as ``USER: ...`` / ``AGENT: ...`` lines."""
    lines: list[str] = []
    for turn in turns:
        line = f"{turn.speaker.value.upper()}: {turn.text}"
        if turn.tool_calls:
            names = ", ".join(call.name for call in turn.tool_calls)
            line += f"  [tools: {names}]"
        lines.append(line)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class TranscriptBuilder:
    """Accumulates turns and node visits for one conversation."""

    def __init__(self, entry_node_id: str) -> None:
        self._turns: list[Turn] = []
        self._nodes_visited: list[str] = [entry_node_id]
        self._tools_called: list[str] = []
        self._started = time.monotonic()

    @property
    def turns(self) -> list[Turn]:
        """A copy of the turns recorded so far."""
        return list(self._turns)

    @property
    def elapsed(self) -> float:
        """Seconds since the builder was created."""
        return time.monotonic() - self._started

    def add_user_turn(self, text: str, node_id: str) -> Turn:
        """Append a simulated-user utterance."""
        turn = Turn(speaker=Speaker.USER, text=text, node_id=node_id)
        self._turns.append(turn)
        return turn

    def add_agent_turn(
        self,
        text: str,
        node_id: str,
        tool_calls: list[ToolCall] | None = None,
    ) -> Turn:
        """Append an agent response and record its tool calls."""
        calls = list(tool_calls or [])
        turn = Turn(speaker=Speaker.AGENT, text=text, node_id=node_id, tool_calls=calls)
        self._turns.append(turn)
        self._tools_called.extend(call.name for call in calls)
        return turn

    def visit(self, node_id: str) -> None:
        """Record entry into a node."""
        self._nodes_visited.append(node_id)

    def finish(
        self,
        reason: TerminationReason,
        turn_count: int,
        error: str | None = None,
    ) -> Transcript:
        """Freeze the accumulated state into a Transcript."""
        return Transcript(
            turns=list(self._turns),
            termination_reason=reason,
            turn_count=turn_count,
            nodes_visited=list(self._nodes_visited),
            tools_called=list(self._tools_called),
            error=error,
            duration_seconds=round(self.elapsed, 3),
        )
