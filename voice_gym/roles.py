"""Model roles: simulated user, agent under test, judge.

Each role wraps one backend, builds its prompts, and parses its output.
Roles hold no global state; the backends they use are chosen by explicit
RunConfig selectors.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from voice_gym.backends import (
    BackendRegistry,
    Generation,
    GenerationRequest,
    ModelBackend,
    default_registry,
    generate_with_retry,
)
from voice_gym.graph.schema import ToolDefinition
from voice_gym.transcript import Turn, format_turns
from voice_gym.types import JudgeParseError, RunConfig, Speaker

logger = logging.getLogger(__name__)

END_SIGNAL = "[END_CONVERSATION]"
OPENING_CUE = "(The call has connected. Say your first line.)"
EMPTY_AGENT_TEXT = "(no spoken response)"


class _Role:
    """Shared retry plumbing for all roles."""

    role_name = "model"

    def __init__(
        self,
        backend: ModelBackend,
        attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.backend = backend
        self.attempts = attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def _generate(self, request: GenerationRequest) -> Generation:
        return generate_with_retry(
            self.backend,
            request,
            role=self.role_name,
            attempts=self.attempts,
            base_delay=self.base_delay,
            sleep=self._sleep,
        )


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------


@dataclass
class SimulatorReply:
    """Next user utterance, or a goal-complete signal."""

    text: str
    goal_complete: bool = False


class SimulatorRole(_Role):
    """Plays the user described by a persona prompt."""

    role_name = "simulator"

    def build_system_prompt(self, persona: str) -> str:
        """Build the simulator's system prompt from the persona."""
        return (
            "You are role-playing a caller talking to a voice agent on the phone.\n"
            "Stay in character and speak naturally, one short utterance at a time.\n\n"
            f"Your persona and goal:\n{persona}\n\n"
            f"When your goal has been achieved, or the conversation has clearly ended, "
            f"reply with exactly {END_SIGNAL} and nothing else."
        )

    def next_utterance(
        self,
        persona: str,
        turns: list[Turn],
        timeout: float | None = None,
    ) -> SimulatorReply:
        """Produce the next user utterance from the persona and history."""
        messages: list[dict[str, str]] = [{"role": "user", "content": OPENING_CUE}]
        for turn in turns:
            if turn.speaker is Speaker.USER:
                messages.append({"role": "assistant", "content": turn.text})
            else:
                messages.append({"role": "user", "content": turn.text or EMPTY_AGENT_TEXT})
        if len(messages) > 1 and messages[-1]["role"] == "assistant":
            messages.append({"role": "user", "content": EMPTY_AGENT_TEXT})

        generation = self._generate(
            GenerationRequest(
                system=self.build_system_prompt(persona),
                messages=messages,
                timeout=timeout,
            )
        )
        text = generation.text.strip()
        if not text or END_SIGNAL in text:
            return SimulatorReply(text="", goal_complete=True)
        return SimulatorReply(text=text)


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class AgentRole(_Role):
    """Plays the agent under test, following the active node's prompt."""

    role_name = "agent"

    def build_system_prompt(self, instructions: str, state_prompt: str) -> str:
        """Combine rendered global instructions and node prompt."""
        sections = []
        if instructions.strip():
            sections.append(instructions.strip())
        if state_prompt.strip():
            sections.append(f"Current step:\n{state_prompt.strip()}")
        sections.append("You are speaking on a phone call. Keep replies brief and conversational.")
        return "\n\n".join(sections)

    def respond(
        self,
        instructions: str,
        state_prompt: str,
        turns: list[Turn],
        tools: list[ToolDefinition],
        timeout: float | None = None,
    ) -> Generation:
        """Produce the agent's response to the latest user turn."""
        messages: list[dict[str, str]] = []
        for turn in turns:
            role = "user" if turn.speaker is Speaker.USER else "assistant"
            messages.append({"role": role, "content": turn.text or EMPTY_AGENT_TEXT})
        request = GenerationRequest(
            system=self.build_system_prompt(instructions, state_prompt),
            messages=messages,
            tools=tools,
            timeout=timeout,
        )
        return self._generate(request)


# ---------------------------------------------------------------------------
# Judge
# ---------------------------------------------------------------------------


@dataclass
class JudgeOutput:
    """Parsed structured judge response."""

    analysis: str
    score: float
    reasoning: str
    confidence: float


def _extract_json_object(raw_text: str) -> dict[str, Any]:
    """Extract a JSON object from model output.

    Tries a direct parse, then fenced code blocks, then the outermost braces.

    Raises:
        JudgeParseError: If no JSON object can be recovered.
    """
    text = raw_text.strip()
    candidates = [text]

    for marker in ("```json", "```"):
        if marker in text:
            start = text.index(marker) + len(marker)
            end = text.find("```", start)
            candidates.append(text[start:end if end != -1 else len(text)].strip())

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed

    msg = "Judge response is not a JSON object"
    raise JudgeParseError(msg, raw=raw_text)


def _unit_interval(data: dict[str, Any], key: str, raw: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        msg = f"Judge field '{key}' is missing or not a number"
        raise JudgeParseError(msg, raw=raw)
    try:
        number = float(value)
    except ValueError as exc:
        msg = f"Judge field '{key}' is not a number: {value!r}"
        raise JudgeParseError(msg, raw=raw) from exc
    if not 0.0 <= number <= 1.0:
        msg = f"Judge field '{key}' out of range [0, 1]: {number}"
        raise JudgeParseError(msg, raw=raw)
    return number


def _text_field(data: dict[str, Any], key: str, raw: str) -> str:
    value = data.get(key)
    if isinstance(value, list):
        return "\n".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value)
    if not isinstance(value, str):
        msg = f"Judge field '{key}' is missing or not text"
        raise JudgeParseError(msg, raw=raw)
    return value


def parse_judge_output(raw_text: str) -> JudgeOutput:
    """Parse the four required judge fields from raw model output.

    Raises:
        JudgeParseError: If any field is missing or malformed.
    """
    data = _extract_json_object(raw_text)
    return JudgeOutput(
        analysis=_text_field(data, "analysis", raw_text),
        score=_unit_interval(data, "score", raw_text),
        reasoning=_text_field(data, "reasoning", raw_text),
        confidence=_unit_interval(data, "confidence", raw_text),
    )


JUDGE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "analysis": {"type": "string", "description": "Requirement-by-requirement evidence."},
        "score": {"type": "number", "minimum": 0, "maximum": 1},
        "reasoning": {"type": "string", "description": "One-paragraph summary."},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["analysis", "score", "reasoning", "confidence"],
}


class JudgeRole(_Role):
    """Scores a transcript against one natural-language criterion."""

    role_name = "judge"

    SYSTEM_PROMPT = (
        "You are a strict evaluator of voice agent conversations.\n"
        "Given a transcript and a success criterion, first list every requirement "
        "contained in the criterion and, for each one, quote the transcript turns "
        "that satisfy or violate it. Only then assign a score equal to the fraction "
        "of requirements satisfied.\n\n"
        "Respond with ONLY a JSON object with these fields, in this order:\n"
        '{"analysis": "<requirement-by-requirement evidence>", '
        '"score": <0.0-1.0>, '
        '"reasoning": "<one-paragraph summary>", '
        '"confidence": <0.0-1.0>}'
    )

    def evaluate(self, transcript_text: str, criteria: str) -> JudgeOutput:
        """Score one criterion.

        Raises:
            ModelInvocationError: If the backend fails after retries.
            JudgeParseError: If the response lacks the required fields.
        """
        prompt = f"Transcript:\n{transcript_text}\n\nCriterion:\n{criteria}"
        generation = self._generate(
            GenerationRequest(
                system=self.SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
                json_mode=True,
                json_schema=JUDGE_SCHEMA,
            )
        )
        return parse_judge_output(generation.text)


# ---------------------------------------------------------------------------
# Natural-language transition conditions
# ---------------------------------------------------------------------------


class LLMConditionJudge(_Role):
    """Answers yes/no natural-language transition predicates."""

    role_name = "transition"

    def __init__(self, *args: Any, context_turns: int = 6, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.context_turns = context_turns

    def is_satisfied(self, condition: str, turns: list[Turn]) -> bool:
        """Return True if the model answers YES for the recent turns."""
        recent = format_turns(turns[-self.context_turns:])
        prompt = (
            f"Conversation so far:\n{recent}\n\n"
            f"Condition: {condition}\n\n"
            "Is the condition satisfied? Answer YES or NO."
        )
        generation = self._generate(
            GenerationRequest(
                system="You decide whether a conversation meets a routing condition.",
                messages=[{"role": "user", "content": prompt}],
                max_tokens=16,
            )
        )
        return generation.text.strip().upper().startswith("YES")


# ---------------------------------------------------------------------------
# Role bundle
# ---------------------------------------------------------------------------


@dataclass
class ModelRoles:
    """The role instances used for one run."""

    simulator: SimulatorRole
    agent: AgentRole
    judge: JudgeRole
    transition: LLMConditionJudge | None = None

    @classmethod
    def from_backends(
        cls,
        simulator: ModelBackend,
        agent: ModelBackend,
        judge: ModelBackend,
        transition: ModelBackend | None = None,
        attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ModelRoles:
        """Wrap already-built backends in roles."""
        retry = {"attempts": attempts, "base_delay": base_delay, "sleep": sleep}
        return cls(
            simulator=SimulatorRole(simulator, **retry),
            agent=AgentRole(agent, **retry),
            judge=JudgeRole(judge, **retry),
            transition=LLMConditionJudge(transition, **retry) if transition is not None else None,
        )

    @classmethod
    def from_config(
        cls,
        config: RunConfig,
        registry: BackendRegistry | None = None,
    ) -> ModelRoles:
        """Resolve each role's backend independently from its selector."""
        registry = registry or default_registry()
        judge = registry.resolve(config.judge_model)
        transition = (
            registry.resolve(config.transition_model) if config.transition_model else judge
        )
        logger.debug(
            "Resolved backends: simulator=%s agent=%s judge=%s transition=%s",
            config.simulator_model, config.agent_model, config.judge_model,
            config.transition_model or config.judge_model,
        )
        return cls.from_backends(
            simulator=registry.resolve(config.simulator_model),
            agent=registry.resolve(config.agent_model),
            judge=judge,
            transition=transition,
            attempts=config.retry_attempts,
            base_delay=config.retry_delay,
        )
