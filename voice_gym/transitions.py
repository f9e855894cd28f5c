"""TransitionEvaluator: picks the next node after each agent turn.

Transitions are tried in priority order (ties in declaration order) and the
first satisfied condition wins. A fallback transition is taken only when
nothing else matched. A node without outgoing transitions exhausts the
graph; a node whose transitions all fail keeps the conversation where it is.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from voice_gym.graph.schema import Node, Transition, TransitionCondition
from voice_gym.roles import LLMConditionJudge
from voice_gym.transcript import ToolCall, Turn
from voice_gym.types import Speaker

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    """Result kind of a transition evaluation."""

    MOVE = "move"
    REMAIN = "remain"
    EXHAUSTED = "exhausted"


@dataclass
class TransitionDecision:
    """What the evaluator decided for the current node."""

    outcome: TransitionOutcome
    target: str | None = None
    transition: Transition | None = None


# ---------------------------------------------------------------------------
# Condition matchers
# ---------------------------------------------------------------------------


@dataclass
class MatchContext:
    """Everything a condition matcher may look at."""

    turns: list[Turn]
    tool_calls: list[ToolCall]
    llm_judge: LLMConditionJudge | None = None


ConditionMatcher = Callable[[TransitionCondition, MatchContext], bool]


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _latest_text(turns: list[Turn], scope: str) -> str:
    """Text of the latest user and/or agent turn selected by scope."""
    latest: dict[Speaker, str] = {}
    for turn in reversed(turns):
        if turn.speaker not in latest:
            latest[turn.speaker] = turn.text
        if len(latest) == 2:
            break
    if scope == "user":
        return latest.get(Speaker.USER, "")
    if scope == "agent":
        return latest.get(Speaker.AGENT, "")
    return "\n".join(latest.get(s, "") for s in (Speaker.USER, Speaker.AGENT))


def match_always(condition: TransitionCondition, context: MatchContext) -> bool:
    return True


def match_keyword(condition: TransitionCondition, context: MatchContext) -> bool:
    """Any keyword appears, case-insensitively, in the scoped latest turns."""
    text = _latest_text(context.turns, condition.scope).lower()
    return any(k.strip().lower() in text for k in condition.keywords if k.strip())


def match_regex(condition: TransitionCondition, context: MatchContext) -> bool:
    text = _latest_text(context.turns, condition.scope)
    return bool(_compile(condition.pattern or "").search(text))


def match_tool_called(condition: TransitionCondition, context: MatchContext) -> bool:
    return any(call.name == condition.tool for call in context.tool_calls)


def match_llm(condition: TransitionCondition, context: MatchContext) -> bool:
    """Ask the transition model; unmet when none is configured.

    Raises:
        ModelInvocationError: If the model call fails after retries.
    """
    if context.llm_judge is None:
        logger.warning(
            "No transition model configured; llm condition %r treated as unmet",
            condition.description,
        )
        return False
    return context.llm_judge.is_satisfied(condition.description or "", context.turns)


DEFAULT_MATCHERS: dict[str, ConditionMatcher] = {
    "always": match_always,
    "keyword": match_keyword,
    "regex": match_regex,
    "tool_called": match_tool_called,
    "llm": match_llm,
}


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TransitionEvaluator:
    """Evaluates node transitions over the transcript and latest tool calls.

    Args:
        llm_judge: Role used for natural-language conditions. Without one,
            ``llm`` conditions evaluate to False.
        matchers: Overrides for the per-kind condition matchers.
    """

    def __init__(
        self,
        llm_judge: LLMConditionJudge | None = None,
        matchers: dict[str, ConditionMatcher] | None = None,
    ) -> None:
        self.llm_judge = llm_judge
        self.matchers = {**DEFAULT_MATCHERS, **(matchers or {})}

    def evaluate(
        self,
        node: Node,
        turns: list[Turn],
        tool_calls: list[ToolCall] | None = None,
    ) -> TransitionDecision:
        """Select the next node.

        Raises:
            ModelInvocationError: If an ``llm`` condition's model call fails.
        """
        if node.is_terminal:
            return TransitionDecision(outcome=TransitionOutcome.EXHAUSTED)

        context = MatchContext(turns=turns, tool_calls=tool_calls or [], llm_judge=self.llm_judge)
        for transition in node.ordered_transitions():
            if self.condition_met(transition.condition, context):
                logger.debug("Node '%s' -> '%s' (%s)", node.id, transition.target, transition.condition.type)
                return TransitionDecision(
                    outcome=TransitionOutcome.MOVE,
                    target=transition.target,
                    transition=transition,
                )

        fallback = node.fallback_transition()
        if fallback is not None:
            logger.debug("Node '%s' -> '%s' (fallback)", node.id, fallback.target)
            return TransitionDecision(
                outcome=TransitionOutcome.MOVE,
                target=fallback.target,
                transition=fallback,
            )

        return TransitionDecision(outcome=TransitionOutcome.REMAIN, target=node.id)

    def condition_met(self, condition: TransitionCondition, context: MatchContext) -> bool:
        """Dispatch one condition to the matcher for its kind."""
        matcher = self.matchers.get(condition.type)
        if matcher is None:
            logger.warning("No matcher for condition type '%s'", condition.type)
            return False
        return matcher(condition, context)
