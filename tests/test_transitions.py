"""Tests for TransitionEvaluator."""

from __future__ import annotations

from voice_gym.backends import ScriptedBackend
from voice_gym.graph.schema import Node, Transition, TransitionCondition
from voice_gym.roles import LLMConditionJudge
from voice_gym.transcript import ToolCall, Turn
from voice_gym.transitions import DEFAULT_MATCHERS, MatchContext, TransitionEvaluator, TransitionOutcome
from voice_gym.types import Speaker

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _turns(user: str, agent: str = "Okay.") -> list[Turn]:
    return [
        Turn(speaker=Speaker.USER, text=user, node_id="n"),
        Turn(speaker=Speaker.AGENT, text=agent, node_id="n"),
    ]


def _node(*transitions: Transition) -> Node:
    return Node(id="n", state_prompt="", transitions=list(transitions))


def _keyword(target: str, *words: str, **kwargs) -> Transition:
    return Transition(
        target=target,
        condition=TransitionCondition(type="keyword", keywords=list(words)),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class TestOutcomes:
    """Move, remain and exhausted decisions."""

    def test_terminal_node_exhausts(self) -> None:
        """No outgoing transitions means the graph is exhausted."""
        decision = TransitionEvaluator().evaluate(Node(id="end"), _turns("hi"))
        assert decision.outcome is TransitionOutcome.EXHAUSTED

    def test_always_moves(self) -> None:
        """An unconditional transition always fires."""
        decision = TransitionEvaluator().evaluate(_node(Transition(target="next")), _turns("hi"))
        assert decision.outcome is TransitionOutcome.MOVE
        assert decision.target == "next"

    def test_no_match_remains(self) -> None:
        """Unsatisfied transitions keep the current node."""
        decision = TransitionEvaluator().evaluate(_node(_keyword("billing", "invoice")), _turns("hello"))
        assert decision.outcome is TransitionOutcome.REMAIN
        assert decision.target == "n"

    def test_fallback_only_when_nothing_else_matches(self) -> None:
        """The fallback is taken last."""
        node = _node(
            Transition(target="fallback", fallback=True),
            _keyword("billing", "invoice"),
        )
        evaluator = TransitionEvaluator()
        assert evaluator.evaluate(node, _turns("my invoice")).target == "billing"
        assert evaluator.evaluate(node, _turns("weather")).target == "fallback"

    def test_priority_beats_declaration_order(self) -> None:
        """Lower priority value is tried first."""
        node = _node(
            _keyword("general", "help", priority=5),
            _keyword("urgent", "help", priority=1),
        )
        assert TransitionEvaluator().evaluate(node, _turns("help me")).target == "urgent"

    def test_tie_uses_declaration_order(self) -> None:
        """Equal priorities keep declaration order."""
        node = _node(_keyword("first", "help"), _keyword("second", "help"))
        assert TransitionEvaluator().evaluate(node, _turns("help")).target == "first"


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class TestConditions:
    """Per-kind condition semantics."""

    def test_keyword_case_insensitive(self) -> None:
        """Keywords match regardless of case."""
        node = _node(_keyword("transfer", "Human"))
        assert TransitionEvaluator().evaluate(node, _turns("I want a HUMAN")).target == "transfer"

    def test_keyword_scope_agent(self) -> None:
        """Agent-scoped keywords look at the agent turn only."""
        transition = Transition(
            target="done",
            condition=TransitionCondition(type="keyword", keywords=["goodbye"], scope="agent"),
        )
        evaluator = TransitionEvaluator()
        assert evaluator.evaluate(_node(transition), _turns("goodbye", "hold on")).outcome is TransitionOutcome.REMAIN
        assert evaluator.evaluate(_node(transition), _turns("ok", "Goodbye!")).target == "done"

    def test_keyword_uses_latest_turn_only(self) -> None:
        """Earlier user turns do not trigger keyword conditions."""
        turns = _turns("I need billing help") + _turns("actually never mind")
        decision = TransitionEvaluator().evaluate(_node(_keyword("billing", "billing")), turns)
        assert decision.outcome is TransitionOutcome.REMAIN

    def test_regex(self) -> None:
        """Regex conditions search the scoped text."""
        transition = Transition(
            target="verify",
            condition=TransitionCondition(type="regex", pattern=r"\b\d{4}\b"),
        )
        evaluator = TransitionEvaluator()
        assert evaluator.evaluate(_node(transition), _turns("my pin is 1234")).target == "verify"
        assert evaluator.evaluate(_node(transition), _turns("no digits")).outcome is TransitionOutcome.REMAIN

    def test_tool_called(self) -> None:
        """tool_called fires on a recorded call of that tool."""
        transition = Transition(
            target="transferred",
            condition=TransitionCondition(type="tool_called", tool="transfer_call"),
        )
        evaluator = TransitionEvaluator()
        calls = [ToolCall(name="transfer_call", arguments={"dept": "billing"})]
        assert evaluator.evaluate(_node(transition), _turns("hi"), calls).target == "transferred"
        assert evaluator.evaluate(_node(transition), _turns("hi"), []).outcome is TransitionOutcome.REMAIN

    def test_llm_condition_uses_judge(self) -> None:
        """llm conditions ask the transition model for YES/NO."""
        backend = ScriptedBackend(["YES", "no"])
        evaluator = TransitionEvaluator(LLMConditionJudge(backend))
        transition = Transition(
            target="escalate",
            condition=TransitionCondition(type="llm", description="The caller is angry"),
        )
        assert evaluator.evaluate(_node(transition), _turns("this is outrageous")).target == "escalate"
        assert evaluator.evaluate(_node(transition), _turns("thanks")).outcome is TransitionOutcome.REMAIN
        assert "The caller is angry" in backend.requests[0].messages[0]["content"]

    def test_llm_condition_without_judge_unmet(self) -> None:
        """Without a transition model, llm conditions never fire."""
        transition = Transition(
            target="escalate",
            condition=TransitionCondition(type="llm", description="The caller is angry"),
        )
        decision = TransitionEvaluator().evaluate(_node(transition), _turns("grr"))
        assert decision.outcome is TransitionOutcome.REMAIN


# ---------------------------------------------------------------------------
# Matcher registry
# ---------------------------------------------------------------------------


class TestMatchers:
    """Per-kind matchers can be replaced."""

    def test_default_matchers_cover_every_kind(self) -> None:
        """Each condition type has a matcher."""
        assert set(DEFAULT_MATCHERS) == {"always", "keyword", "regex", "tool_called", "llm"}

    def test_override_matcher(self) -> None:
        """A custom keyword matcher replaces the built-in one."""
        seen: list[MatchContext] = []

        def exact_word(condition: TransitionCondition, context: MatchContext) -> bool:
            seen.append(context)
            words = context.turns[-2].text.lower().split()
            return any(k.lower() in words for k in condition.keywords)

        evaluator = TransitionEvaluator(matchers={"keyword": exact_word})
        node = _node(_keyword("billing", "bill"))
        assert evaluator.evaluate(node, _turns("my billing issue")).outcome is TransitionOutcome.REMAIN
        assert evaluator.evaluate(node, _turns("my bill is wrong")).target == "billing"
        assert len(seen) == 2
