"""Tests for SuiteRunner: concurrent simulation and judging of a suite."""

from __future__ import annotations

import json

from voice_gym.backends import GenerationRequest, ScriptedBackend
from voice_gym.graph.schema import AgentGraph
from voice_gym.judging import VerdictStatus
from voice_gym.roles import END_SIGNAL, ModelRoles
from voice_gym.runner import SuiteRunner
from voice_gym.suite.loader import parse_suite
from voice_gym.types import RunConfig, TerminationReason

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _graph(default_threshold: float | None = None) -> AgentGraph:
    return AgentGraph.model_validate({
        "name": "front-desk",
        "entry_node_id": "greeting",
        "default_threshold": default_threshold,
        "nodes": [
            {"id": "greeting", "state_prompt": "Greet the caller.", "transitions": [{"target": "help"}]},
            {"id": "help", "state_prompt": "Help the caller.", "transitions": [{"target": "greeting", "fallback": True}]},
        ],
    })


def _simulator_reply(request: GenerationRequest) -> str:
    # One utterance per conversation, then hang up.
    return "Hi, I need help." if len(request.messages) == 1 else END_SIGNAL


def _judge_reply(request: GenerationRequest) -> str:
    content = request.messages[0]["content"]
    score = 0.2 if "impossible" in content else 0.9
    return json.dumps({"analysis": "checked", "score": score, "reasoning": "ok", "confidence": 1.0})


def _roles() -> ModelRoles:
    return ModelRoles.from_backends(
        simulator=ScriptedBackend(responder=_simulator_reply),
        agent=ScriptedBackend(default="Thank you for calling, how can I help?"),
        judge=ScriptedBackend(responder=_judge_reply),
        sleep=lambda _delay: None,
    )


def _suite():
    return parse_suite({
        "tests": [
            {"name": "greets", "user_prompt": "Caller", "metrics": ["Agent greets the caller"]},
            {"name": "hard", "user_prompt": "Caller", "metrics": ["Agent does the impossible"]},
            {"name": "thanks", "type": "rule", "user_prompt": "Caller", "includes": ["thank you"]},
            {"name": "echo", "type": "rule", "user_prompt": "Caller", "excludes": ["I need help"]},
        ],
        "global_metrics": [{"name": "politeness", "criteria": "Agent is polite", "threshold": 0.5}],
    })


# ---------------------------------------------------------------------------
# SuiteRunner
# ---------------------------------------------------------------------------


class TestSuiteRunner:
    """End-to-end suite runs with scripted roles."""

    def test_results_in_suite_order(self) -> None:
        """Concurrent runs are reported in suite order."""
        runner = SuiteRunner(_graph(), RunConfig(max_concurrency=4), roles=_roles())
        result = runner.run(_suite())
        assert [r.test_name for r in result.results] == ["greets", "hard", "thanks", "echo"]

    def test_counts(self) -> None:
        """Passed and failed are tallied per verdict."""
        runner = SuiteRunner(_graph(), RunConfig(max_concurrency=2), roles=_roles())
        result = runner.run(_suite())
        statuses = {r.test_name: r.verdict.status for r in result.results}
        assert statuses == {
            "greets": VerdictStatus.PASSED,
            "hard": VerdictStatus.FAILED,
            "thanks": VerdictStatus.PASSED,
            "echo": VerdictStatus.FAILED,
        }
        assert (result.passed, result.failed, result.errors) == (2, 2, 0)
        assert not result.all_passed

    def test_global_metrics_applied_to_llm_tests(self) -> None:
        """Each llm test gets its local metric plus the global metric."""
        runner = SuiteRunner(_graph(), RunConfig(max_concurrency=1), roles=_roles())
        result = runner.run(_suite())
        greets = result.results[0]
        assert [r.metric for r in greets.verdict.results] == ["Agent greets the caller", "politeness"]

    def test_transcript_metadata(self) -> None:
        """Each result carries its transcript and traversal."""
        runner = SuiteRunner(_graph(), RunConfig(max_concurrency=1), roles=_roles())
        run = runner.run_test(_suite().tests[0])
        assert run.transcript.termination_reason is TerminationReason.GOAL_COMPLETE
        assert run.transcript.turn_count == 2
        assert run.nodes_visited == ["greeting", "help"]
        assert run.tools_called == []

    def test_agent_threshold_from_graph(self) -> None:
        """The graph's default threshold applies when the test sets none."""
        runner = SuiteRunner(_graph(default_threshold=0.95), RunConfig(max_concurrency=1), roles=_roles())
        run = runner.run_test(_suite().tests[0])
        assert run.verdict.results[0].threshold == 0.95
        assert run.verdict.status is VerdictStatus.FAILED

    def test_error_verdict_on_backend_failure(self) -> None:
        """A conversation that fails is reported as an error."""
        roles = ModelRoles.from_backends(
            simulator=ScriptedBackend(default="hello"),
            agent=ScriptedBackend([RuntimeError("agent down")], default="ok"),
            judge=ScriptedBackend(responder=_judge_reply),
            sleep=lambda _delay: None,
        )
        runner = SuiteRunner(_graph(), RunConfig(max_concurrency=1), roles=roles)
        run = runner.run_test(_suite().tests[0])
        assert run.verdict.status is VerdictStatus.ERROR
        assert "agent down" in (run.verdict.error or "")

    def test_empty_suite(self) -> None:
        """An empty suite produces an empty result."""
        runner = SuiteRunner(_graph(), RunConfig(), roles=_roles())
        result = runner.run(parse_suite({"tests": []}))
        assert result.results == []
        assert result.all_passed
