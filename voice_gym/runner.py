"""Suite runner: simulate and judge every test in a suite.

Independent tests run concurrently in a thread pool bounded by
``RunConfig.max_concurrency``; turns inside one conversation stay
sequential. Results are returned in suite order for handoff to storage.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

from pydantic import BaseModel, Field

from voice_gym.engine import ConversationEngine
from voice_gym.graph.schema import AgentGraph
from voice_gym.judging import JudgePipeline, TestVerdict, VerdictStatus
from voice_gym.roles import ModelRoles
from voice_gym.suite.schema import TestCase, TestSuite
from voice_gym.transcript import Transcript
from voice_gym.types import RunConfig

logger = logging.getLogger(__name__)


class TestRunResult(BaseModel):
    """Everything produced for one test."""

    __test__ = False

    test_name: str
    transcript: Transcript
    verdict: TestVerdict

    @property
    def nodes_visited(self) -> list[str]:
        """Node ids in visit order."""
        return self.transcript.nodes_visited

    @property
    def tools_called(self) -> list[str]:
        """Tool names in call order."""
        return self.transcript.tools_called


class SuiteResult(BaseModel):
    """Results for a whole suite, in suite order."""

    graph_name: str
    results: list[TestRunResult] = Field(default_factory=list)

    def _count(self, status: VerdictStatus) -> int:
        return sum(1 for r in self.results if r.verdict.status is status)

    @property
    def passed(self) -> int:
        """Number of passing tests."""
        return self._count(VerdictStatus.PASSED)

    @property
    def failed(self) -> int:
        """Number of failing tests."""
        return self._count(VerdictStatus.FAILED)

    @property
    def errors(self) -> int:
        """Number of tests that could not be evaluated."""
        return self._count(VerdictStatus.ERROR)

    @property
    def all_passed(self) -> bool:
        """True when every test passed."""
        return self.passed == len(self.results)


class SuiteRunner:
    """Runs test suites against one agent graph.

    Args:
        graph: Loaded, validated agent graph.
        config: Run configuration.
        roles: Model roles; resolved from ``config`` when omitted.
    """

    def __init__(
        self,
        graph: AgentGraph,
        config: RunConfig | None = None,
        roles: ModelRoles | None = None,
    ) -> None:
        self.graph = graph
        self.config = config or RunConfig()
        self.roles = roles or ModelRoles.from_config(self.config)
        self.engine = ConversationEngine(graph, self.roles, self.config)
        self.pipeline = JudgePipeline(self.roles.judge, default_threshold=self.config.default_threshold)

    def run_test(self, test: TestCase, suite: TestSuite | None = None) -> TestRunResult:
        """Simulate and judge a single test."""
        global_metrics = suite.enabled_global_metrics if suite is not None else []
        transcript = self.engine.run(test)
        verdict = self.pipeline.evaluate(
            test,
            transcript,
            global_metrics=global_metrics,
            agent_threshold=self.graph.default_threshold,
        )
        return TestRunResult(test_name=test.name, transcript=transcript, verdict=verdict)

    def run(self, suite: TestSuite) -> SuiteResult:
        """Run every test, concurrently up to ``max_concurrency``."""
        tests = suite.tests
        logger.info(
            "Running %d test(s) against '%s' (concurrency %d)",
            len(tests), self.graph.name, self.config.max_concurrency,
        )
        results: dict[str, TestRunResult] = {}

        with ThreadPoolExecutor(max_workers=self.config.max_concurrency) as executor:
            futures = {executor.submit(self.run_test, test, suite): test for test in tests}
            for future in as_completed(futures):
                test = futures[future]
                results[test.name] = future.result()

        ordered = [results[test.name] for test in tests]
        suite_result = SuiteResult(graph_name=self.graph.name, results=ordered)
        logger.info(
            "Suite finished: %d passed, %d failed, %d error(s)",
            suite_result.passed, suite_result.failed, suite_result.errors,
        )
        return suite_result
