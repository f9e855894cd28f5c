"""Judge scoring pipeline.

Turns a finished transcript into per-metric results and an aggregate
verdict:
  - llm tests: one judge call per local metric and per enabled global
    metric; a metric passes when score >= its effective threshold.
  - rule tests: literal includes/excludes and regex patterns checked over
    the transcript text, no model call, confidence fixed at 1.0.

A metric whose judge call fails after retries is an ``error``, never a low
score, so outages are not reported as agent failures.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from enum import Enum

from pydantic import BaseModel, Field

from voice_gym.roles import JudgeRole
from voice_gym.suite.schema import GlobalMetric, TestCase
from voice_gym.transcript import Transcript
from voice_gym.types import JudgeParseError, ModelInvocationError, TerminationReason

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.7

# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


class MetricStatus(str, Enum):
    """How a metric result was obtained."""

    SCORED = "scored"
    PARSE_ERROR = "parse_error"
    ERROR = "error"
    RULE = "rule"


class VerdictStatus(str, Enum):
    """Aggregate outcome of a test."""

    PASSED = "passed"
    FAILED = "failed"
    ERROR = "error"


class JudgeResult(BaseModel):
    """Score for one metric on one transcript."""

    metric: str
    analysis: str = ""
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    threshold: float = Field(ge=0.0, le=1.0)
    passed: bool
    status: MetricStatus = MetricStatus.SCORED
    is_global: bool = False


class TestVerdict(BaseModel):
    """Aggregate verdict and per-metric results for one test."""

    __test__ = False

    test_name: str
    test_type: str
    status: VerdictStatus
    results: list[JudgeResult] = Field(default_factory=list)
    error: str | None = None

    @property
    def passed(self) -> bool:
        """True only for a PASSED verdict."""
        return self.status is VerdictStatus.PASSED


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def resolve_threshold(
    metric_threshold: float | None = None,
    test_threshold: float | None = None,
    agent_threshold: float | None = None,
    default: float = DEFAULT_THRESHOLD,
) -> float:
    """Effective local threshold: metric > test > agent > default."""
    for candidate in (metric_threshold, test_threshold, agent_threshold):
        if candidate is not None:
            return candidate
    return default


def aggregate_status(results: Sequence[JudgeResult]) -> VerdictStatus:
    """ERROR if any metric errored, else PASSED iff every metric passed."""
    if any(r.status is MetricStatus.ERROR for r in results):
        return VerdictStatus.ERROR
    if all(r.passed for r in results):
        return VerdictStatus.PASSED
    return VerdictStatus.FAILED


def evaluate_rule_test(test: TestCase, transcript: Transcript) -> TestVerdict:
    """Check includes, excludes, and patterns against the transcript text."""
    text = transcript.text
    lowered = text.lower()
    results: list[JudgeResult] = []

    def _add(metric: str, ok: bool, reasoning: str) -> None:
        results.append(JudgeResult(
            metric=metric,
            score=1.0 if ok else 0.0,
            reasoning=reasoning,
            confidence=1.0,
            threshold=1.0,
            passed=ok,
            status=MetricStatus.RULE,
        ))

    for needle in test.includes:
        found = needle.lower() in lowered
        _add(f"includes:{needle}", found, "found in transcript" if found else "not found in transcript")
    for needle in test.excludes:
        found = needle.lower() in lowered
        _add(f"excludes:{needle}", not found, "found in transcript" if found else "absent from transcript")
    for pattern in test.patterns:
        matched = re.search(pattern, text) is not None
        _add(f"pattern:{pattern}", matched, "pattern matched" if matched else "pattern did not match")

    return TestVerdict(
        test_name=test.name,
        test_type=test.type,
        status=VerdictStatus.PASSED if all(r.passed for r in results) else VerdictStatus.FAILED,
        results=results,
    )


# ---------------------------------------------------------------------------
# JudgePipeline
# ---------------------------------------------------------------------------


class JudgePipeline:
    """Scores transcripts for llm and rule tests.

    Args:
        judge: Judge role. Only required for ``llm`` tests.
        default_threshold: Local-metric threshold when nothing overrides it.
    """

    def __init__(self, judge: JudgeRole | None = None, default_threshold: float = DEFAULT_THRESHOLD) -> None:
        self.judge = judge
        self.default_threshold = default_threshold

    def evaluate(
        self,
        test: TestCase,
        transcript: Transcript,
        global_metrics: Sequence[GlobalMetric] = (),
        agent_threshold: float | None = None,
    ) -> TestVerdict:
        """Produce the verdict for one terminated conversation."""
        if transcript.termination_reason is TerminationReason.ERROR:
            return TestVerdict(
                test_name=test.name,
                test_type=test.type,
                status=VerdictStatus.ERROR,
                error=transcript.error or "conversation failed",
            )

        if test.type == "rule":
            verdict = evaluate_rule_test(test, transcript)
        else:
            verdict = self._evaluate_llm(test, transcript, global_metrics, agent_threshold)

        logger.info("Test '%s': %s", test.name, verdict.status.value)
        return verdict

    def _evaluate_llm(
        self,
        test: TestCase,
        transcript: Transcript,
        global_metrics: Sequence[GlobalMetric],
        agent_threshold: float | None,
    ) -> TestVerdict:
        if self.judge is None:
            msg = "llm tests require a judge role"
            raise ValueError(msg)

        transcript_text = transcript.format()
        results: list[JudgeResult] = []

        for metric in test.metrics:
            threshold = resolve_threshold(
                metric.threshold, test.threshold, agent_threshold, self.default_threshold,
            )
            results.append(self.score_metric(metric.label, metric.criteria, threshold, transcript_text))

        for global_metric in global_metrics:
            if not global_metric.enabled:
                continue
            results.append(self.score_metric(
                global_metric.name,
                global_metric.criteria,
                global_metric.threshold,
                transcript_text,
                is_global=True,
            ))

        errors = [r.reasoning for r in results if r.status is MetricStatus.ERROR]
        return TestVerdict(
            test_name=test.name,
            test_type=test.type,
            status=aggregate_status(results),
            results=results,
            error="; ".join(errors) or None,
        )

    def score_metric(
        self,
        name: str,
        criteria: str,
        threshold: float,
        transcript_text: str,
        is_global: bool = False,
    ) -> JudgeResult:
        """Judge one criterion, converting failures into recorded results."""
        assert self.judge is not None
        try:
            output = self.judge.evaluate(transcript_text, criteria)
        except JudgeParseError as exc:
            logger.warning("Judge output for metric '%s' unparseable: %s", name, exc)
            return JudgeResult(
                metric=name,
                score=0.0,
                reasoning=f"Judge response could not be parsed: {exc}",
                threshold=threshold,
                passed=False,
                status=MetricStatus.PARSE_ERROR,
                is_global=is_global,
            )
        except ModelInvocationError as exc:
            return JudgeResult(
                metric=name,
                score=0.0,
                reasoning=str(exc),
                threshold=threshold,
                passed=False,
                status=MetricStatus.ERROR,
                is_global=is_global,
            )

        return JudgeResult(
            metric=name,
            analysis=output.analysis,
            score=output.score,
            reasoning=output.reasoning,
            confidence=output.confidence,
            threshold=threshold,
            passed=output.score >= threshold,
            is_global=is_global,
        )
