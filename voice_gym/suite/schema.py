"""Pydantic models for test-suite configuration.

A suite holds TestCases (one simulated conversation each) and
GlobalMetrics that are judged on every ``llm`` test.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from voice_gym.templating import SNIPPET_REF_RE
from voice_gym.types import ConfigurationError


class MetricSpec(BaseModel):
    """One natural-language success criterion with an optional threshold."""

    model_config = ConfigDict(frozen=True)

    criteria: str
    name: str | None = None
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)

    @property
    def label(self) -> str:
        """Display name: explicit name, else the criteria text."""
        return self.name or self.criteria


class GlobalMetric(BaseModel):
    """A criterion applied automatically to every ``llm`` test."""

    model_config = ConfigDict(frozen=True)

    name: str
    criteria: str
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_fields(self) -> GlobalMetric:
        if not self.name.strip():
            msg = "Global metric name must not be empty"
            raise ConfigurationError(msg)
        if not self.criteria.strip():
            msg = f"Global metric '{self.name}' has empty criteria"
            raise ConfigurationError(msg)
        return self


class TestCase(BaseModel):
    """A single simulated conversation and how to score it.

    Supported types:
        - llm: Judged per metric by the judge role.
        - rule: Checked with literal includes/excludes and regex patterns.
    """

    __test__ = False
    model_config = ConfigDict(frozen=True)

    name: str
    user_prompt: str
    type: Literal["llm", "rule"] = "llm"
    metrics: list[MetricSpec] = Field(default_factory=list)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    includes: list[str] = Field(default_factory=list)
    excludes: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    max_turns: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("metrics", mode="before")
    @classmethod
    def _metrics_from_strings(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"criteria": item} if isinstance(item, str) else item for item in value]
        return value

    @model_validator(mode="after")
    def _check_fields(self) -> TestCase:
        if not self.name.strip():
            msg = "Test name must not be empty"
            raise ConfigurationError(msg)
        if SNIPPET_REF_RE.search(self.user_prompt):
            msg = f"Test '{self.name}': snippet references are not allowed in user_prompt"
            raise ConfigurationError(msg)
        if self.type == "llm" and not self.metrics:
            msg = f"Test '{self.name}': llm tests need at least one metric"
            raise ConfigurationError(msg)
        if self.type == "rule" and not (self.includes or self.excludes or self.patterns):
            msg = f"Test '{self.name}': rule tests need includes, excludes or patterns"
            raise ConfigurationError(msg)
        for metric in self.metrics:
            if not metric.criteria.strip():
                msg = f"Test '{self.name}': metric criteria must not be empty"
                raise ConfigurationError(msg)
        for pattern in self.patterns:
            try:
                re.compile(pattern)
            except re.error as exc:
                msg = f"Test '{self.name}': invalid pattern {pattern!r}: {exc}"
                raise ConfigurationError(msg) from exc
        return self


class TestSuite(BaseModel):
    """Tests plus suite-wide global metrics."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    tests: list[TestCase] = Field(default_factory=list)
    global_metrics: list[GlobalMetric] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> TestSuite:
        for label, names in (
            ("test", [t.name for t in self.tests]),
            ("global metric", [m.name for m in self.global_metrics]),
        ):
            seen: set[str] = set()
            for name in names:
                if name in seen:
                    msg = f"Duplicate {label} name: {name!r}"
                    raise ConfigurationError(msg)
                seen.add(name)
        return self

    @property
    def enabled_global_metrics(self) -> list[GlobalMetric]:
        """Global metrics with ``enabled`` set."""
        return [m for m in self.global_metrics if m.enabled]
