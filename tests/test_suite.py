"""Tests for test-suite models, suite loading and run configuration."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from voice_gym.suite.loader import load_global_metrics, load_suite, parse_suite
from voice_gym.suite.schema import GlobalMetric, MetricSpec, TestCase, TestSuite
from voice_gym.types import ConfigurationError, RunConfig, load_run_config

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _suite_dict() -> dict:
    return {
        "tests": [
            {
                "name": "billing-question",
                "user_prompt": "You are {{customer}} asking about a charge.",
                "metrics": [
                    "Agent explains the charge",
                    {"name": "verify", "criteria": "Agent verifies identity", "threshold": 0.9},
                ],
                "variables": {"customer": "Sam"},
            },
            {
                "name": "no-ssn-echo",
                "type": "rule",
                "user_prompt": "Your SSN is 123-45-6789.",
                "excludes": ["123-45-6789"],
            },
        ],
        "global_metrics": [
            {"name": "politeness", "criteria": "Agent is polite"},
        ],
    }


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestTestCase:
    """TestCase validation."""

    def test_metrics_from_strings_and_objects(self) -> None:
        """Plain strings become MetricSpecs without thresholds."""
        suite = parse_suite(_suite_dict())
        metrics = suite.tests[0].metrics
        assert metrics[0] == MetricSpec(criteria="Agent explains the charge")
        assert metrics[1].label == "verify"
        assert metrics[1].threshold == 0.9

    def test_defaults(self) -> None:
        """Tests default to llm with no overrides."""
        case = TestCase(name="t", user_prompt="p", metrics=["m"])
        assert case.type == "llm"
        assert case.threshold is None
        assert case.max_turns is None
        assert case.timeout_seconds is None

    def test_snippet_reference_in_persona_rejected(self) -> None:
        """Personas only take runtime variables."""
        with pytest.raises(ConfigurationError, match="snippet"):
            TestCase(name="t", user_prompt="You are {%persona%}", metrics=["m"])

    def test_llm_test_needs_metric(self) -> None:
        """llm tests without metrics are rejected."""
        with pytest.raises(ConfigurationError, match="metric"):
            TestCase(name="t", user_prompt="p")

    def test_rule_test_needs_check(self) -> None:
        """rule tests need at least one check."""
        with pytest.raises(ConfigurationError, match="rule tests"):
            TestCase(name="t", type="rule", user_prompt="p")

    def test_invalid_pattern_rejected(self) -> None:
        """Rule patterns must compile."""
        with pytest.raises(ConfigurationError, match="invalid pattern"):
            TestCase(name="t", type="rule", user_prompt="p", patterns=["(unclosed"])

    def test_threshold_range(self) -> None:
        """Thresholds outside [0, 1] fail validation."""
        with pytest.raises(ConfigurationError):
            parse_suite([{"name": "t", "user_prompt": "p", "metrics": ["m"], "threshold": 1.5}])

    def test_timeout_must_be_positive(self) -> None:
        """A per-test timeout of zero fails validation."""
        with pytest.raises(ConfigurationError):
            parse_suite([{"name": "t", "user_prompt": "p", "metrics": ["m"], "timeout_seconds": 0}])
        case = parse_suite([{"name": "t", "user_prompt": "p", "metrics": ["m"], "timeout_seconds": 2.5}]).tests[0]
        assert case.timeout_seconds == 2.5


class TestTestSuite:
    """TestSuite validation."""

    def test_duplicate_test_names(self) -> None:
        """Test names are unique."""
        data = _suite_dict()
        data["tests"].append(dict(data["tests"][0]))
        with pytest.raises(ConfigurationError, match="Duplicate test name"):
            parse_suite(data)

    def test_enabled_global_metrics(self) -> None:
        """Disabled metrics are filtered out."""
        suite = TestSuite(global_metrics=[
            GlobalMetric(name="a", criteria="x"),
            GlobalMetric(name="b", criteria="y", enabled=False),
        ])
        assert [m.name for m in suite.enabled_global_metrics] == ["a"]

    def test_global_metric_needs_criteria(self) -> None:
        """Empty criteria are rejected."""
        with pytest.raises(ConfigurationError):
            GlobalMetric(name="a", criteria="  ")

    def test_bare_list_accepted(self) -> None:
        """A bare list of tests is a suite with no global metrics."""
        suite = parse_suite(_suite_dict()["tests"])
        assert len(suite.tests) == 2
        assert suite.global_metrics == []


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


class TestSuiteLoader:
    """Loading suites and global metrics from disk."""

    def test_load_yaml(self, tmp_path: Path) -> None:
        """YAML suites load."""
        path = tmp_path / "tests.yaml"
        path.write_text(yaml.safe_dump(_suite_dict()))
        suite = load_suite(path)
        assert [t.name for t in suite.tests] == ["billing-question", "no-ssn-echo"]

    def test_load_json(self, tmp_path: Path) -> None:
        """JSON suites load."""
        path = tmp_path / "tests.json"
        path.write_text(json.dumps(_suite_dict()))
        assert load_suite(path).global_metrics[0].name == "politeness"

    def test_merge_global_metrics_file(self, tmp_path: Path) -> None:
        """A separate global metrics file is appended."""
        suite_path = tmp_path / "tests.yaml"
        suite_path.write_text(yaml.safe_dump(_suite_dict()))
        metrics_path = tmp_path / "globals.yaml"
        metrics_path.write_text(yaml.safe_dump([{"name": "brevity", "criteria": "Agent is brief"}]))

        suite = load_suite(suite_path, metrics_path)
        assert [m.name for m in suite.global_metrics] == ["politeness", "brevity"]

    def test_global_metrics_mapping_form(self, tmp_path: Path) -> None:
        """Global metrics may sit under a global_metrics key."""
        path = tmp_path / "globals.json"
        path.write_text(json.dumps({"global_metrics": [{"name": "a", "criteria": "x", "threshold": 0.5}]}))
        assert load_global_metrics(path)[0].threshold == 0.5

    def test_malformed_yaml(self, tmp_path: Path) -> None:
        """Malformed files raise ConfigurationError."""
        path = tmp_path / "bad.yaml"
        path.write_text("tests: [unclosed")
        with pytest.raises(ConfigurationError, match="Malformed"):
            load_suite(path)


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class TestRunConfig:
    """RunConfig defaults and loading."""

    def test_defaults(self) -> None:
        """Defaults are usable without a file."""
        config = RunConfig()
        assert config.max_turns == 20
        assert config.default_threshold == 0.7
        assert config.transition_model is None

    def test_load(self, tmp_path: Path) -> None:
        """Values come from YAML."""
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump({"agent_model": "claude-cli", "max_turns": 8, "max_concurrency": 2}))
        config = load_run_config(path)
        assert config.agent_model == "claude-cli"
        assert config.max_turns == 8
        assert config.simulator_model.startswith("anthropic/")

    def test_empty_file(self, tmp_path: Path) -> None:
        """An empty file means all defaults."""
        path = tmp_path / "run.yaml"
        path.write_text("")
        assert load_run_config(path) == RunConfig()

    def test_invalid_value(self, tmp_path: Path) -> None:
        """Out-of-range values raise ConfigurationError."""
        path = tmp_path / "run.yaml"
        path.write_text(yaml.safe_dump({"max_turns": 0}))
        with pytest.raises(ConfigurationError, match="Invalid run config"):
            load_run_config(path)
