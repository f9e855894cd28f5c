"""Test-suite configuration: test cases, global metrics, and loading."""

from voice_gym.suite.loader import load_global_metrics, load_suite, parse_suite
from voice_gym.suite.schema import GlobalMetric, MetricSpec, TestCase, TestSuite

__all__ = [
    "GlobalMetric",
    "MetricSpec",
    "TestCase",
    "TestSuite",
    "load_global_metrics",
    "load_suite",
    "parse_suite",
]
