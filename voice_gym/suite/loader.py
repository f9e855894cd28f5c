"""Test-suite loader.

Loads TestSuite definitions from YAML or JSON and converts every
validation failure into ConfigurationError before any run starts.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from voice_gym.suite.schema import GlobalMetric, TestSuite
from voice_gym.types import ConfigurationError


def parse_suite(data: Any) -> TestSuite:
    """Validate raw data into a TestSuite.

    Accepts either a mapping with ``tests`` and ``global_metrics`` keys or
    a bare list of tests.

    Raises:
        ConfigurationError: If the data is not a valid suite.
    """
    if isinstance(data, list):
        data = {"tests": data}
    if not isinstance(data, dict):
        msg = f"Suite data must be a mapping or list, got {type(data).__name__}"
        raise ConfigurationError(msg)
    try:
        return TestSuite.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid test suite: {exc}"
        raise ConfigurationError(msg) from exc


def _read(path: Path) -> Any:
    with open(path) as fh:
        text = fh.read()
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        msg = f"Malformed file {path}: {exc}"
        raise ConfigurationError(msg) from exc


def load_suite(path: Path, global_metrics_path: Path | None = None) -> TestSuite:
    """Load a suite from a file, optionally merging global metrics from another.

    Raises:
        FileNotFoundError: If a file does not exist.
        ConfigurationError: If the content is malformed or invalid.
    """
    suite = parse_suite(_read(path))
    if global_metrics_path is None:
        return suite
    extra = load_global_metrics(global_metrics_path)
    return parse_suite({
        "tests": [t.model_dump() for t in suite.tests],
        "global_metrics": [m.model_dump() for m in (*suite.global_metrics, *extra)],
    })


def load_global_metrics(path: Path) -> list[GlobalMetric]:
    """Load a list of global metrics (bare list or ``global_metrics`` key).

    Raises:
        ConfigurationError: If the content is malformed or invalid.
    """
    raw = _read(path)
    if isinstance(raw, dict):
        raw = raw.get("global_metrics", [])
    if not isinstance(raw, list):
        msg = f"Global metrics in {path} must be a list"
        raise ConfigurationError(msg)
    try:
        return [GlobalMetric.model_validate(item) for item in raw]
    except ValidationError as exc:
        msg = f"Invalid global metric in {path}: {exc}"
        raise ConfigurationError(msg) from exc
