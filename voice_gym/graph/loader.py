"""Agent graph loader.

Reads the normalized (snippet-preserving) graph format from YAML or JSON
and converts validation failures into GraphIntegrityError so malformed
graphs are rejected before any simulation starts.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from voice_gym.graph.schema import AgentGraph
from voice_gym.types import GraphIntegrityError


def parse_graph(data: dict[str, Any]) -> AgentGraph:
    """Validate a raw mapping into an AgentGraph.

    Raises:
        GraphIntegrityError: If the data does not describe a well-formed graph.
    """
    if not isinstance(data, dict):
        msg = f"Graph data must be a mapping, got {type(data).__name__}"
        raise GraphIntegrityError(msg)
    try:
        return AgentGraph.model_validate(data)
    except ValidationError as exc:
        msg = f"Invalid agent graph: {exc}"
        raise GraphIntegrityError(msg) from exc


def load_graph(path: Path) -> AgentGraph:
    """Load an agent graph from a ``.json``, ``.yaml`` or ``.yml`` file.

    Raises:
        FileNotFoundError: If the file does not exist.
        GraphIntegrityError: If the file is malformed or violates graph invariants.
    """
    with open(path) as fh:
        text = fh.read()
    try:
        if path.suffix == ".json":
            raw = json.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        msg = f"Malformed graph file {path}: {exc}"
        raise GraphIntegrityError(msg) from exc
    return parse_graph(raw)


def save_graph(graph: AgentGraph, path: Path) -> None:
    """Write a graph in the native format, keeping snippet references."""
    data = graph.model_dump(mode="json")
    with open(path, "w") as fh:
        if path.suffix == ".json":
            json.dump(data, fh, indent=2)
            fh.write("\n")
        else:
            yaml.safe_dump(data, fh, sort_keys=False)
