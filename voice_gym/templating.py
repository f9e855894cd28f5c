"""Two-stage prompt templating.

Snippet references (``{%name%}``) resolve first against the graph's
snippet dictionary; runtime variables (``{{name}}``) resolve second against
per-conversation values. A snippet may therefore carry a variable
placeholder that only becomes meaningful at substitution time. Snippet
expansion is single-pass: a snippet's own text is never re-scanned for
further snippet references.

Every function here returns new values and never mutates its inputs.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from voice_gym.graph.schema import SNIPPET_NAME_RE, AgentGraph
from voice_gym.types import ConfigurationError

SNIPPET_REF_RE = re.compile(r"\{%\s*([A-Za-z0-9_.-]+)\s*%\}")
VARIABLE_REF_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")


def expand_snippets(text: str, snippet_map: Mapping[str, str]) -> str:
    """Replace ``{%name%}`` references with snippet text.

    Unknown names are left untouched.
    """
    if "{%" not in text:
        return text

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in snippet_map:
            return snippet_map[name]
        return match.group(0)

    return SNIPPET_REF_RE.sub(_replace, text)


def substitute_variables(text: str, variable_map: Mapping[str, Any]) -> str:
    """Replace ``{{name}}`` references with runtime values.

    Unknown names are left untouched.
    """
    if "{{" not in text:
        return text

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name in variable_map:
            return str(variable_map[name])
        return match.group(0)

    return VARIABLE_REF_RE.sub(_replace, text)


def render_prompt(
    text: str,
    snippet_map: Mapping[str, str],
    variable_map: Mapping[str, Any],
) -> str:
    """Expand snippets, then substitute variables."""
    return substitute_variables(expand_snippets(text, snippet_map), variable_map)


def find_snippet_refs(text: str) -> list[str]:
    """Return snippet names referenced in text, in first-seen order."""
    return list(dict.fromkeys(SNIPPET_REF_RE.findall(text)))


def find_variable_refs(text: str) -> list[str]:
    """Return variable names referenced in text, in first-seen order."""
    return list(dict.fromkeys(VARIABLE_REF_RE.findall(text)))


def expand_graph_snippets(graph: AgentGraph) -> AgentGraph:
    """Return a copy of the graph with every snippet reference resolved.

    The copy's snippet dictionary is empty. Platform exporters must be given
    this form; only the native format keeps references.
    """
    snippets = graph.snippets
    nodes = {
        node_id: node.model_copy(
            update={"state_prompt": expand_snippets(node.state_prompt, snippets)},
            deep=True,
        )
        for node_id, node in graph.nodes.items()
    }
    return graph.model_copy(
        update={
            "nodes": nodes,
            "instructions": expand_snippets(graph.instructions, snippets),
            "snippets": {},
        },
        deep=True,
    )


def extract_snippet(graph: AgentGraph, name: str, text: str) -> AgentGraph:
    """Return a copy of the graph with ``text`` moved into a new snippet.

    Every literal occurrence of ``text`` in node prompts and the global
    instructions is rewritten to ``{%name%}``.

    Raises:
        ConfigurationError: If the name is invalid or already in use, or
            the text is empty.
    """
    if not name or not SNIPPET_NAME_RE.match(name):
        msg = f"Invalid snippet name: {name!r}"
        raise ConfigurationError(msg)
    if name in graph.snippets:
        msg = f"Snippet '{name}' already exists"
        raise ConfigurationError(msg)
    if not text:
        msg = "Snippet text must not be empty"
        raise ConfigurationError(msg)

    ref = "{%" + name + "%}"
    nodes = {
        node_id: node.model_copy(
            update={"state_prompt": node.state_prompt.replace(text, ref)},
            deep=True,
        )
        for node_id, node in graph.nodes.items()
    }
    return graph.model_copy(
        update={
            "nodes": nodes,
            "instructions": graph.instructions.replace(text, ref),
            "snippets": {**graph.snippets, name: text},
        },
        deep=True,
    )
