"""Pydantic models for the normalized agent graph.

An agent is a directed graph of nodes. Each node carries the prompt the
agent follows while it is active and an ordered list of conditioned
transitions. Platform importers produce this schema; the simulation core
never looks at platform-specific fields.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from voice_gym.types import GraphIntegrityError

SNIPPET_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")

ConditionType = Literal["always", "keyword", "regex", "llm", "tool_called"]
ConditionScope = Literal["user", "agent", "both"]


class ToolDefinition(BaseModel):
    """A tool the agent may invoke. Calls are recorded, never executed."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class TransitionCondition(BaseModel):
    """Predicate guarding a transition.

    Supported types:
        - always: Unconditional.
        - keyword: Any keyword appears (case-insensitive) in the scoped turns.
        - regex: Pattern matches (case-insensitive) the scoped turns.
        - llm: Natural-language predicate answered yes/no by a model role.
        - tool_called: The named tool was invoked on the latest agent turn.
    """

    model_config = ConfigDict(frozen=True)

    type: ConditionType = "always"
    keywords: list[str] = Field(default_factory=list)
    pattern: str | None = None
    description: str | None = None
    tool: str | None = None
    scope: ConditionScope = "user"

    @model_validator(mode="after")
    def _check_well_formed(self) -> TransitionCondition:
        if self.type == "keyword" and not any(k.strip() for k in self.keywords):
            msg = "keyword condition requires at least one non-empty keyword"
            raise GraphIntegrityError(msg)
        if self.type == "regex":
            if not self.pattern:
                msg = "regex condition requires a pattern"
                raise GraphIntegrityError(msg)
            try:
                re.compile(self.pattern)
            except re.error as exc:
                msg = f"regex condition has invalid pattern {self.pattern!r}: {exc}"
                raise GraphIntegrityError(msg) from exc
        if self.type == "llm" and not (self.description or "").strip():
            msg = "llm condition requires a description"
            raise GraphIntegrityError(msg)
        if self.type == "tool_called" and not self.tool:
            msg = "tool_called condition requires a tool name"
            raise GraphIntegrityError(msg)
        return self


class Transition(BaseModel):
    """A directed, conditioned edge to another node."""

    model_config = ConfigDict(frozen=True)

    target: str
    condition: TransitionCondition = Field(default_factory=TransitionCondition)
    priority: int = 0
    fallback: bool = False


class Node(BaseModel):
    """A conversational state and the prompt the agent follows in it."""

    model_config = ConfigDict(frozen=True)

    id: str
    state_prompt: str = ""
    transitions: list[Transition] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        """Return True if the node has no outgoing transitions."""
        return not self.transitions

    def ordered_transitions(self) -> list[Transition]:
        """Non-fallback transitions by priority, ties in declaration order."""
        indexed = [(t.priority, i, t) for i, t in enumerate(self.transitions) if not t.fallback]
        return [t for _p, _i, t in sorted(indexed, key=lambda x: (x[0], x[1]))]

    def fallback_transition(self) -> Transition | None:
        """Return the first transition marked as fallback, if any."""
        for transition in self.transitions:
            if transition.fallback:
                return transition
        return None


class AgentGraph(BaseModel):
    """Top-level agent definition.

    ``nodes`` may be given as a mapping keyed by node id or as a list of
    node objects; a list with repeated ids is rejected.
    """

    model_config = ConfigDict(frozen=True)

    name: str = "agent"
    entry_node_id: str
    nodes: dict[str, Node]
    snippets: dict[str, str] = Field(default_factory=dict)
    instructions: str = ""
    tools: list[ToolDefinition] = Field(default_factory=list)
    default_threshold: float | None = Field(default=None, ge=0.0, le=1.0)

    @field_validator("nodes", mode="before")
    @classmethod
    def _nodes_from_list(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        mapping: dict[str, Any] = {}
        for raw in value:
            node_id = raw.id if isinstance(raw, Node) else raw.get("id")
            if node_id in mapping:
                msg = f"Duplicate node id: {node_id!r}"
                raise GraphIntegrityError(msg)
            mapping[node_id] = raw
        return mapping

    @model_validator(mode="after")
    def _check_integrity(self) -> AgentGraph:
        errors = graph_errors(self)
        if errors:
            raise GraphIntegrityError("; ".join(errors))
        return self

    @property
    def entry_node(self) -> Node:
        """Return the entry node."""
        return self.nodes[self.entry_node_id]

    def node(self, node_id: str) -> Node:
        """Look up a node by id."""
        return self.nodes[node_id]

    def node_tools(self, node_id: str) -> list[ToolDefinition]:
        """Tool definitions reachable from a node, in node declaration order."""
        by_name = {t.name: t for t in self.tools}
        return [by_name[name] for name in self.nodes[node_id].tools if name in by_name]


def graph_errors(graph: AgentGraph) -> list[str]:
    """Collect invariant violations for a graph.

    Returns:
        List of error strings. Empty if the graph is well-formed.
    """
    errors: list[str] = []
    node_ids = set(graph.nodes)

    if not graph.nodes:
        errors.append("Graph has no nodes")
    if graph.entry_node_id not in node_ids:
        errors.append(f"Entry node '{graph.entry_node_id}' does not exist")

    tool_names = [t.name for t in graph.tools]
    if len(set(tool_names)) != len(tool_names):
        errors.append("Duplicate tool names")
    declared_tools = set(tool_names)

    for key, node in graph.nodes.items():
        if key != node.id:
            errors.append(f"Node key '{key}' does not match node id '{node.id}'")
        for transition in node.transitions:
            if transition.target not in node_ids:
                errors.append(
                    f"Node '{node.id}': transition target '{transition.target}' does not exist"
                )
            condition = transition.condition
            if condition.type == "tool_called" and condition.tool not in declared_tools:
                errors.append(
                    f"Node '{node.id}': condition references unknown tool '{condition.tool}'"
                )
        for tool in node.tools:
            if tool not in declared_tools:
                errors.append(f"Node '{node.id}': tool '{tool}' is not declared")

    for name in graph.snippets:
        if not name or not SNIPPET_NAME_RE.match(name):
            errors.append(f"Invalid snippet name: {name!r}")

    return errors
