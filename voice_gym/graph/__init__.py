"""Agent graph model.

Provides the normalized graph schema (nodes, transitions, tools, snippets)
and a loader that enforces graph invariants at load time.
"""

from voice_gym.graph.loader import load_graph, parse_graph, save_graph
from voice_gym.graph.schema import (
    AgentGraph,
    Node,
    ToolDefinition,
    Transition,
    TransitionCondition,
    graph_errors,
)

__all__ = [
    "AgentGraph",
    "Node",
    "ToolDefinition",
    "Transition",
    "TransitionCondition",
    "graph_errors",
    "load_graph",
    "parse_graph",
    "save_graph",
]
