"""Voice Agent Gym: simulate and score conversations with graph-based voice agents."""

from voice_gym.dry import DryReport, DuplicateMatch, analyze_graph, similarity
from voice_gym.engine import Conversation, ConversationEngine, ConversationState
from voice_gym.graph import AgentGraph, Node, ToolDefinition, Transition, TransitionCondition, load_graph
from voice_gym.judging import JudgePipeline, JudgeResult, TestVerdict, VerdictStatus
from voice_gym.roles import ModelRoles
from voice_gym.runner import SuiteResult, SuiteRunner, TestRunResult
from voice_gym.suite import GlobalMetric, TestCase, TestSuite, load_suite
from voice_gym.templating import expand_graph_snippets, expand_snippets, substitute_variables
from voice_gym.transcript import Transcript, Turn
from voice_gym.types import (
    ConfigurationError,
    GraphIntegrityError,
    JudgeParseError,
    ModelInvocationError,
    RunConfig,
    SimulationTimeoutError,
    TerminationReason,
)

__all__ = [
    "AgentGraph",
    "ConfigurationError",
    "Conversation",
    "ConversationEngine",
    "ConversationState",
    "DryReport",
    "DuplicateMatch",
    "GlobalMetric",
    "GraphIntegrityError",
    "JudgeParseError",
    "JudgePipeline",
    "JudgeResult",
    "ModelInvocationError",
    "ModelRoles",
    "Node",
    "RunConfig",
    "SimulationTimeoutError",
    "SuiteResult",
    "SuiteRunner",
    "TerminationReason",
    "TestCase",
    "TestRunResult",
    "TestSuite",
    "TestVerdict",
    "ToolDefinition",
    "Transcript",
    "Transition",
    "TransitionCondition",
    "Turn",
    "VerdictStatus",
    "analyze_graph",
    "expand_graph_snippets",
    "expand_snippets",
    "load_graph",
    "load_suite",
    "similarity",
    "substitute_variables",
]

__version__ = "0.1.0"
