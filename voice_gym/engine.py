"""ConversationEngine: drives simulated conversations over an agent graph.

Each conversation is an explicit state machine:
NOT_STARTED -> IN_PROGRESS(node) -> TERMINATED(reason). One ``step`` is one
turn: the simulator speaks (or signals its goal is met), the agent answers
from the active node's rendered prompt, tool calls are recorded, and the
transition evaluator picks the next node.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from voice_gym.graph.schema import AgentGraph, Node
from voice_gym.roles import ModelRoles
from voice_gym.suite.schema import TestCase
from voice_gym.templating import render_prompt, substitute_variables
from voice_gym.transcript import ToolCall, Transcript, TranscriptBuilder
from voice_gym.transitions import TransitionEvaluator, TransitionOutcome
from voice_gym.types import (
    ModelInvocationError,
    RunConfig,
    SimulationTimeoutError,
    TerminationReason,
)

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """Lifecycle of a single conversation."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    TERMINATED = "terminated"


class Conversation:
    """One simulated conversation for one test case.

    Args:
        graph: The agent graph (read-only).
        roles: Simulator and agent roles to drive.
        evaluator: Transition evaluator for node changes.
        persona: Simulator persona, variables already substituted.
        variables: Runtime variables for ``{{name}}`` substitution.
        max_turns: Turn cap; reaching it ends with ``max_turns_exceeded``.
        timeout_seconds: Optional wall-clock cap. Checked before each role
            call; the remaining time is passed down as the call's timeout.
    """

    def __init__(
        self,
        graph: AgentGraph,
        roles: ModelRoles,
        evaluator: TransitionEvaluator,
        persona: str,
        variables: dict[str, Any],
        max_turns: int,
        timeout_seconds: float | None = None,
    ) -> None:
        self._graph = graph
        self._roles = roles
        self._evaluator = evaluator
        self._persona = persona
        self._variables = variables
        self._max_turns = max_turns
        self._timeout = timeout_seconds
        self._instructions = render_prompt(graph.instructions, graph.snippets, variables)

        self._state = ConversationState.NOT_STARTED
        self._node_id = graph.entry_node_id
        self._turn_count = 0
        self._builder: TranscriptBuilder | None = None
        self._transcript: Transcript | None = None

    @property
    def state(self) -> ConversationState:
        """Current lifecycle state."""
        return self._state

    @property
    def current_node(self) -> Node:
        """The active node."""
        return self._graph.node(self._node_id)

    @property
    def turn_count(self) -> int:
        """Turns started so far."""
        return self._turn_count

    @property
    def transcript(self) -> Transcript | None:
        """The final transcript once terminated, else None."""
        return self._transcript

    def start(self) -> None:
        """Place the conversation at the entry node."""
        if self._state is not ConversationState.NOT_STARTED:
            return
        self._builder = TranscriptBuilder(self._graph.entry_node_id)
        self._state = ConversationState.IN_PROGRESS

    def step(self) -> ConversationState:
        """Run one turn. Returns the state after the turn."""
        if self._state is ConversationState.NOT_STARTED:
            self.start()
        if self._state is ConversationState.TERMINATED:
            return self._state

        if self._turn_count >= self._max_turns:
            return self._terminate(TerminationReason.MAX_TURNS_EXCEEDED)
        timed_out = self._timed_out()
        if timed_out is not None:
            return self._stop_on_timeout(timed_out)

        self._turn_count += 1
        try:
            return self._run_turn()
        except SimulationTimeoutError as exc:
            return self._stop_on_timeout(exc)
        except ModelInvocationError as exc:
            # A call cut short by the deadline is a timeout, not a backend fault.
            timed_out = self._timed_out()
            if timed_out is not None:
                return self._stop_on_timeout(timed_out)
            logger.error("Conversation aborted on turn %d: %s", self._turn_count, exc)
            return self._terminate(TerminationReason.ERROR, error=str(exc))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _run_turn(self) -> ConversationState:
        assert self._builder is not None
        builder = self._builder
        node = self.current_node

        reply = self._roles.simulator.next_utterance(
            self._persona, builder.turns, timeout=self._remaining()
        )
        if reply.goal_complete:
            return self._terminate(TerminationReason.GOAL_COMPLETE)
        builder.add_user_turn(reply.text, node.id)

        timed_out = self._timed_out()
        if timed_out is not None:
            raise timed_out
        state_prompt = render_prompt(node.state_prompt, self._graph.snippets, self._variables)
        generation = self._roles.agent.respond(
            self._instructions,
            state_prompt,
            builder.turns,
            self._graph.node_tools(node.id),
            timeout=self._remaining(),
        )
        calls = self._reachable_calls(node, generation.tool_calls)
        builder.add_agent_turn(generation.text, node.id, calls)
        logger.debug("Turn %d at node '%s': %d tool call(s)", self._turn_count, node.id, len(calls))

        decision = self._evaluator.evaluate(node, builder.turns, calls)
        if decision.outcome is TransitionOutcome.EXHAUSTED:
            return self._terminate(TerminationReason.GRAPH_EXHAUSTED)
        if decision.outcome is TransitionOutcome.MOVE and decision.target != node.id:
            self._node_id = decision.target or node.id
            builder.visit(self._node_id)

        if self._turn_count >= self._max_turns:
            return self._terminate(TerminationReason.MAX_TURNS_EXCEEDED)
        return self._state

    @staticmethod
    def _reachable_calls(node: Node, calls: list[ToolCall]) -> list[ToolCall]:
        """Keep only tool calls declared reachable from the node."""
        allowed = set(node.tools)
        kept: list[ToolCall] = []
        for call in calls:
            if call.name in allowed:
                kept.append(call)
            else:
                logger.warning("Dropping call to tool '%s' not reachable from node '%s'", call.name, node.id)
        return kept

    def _remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        if self._timeout is None or self._builder is None:
            return None
        return max(self._timeout - self._builder.elapsed, 0.0)

    def _timed_out(self) -> SimulationTimeoutError | None:
        if self._timeout is None or self._builder is None:
            return None
        elapsed = self._builder.elapsed
        if elapsed > self._timeout:
            return SimulationTimeoutError(elapsed, self._timeout)
        return None

    def _stop_on_timeout(self, exc: SimulationTimeoutError) -> ConversationState:
        logger.warning("Conversation stopped on turn %d: %s", self._turn_count, exc)
        return self._terminate(TerminationReason.MAX_TURNS_EXCEEDED, error=str(exc))

    def _terminate(self, reason: TerminationReason, error: str | None = None) -> ConversationState:
        assert self._builder is not None
        self._transcript = self._builder.finish(reason, self._turn_count, error=error)
        self._state = ConversationState.TERMINATED
        logger.debug("Conversation terminated: %s after %d turn(s)", reason.value, self._turn_count)
        return self._state


class ConversationEngine:
    """Builds and runs conversations for test cases over one graph.

    The engine holds only read-only references, so one instance may run
    conversations from several threads at once.
    """

    def __init__(
        self,
        graph: AgentGraph,
        roles: ModelRoles,
        config: RunConfig | None = None,
        evaluator: TransitionEvaluator | None = None,
    ) -> None:
        self.graph = graph
        self.roles = roles
        self.config = config or RunConfig()
        self.evaluator = evaluator or TransitionEvaluator(roles.transition)

    def start(self, test_case: TestCase) -> Conversation:
        """Create a conversation for a test case, placed at the entry node."""
        variables = dict(test_case.variables)
        conversation = Conversation(
            graph=self.graph,
            roles=self.roles,
            evaluator=self.evaluator,
            persona=substitute_variables(test_case.user_prompt, variables),
            variables=variables,
            max_turns=test_case.max_turns or self.config.max_turns,
            timeout_seconds=test_case.timeout_seconds or self.config.timeout_seconds,
        )
        conversation.start()
        return conversation

    def run(self, test_case: TestCase) -> Transcript:
        """Run a conversation to termination and return its transcript."""
        conversation = self.start(test_case)
        while conversation.step() is not ConversationState.TERMINATED:
            pass
        transcript = conversation.transcript
        assert transcript is not None
        logger.info(
            "Test '%s' conversation ended: %s (%d turns, nodes %s)",
            test_case.name,
            transcript.termination_reason.value,
            transcript.turn_count,
            " -> ".join(transcript.nodes_visited),
        )
        return transcript
