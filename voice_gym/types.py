"""Core type definitions for Voice Agent Gym."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class Speaker(str, Enum):
    """Who produced a transcript turn."""

    USER = "user"
    AGENT = "agent"


class TerminationReason(str, Enum):
    """Why a simulated conversation stopped."""

    GOAL_COMPLETE = "goal_complete"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"
    GRAPH_EXHAUSTED = "graph_exhausted"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class VoiceGymError(Exception):
    """Base class for all errors raised by voice_gym."""


class GraphIntegrityError(VoiceGymError):
    """Raised when an agent graph violates its structural invariants."""


class ConfigurationError(VoiceGymError):
    """Raised for invalid run or test-suite configuration."""


class ModelInvocationError(VoiceGymError):
    """Raised when a model backend call fails after bounded retries."""

    def __init__(self, role: str, message: str, attempts: int = 1) -> None:
        self.role = role
        self.attempts = attempts
        super().__init__(f"{role} model call failed after {attempts} attempt(s): {message}")


class TransientBackendError(VoiceGymError):
    """Raised by a backend for a failure that is worth retrying."""


class JudgeParseError(VoiceGymError):
    """Raised when judge output lacks the required structured fields."""

    def __init__(self, message: str, raw: str = "") -> None:
        self.raw = raw
        super().__init__(message)


class SimulationTimeoutError(VoiceGymError):
    """Raised internally when a conversation exceeds its wall-clock bound."""

    def __init__(self, elapsed: float, limit: float) -> None:
        self.elapsed = elapsed
        self.limit = limit
        super().__init__(f"Conversation exceeded {limit:.1f}s (elapsed {elapsed:.1f}s)")


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class RunConfig(BaseModel):
    """Run-wide configuration, constructed once and passed explicitly.

    Model selectors are opaque strings resolved by ``voice_gym.backends``
    (e.g. ``anthropic/claude-sonnet-4-20250514`` or ``claude-cli``).
    """

    simulator_model: str = "anthropic/claude-sonnet-4-20250514"
    agent_model: str = "anthropic/claude-sonnet-4-20250514"
    judge_model: str = "anthropic/claude-sonnet-4-20250514"
    transition_model: str | None = None
    max_turns: int = Field(default=20, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_concurrency: int = Field(default=4, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0.0)
    default_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _selectors_not_empty(self) -> RunConfig:
        for field_name in ("simulator_model", "agent_model", "judge_model"):
            if not getattr(self, field_name).strip():
                msg = f"{field_name} must not be empty"
                raise ValueError(msg)
        return self


def load_run_config(path: Path) -> RunConfig:
    """Load a RunConfig from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the YAML or its values are invalid.
    """
    with open(path) as fh:
        try:
            raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            msg = f"Malformed run config {path}: {exc}"
            raise ConfigurationError(msg) from exc
    try:
        return RunConfig.model_validate(raw)
    except ValidationError as exc:
        msg = f"Invalid run config {path}: {exc}"
        raise ConfigurationError(msg) from exc
