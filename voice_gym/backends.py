"""Model backends for the simulator, agent, and judge roles.

Every backend implements one capability: ``generate(request) -> Generation``.
Variants are registered in a BackendRegistry keyed by selector prefix, so a
role's selector string (``anthropic/claude-sonnet-4-20250514``,
``claude-cli``, ``scripted``) picks its implementation at run time.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from voice_gym.graph.schema import ToolDefinition
from voice_gym.transcript import ToolCall
from voice_gym.types import ConfigurationError, ModelInvocationError, TransientBackendError

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0

# Forced tool used to get structured output from the Messages API.
STRUCTURED_TOOL_NAME = "respond"


@dataclass
class GenerationRequest:
    """A single logical generate call.

    ``json_mode`` asks for a single JSON object as the text, shaped by
    ``json_schema`` when given. ``timeout`` bounds this one call in seconds.
    """

    system: str
    messages: list[dict[str, str]]
    tools: list[ToolDefinition] = field(default_factory=list)
    json_mode: bool = False
    json_schema: dict[str, Any] | None = None
    max_tokens: int = 1024
    timeout: float | None = None


@dataclass
class Generation:
    """Backend output: free text plus any requested tool calls."""

    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)


class ModelBackend(Protocol):
    """Capability interface shared by all backend variants."""

    name: str

    def generate(self, request: GenerationRequest) -> Generation: ...


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------


def _import_anthropic() -> Any:
    try:
        import anthropic
    except ImportError as exc:
        msg = (
            "AnthropicBackend requires the 'anthropic' package. "
            "Install it with: pip install anthropic"
        )
        raise ImportError(msg) from exc
    return anthropic


class AnthropicBackend:
    """Remote backend using the Anthropic Messages API with native tool use.

    The API key is read from ``ANTHROPIC_API_KEY`` by the client library.
    JSON-mode requests force a single tool call whose input schema is the
    requested shape; its input is returned as the generation text.
    """

    def __init__(self, model: str, client: Any | None = None) -> None:
        self.model = model
        self.name = f"anthropic/{model}"
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = _import_anthropic().Anthropic()
        return self._client

    def generate(self, request: GenerationRequest) -> Generation:
        """Call the Messages API and split text and tool_use blocks."""
        anthropic = _import_anthropic()
        client = self._get_client()
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": request.max_tokens,
            "system": request.system,
            "messages": request.messages,
        }
        if request.timeout is not None:
            kwargs["timeout"] = request.timeout
        if request.json_mode:
            kwargs["tools"] = [
                {
                    "name": STRUCTURED_TOOL_NAME,
                    "description": "Return the response as one structured object.",
                    "input_schema": request.json_schema or {"type": "object"},
                }
            ]
            kwargs["tool_choice"] = {"type": "tool", "name": STRUCTURED_TOOL_NAME}
        elif request.tools:
            kwargs["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]

        try:
            response = client.messages.create(**kwargs)
        except (
            anthropic.RateLimitError,
            anthropic.APIConnectionError,
            anthropic.InternalServerError,
        ) as exc:
            raise TransientBackendError(str(exc)) from exc

        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                texts.append(block.text)
            elif block.type == "tool_use":
                if request.json_mode and block.name == STRUCTURED_TOOL_NAME:
                    return Generation(text=json.dumps(dict(block.input or {})))
                calls.append(ToolCall(name=block.name, arguments=dict(block.input or {})))
        return Generation(text="".join(texts).strip(), tool_calls=calls)


# ---------------------------------------------------------------------------
# Local Claude CLI subprocess
# ---------------------------------------------------------------------------


class ClaudeCLIBackend:
    """Local backend that shells out to ``claude -p``.

    Tool definitions are not forwarded; the CLI returns text only. JSON-mode
    requests get the expected object shape appended to the prompt.
    """

    def __init__(self, model: str | None = None, executable: str = "claude", timeout: float = 300.0) -> None:
        self.model = model
        self.executable = executable
        self.timeout = timeout
        self.name = f"claude-cli/{model}" if model else "claude-cli"

    def _build_prompt(self, request: GenerationRequest) -> str:
        parts = [request.system, ""]
        for message in request.messages:
            parts.append(f"[{message['role']}]\n{message['content']}\n")
        if request.json_mode:
            parts.append("Respond with ONLY a single JSON object and no other text.")
            if request.json_schema:
                parts.append(f"It must match this JSON schema:\n{json.dumps(request.json_schema, indent=2)}")
        return "\n".join(parts)

    def generate(self, request: GenerationRequest) -> Generation:
        """Run the CLI once and return its stdout."""
        cmd = [self.executable, "-p", self._build_prompt(request), "--output-format", "text"]
        if self.model:
            cmd.extend(["--model", self.model])
        timeout = self.timeout if request.timeout is None else min(self.timeout, request.timeout)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            msg = f"{self.executable} timed out after {timeout:.0f}s"
            raise TransientBackendError(msg) from exc
        if proc.returncode != 0:
            msg = f"{self.executable} exited {proc.returncode}: {proc.stderr.strip()[:200]}"
            raise TransientBackendError(msg)
        return Generation(text=proc.stdout.strip())


# ---------------------------------------------------------------------------
# Scripted (deterministic) backend
# ---------------------------------------------------------------------------

ScriptItem = str | Generation | Exception


class ScriptedBackend:
    """Deterministic backend that replays queued outputs.

    Items may be strings, Generation objects, or exceptions (raised when
    reached). A ``responder`` callable, if given, answers once the queue is
    exhausted; otherwise ``default`` is returned. Every request is kept in
    ``requests`` for inspection.
    """

    def __init__(
        self,
        outputs: list[ScriptItem] | None = None,
        default: str = "",
        responder: Callable[[GenerationRequest], str | Generation] | None = None,
        name: str = "scripted",
    ) -> None:
        self.name = name
        self._outputs: list[ScriptItem] = list(outputs or [])
        self._default = default
        self._responder = responder
        self._lock = threading.Lock()
        self.requests: list[GenerationRequest] = []

    def generate(self, request: GenerationRequest) -> Generation:
        """Return the next scripted output."""
        with self._lock:
            self.requests.append(request)
            item: ScriptItem | None = self._outputs.pop(0) if self._outputs else None

        if item is None:
            if self._responder is not None:
                item = self._responder(request)
            else:
                item = self._default
        if isinstance(item, Exception):
            raise item
        if isinstance(item, Generation):
            return item
        return Generation(text=item)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

BackendFactory = Callable[[str | None], ModelBackend]


def _anthropic_factory(model: str | None) -> ModelBackend:
    if not model:
        msg = "anthropic selector requires a model, e.g. 'anthropic/claude-sonnet-4-20250514'"
        raise ConfigurationError(msg)
    return AnthropicBackend(model)


class BackendRegistry:
    """Maps selector prefixes to backend factories."""

    def __init__(self) -> None:
        self._factories: dict[str, BackendFactory] = {}

    def register(self, prefix: str, factory: BackendFactory) -> None:
        """Register a factory for selectors starting with ``prefix``."""
        self._factories[prefix] = factory

    def prefixes(self) -> list[str]:
        """Return a sorted list of registered prefixes."""
        return sorted(self._factories)

    def resolve(self, selector: str) -> ModelBackend:
        """Build a backend from a ``prefix[/model]`` selector.

        Raises:
            ConfigurationError: If the prefix is not registered.
        """
        prefix, _, model = selector.strip().partition("/")
        factory = self._factories.get(prefix)
        if factory is None:
            msg = f"Unknown model backend '{prefix}' in selector '{selector}'. Known: {self.prefixes()}"
            raise ConfigurationError(msg)
        return factory(model or None)


def default_registry() -> BackendRegistry:
    """Return a registry with the built-in backends registered."""
    registry = BackendRegistry()
    registry.register("anthropic", _anthropic_factory)
    registry.register("claude-cli", lambda model: ClaudeCLIBackend(model))
    registry.register("scripted", lambda _model: ScriptedBackend())
    return registry


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def generate_with_retry(
    backend: ModelBackend,
    request: GenerationRequest,
    role: str,
    attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Generation:
    """Call a backend, retrying transient failures with exponential backoff.

    Non-transient failures are not retried.

    Raises:
        ModelInvocationError: After the attempt cap, or on the first
            non-transient failure.
    """
    for attempt in range(attempts):
        try:
            return backend.generate(request)
        except TransientBackendError as exc:
            if attempt + 1 >= attempts:
                logger.error(
                    "%s call to %s failed after %d attempts: %s",
                    role, backend.name, attempts, exc,
                )
                raise ModelInvocationError(role, str(exc), attempts) from exc
            delay = min(base_delay * (2 ** attempt), MAX_BACKOFF_SECONDS)
            logger.warning(
                "%s call to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                role, backend.name, attempt + 1, attempts, delay, exc,
            )
            sleep(delay)
        except ModelInvocationError:
            raise
        except Exception as exc:
            logger.error("%s call to %s failed without retry: %s", role, backend.name, exc)
            raise ModelInvocationError(role, str(exc), attempt + 1) from exc

    raise ModelInvocationError(role, "no attempts made", 0)
