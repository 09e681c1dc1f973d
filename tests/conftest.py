"""Pytest configuration and shared fixtures for promptloop tests."""

import asyncio
from typing import Any, Callable

import pytest

from promptloop.capabilities import (
    Capabilities,
    CompletionOptions,
    CompletionResponse,
    ExecutionResult,
)
from promptloop.models import ModelRef, ToolCall

# ============================================================================
# Environment
# ============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep model names from the developer's environment out of tests."""
    for name in (
        "MODEL_NAME",
        "EMBEDDING_MODEL",
        "LOGFIRE_ENABLED",
        "PROMPTLOOP_MAX_TOOL_ITERATIONS",
        "PROMPTLOOP_TIME_LIMIT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


# ============================================================================
# Fake capabilities
# ============================================================================


class FakeCompletion:
    """Scripted ``PromptCompletion``.

    Replies come from ``handler(system_prompt, user_message, model, options)``
    when given, else from the ``responses`` queue. A reply may be a string, a
    CompletionResponse or an exception to raise. An exhausted queue replies "".
    """

    def __init__(self, responses: list[Any] | None = None, handler: Callable | None = None):
        self.responses = list(responses or [])
        self.handler = handler
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        model: ModelRef,
        options: CompletionOptions,
    ) -> CompletionResponse:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_message": user_message,
                "model": model,
                "options": options,
            }
        )
        if self.handler is not None:
            reply = self.handler(system_prompt, user_message, model, options)
        elif self.responses:
            reply = self.responses.pop(0)
        else:
            reply = ""

        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            reply = CompletionResponse(content=reply)
        if options.stream is not None and reply.content:
            options.stream.send(reply.content)
        return reply


class FakeEmbedder:
    """``Embedder`` returning fixed vectors per text, ``default`` otherwise."""

    def __init__(self, vectors: dict[str, list[float]] | None = None, default=None):
        self.vectors = vectors or {}
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.calls: list[tuple[list[str], ModelRef]] = []

    async def embed(self, texts: list[str], model: ModelRef) -> list[list[float]]:
        self.calls.append((list(texts), model))
        return [self.vectors.get(text, self.default) for text in texts]


class FakeSandbox:
    """``SandboxRunner`` that evaluates ``handler(args)`` instead of running code."""

    def __init__(self, handler: Callable[[dict], Any] | None = None, delay: float = 0.0):
        self.handler = handler or (lambda args: args)
        self.delay = delay
        self.calls: list[tuple[str, dict, int]] = []

    async def run_function(self, code: str, args: dict, timeout_ms: int) -> ExecutionResult:
        self.calls.append((code, args, timeout_ms))
        if self.delay:
            await asyncio.sleep(self.delay)
        try:
            return ExecutionResult(success=True, result=self.handler(args))
        except Exception as e:
            return ExecutionResult(success=False, error=str(e))


class FakeRemoteTools:
    """``RemoteToolInvoker`` answering from a ``{tool_name: result}`` map."""

    def __init__(self, results: dict[str, ExecutionResult] | None = None):
        self.results = results or {}
        self.calls: list[tuple[str, str, dict]] = []

    async def invoke(self, server, tool_name, args, timeout_ms, stream=None) -> ExecutionResult:
        self.calls.append((server, tool_name, args))
        return self.results.get(tool_name, ExecutionResult(success=True, result=f"{tool_name} ok"))


def tool_call(name: str, arguments: Any = "{}", call_id: str | None = None) -> ToolCall:
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=arguments)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def model_ref() -> ModelRef:
    """Core model used by most tests."""
    return ModelRef.model_validate("test:core")


@pytest.fixture
def embedding_model() -> ModelRef:
    return ModelRef.model_validate("test:embed")


@pytest.fixture
def fake_completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def fake_sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def fake_remote() -> FakeRemoteTools:
    return FakeRemoteTools()


@pytest.fixture
def capabilities(fake_completion, fake_embedder, fake_sandbox, fake_remote) -> Capabilities:
    """Capabilities wired to the fakes above."""
    return Capabilities(
        completion=fake_completion,
        embedder=fake_embedder,
        sandbox=fake_sandbox,
        remote_tools=fake_remote,
    )


# ============================================================================
# YAML Fixtures
# ============================================================================


@pytest.fixture
def suite_yaml() -> str:
    """Minimal suite with one equality pair."""
    return """
instructions: Echo the input in uppercase
model: test:core
pairs:
  - input: hi
    expected: HI
"""


@pytest.fixture
def suite_with_tools_yaml() -> str:
    """Suite with a local tool, a remote tool and an agent."""
    return """
instructions: Answer weather questions using the tools
model: test:core
max_tool_iterations: 3
tools:
  - name: get_weather
    description: Current weather for a city
    parameters:
      type: object
      properties:
        city: {type: string}
      required: [city]
    code: |
      def get_weather(city):
          return {"city": city, "temp": 21}
  - name: search
    server: docs
agents:
  - name: researcher
    instructions: Research the question
    tools: [search]
pairs:
  - input: Weather in Paris?
    expected: It is 21 degrees in Paris.
    settings:
      check_types: [tools_call]
      tools_called:
        - name: get_weather
          expected_params: {city: Paris}
"""


@pytest.fixture
def suite_file(tmp_path, suite_yaml):
    """Suite YAML written to a temporary file."""
    path = tmp_path / "suite.yml"
    path.write_text(suite_yaml)
    return path
