"""Boundary contracts between the engine and the outside world.

The engine only talks to models, embedders, sandboxes and remote tool servers
through the protocols below. Default implementations live in
``promptloop.providers``; tests plug in scripted fakes.
"""

import asyncio
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken
from .models import ImageAttachment, Message, ModelRef, ToolCall, ToolDefinition


class DeltaStream:
    """Push-based channel of text deltas.

    Producers ``send`` text and the owner ``close``s the stream exactly once.
    Consumers iterate it with ``async for``; iteration ends after close. A
    stream cannot be reopened.

    Example:
        stream = DeltaStream()
        task = asyncio.create_task(loop.run(..., stream=stream))
        async for delta in stream:
            print(delta, end="")
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, delta: str) -> None:
        if self._closed:
            raise RuntimeError("Cannot send on a closed stream")
        if delta:
            self._queue.put_nowait(delta)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item


class CompletionOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    context: list[Message] = Field(default_factory=list, description="Prior conversation turns.")
    tools: list[ToolDefinition] = Field(default_factory=list)
    json_mode: bool = Field(default=False, description="Ask for a bare JSON document.")
    json_schema: dict[str, Any] | None = None
    json_strict: bool = False
    images: list[ImageAttachment] = Field(default_factory=list)
    stream: DeltaStream | None = Field(default=None, exclude=True)
    token: CancellationToken | None = Field(default=None, exclude=True)


class CompletionResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    messages: list[Message] | None = Field(
        default=None, description="Full conversation, set when produced by the tool loop."
    )


class ExecutionResult(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None


@runtime_checkable
class PromptCompletion(Protocol):
    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        model: ModelRef,
        options: CompletionOptions,
    ) -> CompletionResponse: ...


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, texts: list[str], model: ModelRef) -> list[list[float]]: ...


@runtime_checkable
class SandboxRunner(Protocol):
    async def run_function(
        self, code: str, args: dict[str, Any], timeout_ms: int
    ) -> ExecutionResult: ...


@runtime_checkable
class RemoteToolInvoker(Protocol):
    async def invoke(
        self,
        server: str,
        tool_name: str,
        args: dict[str, Any],
        timeout_ms: int,
        stream: DeltaStream | None = None,
    ) -> ExecutionResult: ...


class Capabilities(BaseModel):
    """Bundle of capability implementations handed to the engine."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    completion: PromptCompletion
    embedder: Embedder | None = None
    sandbox: SandboxRunner | None = None
    remote_tools: RemoteToolInvoker | None = None
