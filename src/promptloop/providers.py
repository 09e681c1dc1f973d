"""Default capability implementations.

- ``PydanticAICompletion``: completions through pydantic-ai's direct model API
- ``HttpEmbedder``: any OpenAI-compatible ``/embeddings`` endpoint via httpx
- ``SubprocessSandbox``: runs a local tool's Python function in a child interpreter
- ``MCPRemoteTools``: calls tools on MCP servers over streamable HTTP
"""

import asyncio
import base64
import json
import os
import re
import sys
from datetime import timedelta
from typing import Any

import httpx
import logfire
from mcp import ClientSession
from mcp.client.streamable_http import streamablehttp_client
from pydantic_ai.direct import model_request, model_request_stream
from pydantic_ai.messages import (
    BinaryContent,
    ImageUrl,
    ModelMessage,
    ModelRequest,
    ModelResponse,
    PartDeltaEvent,
    PartStartEvent,
    SystemPromptPart,
    TextPart,
    TextPartDelta,
    ToolCallPart,
    ToolReturnPart,
    UserPromptPart,
)
from pydantic_ai.models import ModelRequestParameters
from pydantic_ai.tools import ToolDefinition as FunctionToolDefinition

from . import config
from .capabilities import (
    CompletionOptions,
    CompletionResponse,
    DeltaStream,
    ExecutionResult,
)
from .models import ImageAttachment, Message, ModelRef, Role, ToolCall

# ---------------------------------------------------------------------------
# Completions
# ---------------------------------------------------------------------------

_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


def _image_part(image: ImageAttachment) -> BinaryContent | ImageUrl:
    if match := _DATA_URL.match(image.data_url):
        return BinaryContent(data=base64.b64decode(match["data"]), media_type=match["mime"])
    return ImageUrl(url=image.data_url)


def _user_part(content: str, images: list[ImageAttachment] | None) -> UserPromptPart:
    if not images:
        return UserPromptPart(content=content)
    return UserPromptPart(content=[content, *(_image_part(i) for i in images)])


def output_instructions(options: CompletionOptions) -> str:
    """Extra system prompt text describing the required output shape."""
    if options.json_schema:
        text = (
            "Respond only with a JSON document, without Markdown fences, that validates "
            f"against this JSON Schema:\n{json.dumps(options.json_schema)}"
        )
        if options.json_strict:
            text += "\nDo not add properties the schema does not define."
        return text
    if options.json_mode:
        return "Respond only with a valid JSON document, without Markdown fences."
    return ""


def build_messages(
    system_prompt: str,
    user_message: str,
    options: CompletionOptions,
) -> list[ModelMessage]:
    """Translate the canonical conversation into pydantic-ai request/response messages."""
    instructions = "\n\n".join(p for p in (system_prompt, output_instructions(options)) if p)
    history: list[ModelMessage] = []
    pending: list[Any] = [SystemPromptPart(content=instructions)] if instructions else []

    def flush() -> None:
        if pending:
            history.append(ModelRequest(parts=list(pending)))
            pending.clear()

    message: Message
    for message in options.context:
        if message.role == Role.SYSTEM:
            pending.append(SystemPromptPart(content=message.content))
        elif message.role == Role.USER:
            pending.append(_user_part(message.content, message.images))
        elif message.role == Role.TOOL:
            pending.append(
                ToolReturnPart(
                    tool_name=message.tool_name or "",
                    content=message.content,
                    tool_call_id=message.tool_id or "",
                )
            )
        else:
            flush()
            parts: list[Any] = [TextPart(content=message.content)] if message.content else []
            for call in message.tool_calls or []:
                parts.append(
                    ToolCallPart(tool_name=call.name, args=call.arguments, tool_call_id=call.id)
                )
            history.append(ModelResponse(parts=parts or [TextPart(content="")]))

    if user_message or options.images:
        pending.append(_user_part(user_message, options.images))
    flush()
    return history


def _request_parameters(options: CompletionOptions) -> ModelRequestParameters:
    return ModelRequestParameters(
        function_tools=[
            FunctionToolDefinition(
                name=tool.name,
                description=tool.description,
                parameters_json_schema=tool.parameters,
            )
            for tool in options.tools
        ],
        allow_text_output=True,
    )


def _to_completion(response: ModelResponse) -> CompletionResponse:
    content = "".join(p.content for p in response.parts if isinstance(p, TextPart))
    tool_calls = [
        ToolCall(id=p.tool_call_id, name=p.tool_name, arguments=p.args_as_json_str())
        for p in response.parts
        if isinstance(p, ToolCallPart)
    ]
    return CompletionResponse(content=content, tool_calls=tool_calls)


class PydanticAICompletion:
    """``PromptCompletion`` backed by pydantic-ai models.

    Model references are passed through as ``provider:model`` strings, so any
    provider pydantic-ai knows about works with its usual API key variables.
    """

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        model: ModelRef,
        options: CompletionOptions,
    ) -> CompletionResponse:
        messages = build_messages(system_prompt, user_message, options)
        parameters = _request_parameters(options)

        if options.stream is None:
            response = await model_request(
                model.name, messages, model_request_parameters=parameters
            )
            return _to_completion(response)

        return await self._stream(model, messages, parameters, options.stream)

    async def _stream(
        self,
        model: ModelRef,
        messages: list[ModelMessage],
        parameters: ModelRequestParameters,
        stream: DeltaStream,
    ) -> CompletionResponse:
        async with model_request_stream(
            model.name, messages, model_request_parameters=parameters
        ) as response_stream:
            async for event in response_stream:
                if isinstance(event, PartStartEvent) and isinstance(event.part, TextPart):
                    stream.send(event.part.content)
                elif isinstance(event, PartDeltaEvent) and isinstance(event.delta, TextPartDelta):
                    stream.send(event.delta.content_delta)
            return _to_completion(response_stream.get())


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


class HttpEmbedder:
    """``Embed`` over an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key or os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY")
        self.base_url = (
            base_url or os.getenv("EMBEDDING_BASE_URL") or config.DEFAULT_EMBEDDING_BASE_URL
        ).rstrip("/")
        self.timeout = timeout

    async def embed(self, texts: list[str], model: ModelRef) -> list[list[float]]:
        if not texts:
            return []
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/embeddings",
                headers=headers,
                json={"model": model.id, "input": texts},
            )
            response.raise_for_status()
            data = response.json()["data"]

        ordered = sorted(data, key=lambda item: item.get("index", 0))
        logfire.info("Embeddings generated", count=len(ordered), model=model.id)
        return [item["embedding"] for item in ordered]


# ---------------------------------------------------------------------------
# Sandboxed local functions
# ---------------------------------------------------------------------------

_FUNCTION_NAME = re.compile(r"^(?:async\s+)?def\s+(\w+)\s*\(", re.MULTILINE)

_RUNNER = """
import asyncio, inspect, json, sys

payload = json.loads(sys.stdin.read())
namespace = {"__name__": "__tool__"}
try:
    exec(payload["code"], namespace)
    result = namespace[payload["name"]](**payload["args"])
    if inspect.isawaitable(result):
        result = asyncio.run(result)
    out = {"success": True, "result": result}
except Exception as e:
    out = {"success": False, "error": f"{type(e).__name__}: {e}"}
sys.stdout.write(json.dumps(out, default=str))
"""


def function_name(code: str) -> str | None:
    """Name of the first top-level function defined in ``code``."""
    match = _FUNCTION_NAME.search(code)
    return match.group(1) if match else None


class SubprocessSandbox:
    """``RunSandboxedFunction`` in a separate Python interpreter.

    The code must define a top-level function; it is called with the tool
    arguments as keyword arguments and its JSON-serializable return value is
    the result. The child is killed when the timeout expires.
    """

    def __init__(self, env_vars: dict[str, str] | None = None, python: str | None = None):
        self.env_vars = env_vars or {}
        self.python = python or sys.executable

    async def run_function(
        self, code: str, args: dict[str, Any], timeout_ms: int
    ) -> ExecutionResult:
        name = function_name(code)
        if name is None:
            return ExecutionResult(success=False, error="No function definition found in code")

        env = os.environ.copy()
        env.update(self.env_vars)
        process = await asyncio.create_subprocess_exec(
            self.python,
            "-c",
            _RUNNER,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        payload = json.dumps({"code": code, "name": name, "args": args}).encode()
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=payload), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return ExecutionResult(success=False, error=f"Execution timed out after {timeout_ms} ms")

        if process.returncode != 0 or not stdout:
            error = stderr.decode("utf-8", errors="replace").strip()
            return ExecutionResult(success=False, error=error or f"Exit code {process.returncode}")
        return ExecutionResult.model_validate_json(stdout)


# ---------------------------------------------------------------------------
# Remote tools
# ---------------------------------------------------------------------------


class MCPRemoteTools:
    """``InvokeRemoteTool`` over MCP streamable HTTP.

    Servers are configured as ``{name: url}``; one session is opened per call.
    """

    def __init__(self, servers: dict[str, str]):
        self.servers = dict(servers)

    async def invoke(
        self,
        server: str,
        tool_name: str,
        args: dict[str, Any],
        timeout_ms: int,
        stream: DeltaStream | None = None,
    ) -> ExecutionResult:
        url = self.servers.get(server)
        if url is None:
            return ExecutionResult(success=False, error=f"Unknown MCP server '{server}'")

        async with streamablehttp_client(url) as (read, write, _):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(
                    tool_name, args, read_timeout_seconds=timedelta(milliseconds=timeout_ms)
                )

        text = "\n".join(item.text for item in result.content if getattr(item, "type", None) == "text")
        structured = getattr(result, "structuredContent", None)
        if result.isError:
            return ExecutionResult(success=False, error=text or "Remote tool reported an error")
        if not text and structured is not None:
            return ExecutionResult(success=True, result=structured)
        return ExecutionResult(success=True, result=text)
