"""Dispatch of model-requested tool calls.

Every outcome of a tool call, including failures, is a string that goes back
to the model as a tool message. Only cancellation propagates.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable

import json_repair
import logfire

from .cancellation import CancellationToken, guarded
from .capabilities import Capabilities, DeltaStream, ExecutionResult
from .errors import OperationAborted
from .models import AgentReference, LocalFunction, RemoteTool, ToolCall, ToolDefinition

AgentRunner = Callable[[str, str], Awaitable[str]]


def parse_tool_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any]:
    """Decode a tool call's arguments into a dict.

    Raises:
        ValueError: if the arguments are not a JSON object.
    """
    if isinstance(arguments, dict):
        return arguments
    text = (arguments or "").strip()
    if not text or text == "{}":
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(e.msg) from None
    if not isinstance(parsed, dict):
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


def extract_request_from_args(arguments: str | dict[str, Any] | None) -> str:
    """Pull the natural-language request out of an agent tool call.

    Looks for a ``request`` key, then for a single string value, then falls
    back to the JSON of the whole object. Arguments that are not JSON at all
    are used verbatim.
    """
    if isinstance(arguments, dict):
        parsed: Any = arguments
    else:
        text = (arguments or "").strip()
        if not text:
            return ""
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            if not text.startswith(("{", "[", '"')):
                return text
            parsed = json_repair.loads(text)
            if parsed in ("", None):
                return text

    if isinstance(parsed, str):
        return parsed
    if isinstance(parsed, dict):
        request = parsed.get("request")
        if isinstance(request, str):
            return request
        strings = [v for v in parsed.values() if isinstance(v, str)]
        if len(strings) == 1:
            return strings[0]
    return json.dumps(parsed)


def serialize_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ToolExecutor:
    """Runs tool calls against one loop's tool set.

    Agent tools are handed to ``run_agent(agent_name, request)``; the loop
    that owns this executor decides how nested agents run.
    """

    def __init__(
        self,
        tools: list[ToolDefinition],
        capabilities: Capabilities,
        *,
        run_agent: AgentRunner,
        timeout_ms: int,
        token: CancellationToken | None = None,
        stream: DeltaStream | None = None,
    ):
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self._tools.setdefault(tool.name, tool)
        self._capabilities = capabilities
        self._run_agent = run_agent
        self._timeout_ms = timeout_ms
        self._token = token
        self._stream = stream

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools)

    async def execute(self, call: ToolCall) -> str:
        tool = self._tools.get(call.name)
        if tool is None:
            logfire.warn("Tool not found", tool=call.name)
            return f"Error: Tool '{call.name}' not found"

        try:
            args = parse_tool_arguments(call.arguments)
        except ValueError as e:
            return f"Error: Invalid JSON arguments for tool '{call.name}': {e}"

        with logfire.span("Executing tool", tool=call.name, kind=tool.implementation.kind):
            try:
                match tool.implementation:
                    case AgentReference(agent=agent_name):
                        return await self._run_agent(
                            agent_name, extract_request_from_args(call.arguments)
                        )
                    case LocalFunction(code=code):
                        return await self._run_local(call.name, code, args)
                    case RemoteTool(server=server):
                        return await self._run_remote(call.name, server, args)
            except OperationAborted:
                raise
            except Exception as e:
                logfire.error("Tool execution failed", tool=call.name, error=str(e))
                return f"Error executing tool: {e}"

    async def _bounded(self, name: str, call: Awaitable[ExecutionResult]) -> ExecutionResult:
        try:
            return await guarded(
                self._token, asyncio.wait_for(call, timeout=self._timeout_ms / 1000)
            )
        except asyncio.TimeoutError:
            return ExecutionResult(
                success=False, error=f"Tool '{name}' timed out after {self._timeout_ms} ms"
            )

    def _render(self, name: str, outcome: ExecutionResult) -> str:
        if not outcome.success:
            logfire.warn("Tool failed", tool=name, error=outcome.error)
            return f"Error: {outcome.error or 'Unknown error'}"
        result = serialize_result(outcome.result)
        logfire.info("Tool result", tool=name, result=result[:500])
        return result

    async def _run_local(self, name: str, code: str, args: dict[str, Any]) -> str:
        sandbox = self._capabilities.sandbox
        if sandbox is None:
            return f"Error: No sandbox available to run local tool '{name}'"
        outcome = await self._bounded(name, sandbox.run_function(code, args, self._timeout_ms))
        return self._render(name, outcome)

    async def _run_remote(self, name: str, server: str, args: dict[str, Any]) -> str:
        remote = self._capabilities.remote_tools
        if remote is None:
            return f"Error: No remote tool client available for server '{server}'"
        outcome = await self._bounded(
            name, remote.invoke(server, name, args, self._timeout_ms, self._stream)
        )
        return self._render(name, outcome)
