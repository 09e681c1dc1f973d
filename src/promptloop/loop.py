"""Bounded conversational loop that lets a model call tools and agents.

Each ``run`` owns a fresh message list. A turn asks the model once; if the
reply requests tools, every call is dispatched in order and its result is
appended as a ``tool`` message before the next turn. The loop ends when the
model replies without tool calls or when ``max_iterations`` turns are used.

Agents are tools backed by another loop: a nested agent starts from an empty
conversation with its own instructions and tools. The chain of running agent
names travels with every nested call so re-entrant calls are refused instead
of recursing until the iteration bound is reached.
"""

from functools import partial
from typing import Any

import logfire
from pydantic import BaseModel, Field

from . import config
from .cancellation import CancellationToken, guarded
from .capabilities import Capabilities, CompletionOptions, DeltaStream
from .errors import EmptyConversationError, OperationAborted
from .models import (
    AgentDefinition,
    ImageAttachment,
    Message,
    ModelRef,
    Role,
    ToolDefinition,
    agents_as_tools,
)
from .tools import ToolExecutor

MAX_ITERATIONS_ERROR = "Maximum tool execution iterations reached"
NO_AGENT_OUTPUT = "Agent completed with no output"


class LoopResult(BaseModel):
    success: bool
    messages: list[Message] = Field(default_factory=list)
    error: str | None = None

    @property
    def last_assistant_content(self) -> str:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message.content
        return ""


def rebuild_context(messages: list[Message]) -> list[Message]:
    """Copy messages for a completion request, keeping only role-relevant fields.

    Images stay on user messages, tool calls on assistant messages and the
    tool id/name on tool messages.
    """
    rebuilt = []
    for message in messages:
        rebuilt.append(
            Message(
                role=message.role,
                content=message.content,
                images=message.images if message.role == Role.USER and message.images else None,
                tool_calls=(
                    message.tool_calls
                    if message.role == Role.ASSISTANT and message.tool_calls
                    else None
                ),
                tool_id=message.tool_id if message.role == Role.TOOL else None,
                tool_name=message.tool_name if message.role == Role.TOOL else None,
            )
        )
    return rebuilt


class ConversationLoop:
    def __init__(
        self,
        capabilities: Capabilities,
        *,
        tools: list[ToolDefinition] | None = None,
        agents: list[AgentDefinition] | None = None,
        max_iterations: int = config.DEFAULT_MAX_TOOL_ITERATIONS,
        time_limit_ms: int = config.DEFAULT_TIME_LIMIT_MS,
        token: CancellationToken | None = None,
    ):
        self.capabilities = capabilities
        self.tools = list(tools or [])
        self.agents = {agent.name: agent for agent in agents or []}
        self.max_iterations = max_iterations
        self.time_limit_ms = time_limit_ms
        self.token = token or CancellationToken()

    async def run(
        self,
        system_prompt: str,
        user_message: str,
        model: ModelRef,
        *,
        initial_messages: list[Message] | None = None,
        images: list[ImageAttachment] | None = None,
        json_schema: dict[str, Any] | None = None,
        json_strict: bool = False,
        stream: DeltaStream | None = None,
    ) -> LoopResult:
        """Run the loop with this loop's tool set.

        Raises:
            EmptyConversationError: no user message and no initial messages.
            OperationAborted: the token was cancelled.
        """
        try:
            return await self._run(
                system_prompt,
                user_message,
                model,
                initial_messages=initial_messages,
                images=images,
                model_tools=self.tools,
                dispatch_tools=self.tools,
                json_schema=json_schema,
                json_strict=json_strict,
                stream=stream,
                call_path=(),
            )
        finally:
            if stream is not None:
                stream.close()

    async def _run(
        self,
        system_prompt: str,
        user_message: str,
        model: ModelRef,
        *,
        initial_messages: list[Message] | None,
        images: list[ImageAttachment] | None,
        model_tools: list[ToolDefinition],
        dispatch_tools: list[ToolDefinition],
        json_schema: dict[str, Any] | None,
        json_strict: bool,
        stream: DeltaStream | None,
        call_path: tuple[str, ...],
    ) -> LoopResult:
        messages = list(initial_messages or [])
        if user_message:
            messages.append(Message(role=Role.USER, content=user_message, images=images or None))
        if not messages:
            raise EmptyConversationError("No messages to process")

        executor = ToolExecutor(
            dispatch_tools,
            self.capabilities,
            run_agent=partial(self._run_agent, model=model, stream=stream, call_path=call_path),
            timeout_ms=self.time_limit_ms,
            token=self.token,
            stream=stream,
        )

        iteration = 0
        pending_tool_calls = 0
        while iteration < self.max_iterations:
            self.token.check()
            iteration += 1

            last = messages[-1]
            if last.role == Role.TOOL:
                context, prompt, prompt_images = rebuild_context(messages), "", []
            else:
                context = rebuild_context(messages[:-1])
                prompt, prompt_images = last.content, last.images or []

            options = CompletionOptions(
                context=context,
                tools=model_tools,
                json_schema=json_schema,
                json_strict=json_strict,
                images=prompt_images,
                stream=stream,
                token=self.token,
            )
            response = await guarded(
                self.token,
                self.capabilities.completion.complete(system_prompt, prompt, model, options),
            )
            messages.append(
                Message(
                    role=Role.ASSISTANT,
                    content=response.content,
                    tool_calls=response.tool_calls or None,
                )
            )

            pending_tool_calls = len(response.tool_calls)
            if not pending_tool_calls:
                break

            logfire.info(
                "Tool calls requested",
                iteration=iteration,
                tools=[c.name for c in response.tool_calls],
                agent=call_path[-1] if call_path else None,
            )
            for call in response.tool_calls:
                result = await executor.execute(call)
                messages.append(
                    Message(role=Role.TOOL, content=result, tool_id=call.id, tool_name=call.name)
                )

        if pending_tool_calls:
            logfire.warn(MAX_ITERATIONS_ERROR, max_iterations=self.max_iterations)
            return LoopResult(success=False, messages=messages, error=MAX_ITERATIONS_ERROR)
        return LoopResult(success=True, messages=messages)

    def _agent_dispatch_tools(self, agent: AgentDefinition) -> list[ToolDefinition]:
        return [
            *agent.selected_tools,
            *self.tools,
            *agents_as_tools(list(self.agents.values()), exclude=agent.name),
        ]

    async def _run_agent(
        self,
        agent_name: str,
        request: str,
        *,
        model: ModelRef,
        stream: DeltaStream | None,
        call_path: tuple[str, ...],
    ) -> str:
        agent = self.agents.get(agent_name)
        if agent is None:
            return f"Error: Agent '{agent_name}' not found"
        if agent_name in call_path:
            chain = " -> ".join([*call_path, agent_name])
            logfire.warn("Agent cycle refused", chain=chain)
            return f"Error: Agent '{agent_name}' is already running in this call chain ({chain})"

        with logfire.span("Running agent", agent=agent_name, depth=len(call_path) + 1):
            try:
                result = await self._run(
                    agent.instructions,
                    request,
                    agent.core_model or model,
                    initial_messages=None,
                    images=None,
                    model_tools=agent.selected_tools,
                    dispatch_tools=self._agent_dispatch_tools(agent),
                    json_schema=agent.json_schema,
                    json_strict=agent.json_schema_strict,
                    stream=stream,
                    call_path=(*call_path, agent_name),
                )
            except OperationAborted:
                raise
            except Exception as e:
                logfire.error("Agent execution raised", agent=agent_name, error=str(e))
                return f"Error executing agent: {e}"

        if not result.success:
            return f"Error: Agent execution failed - {result.error}"

        for message in reversed(result.messages):
            if message.role == Role.ASSISTANT and message.content:
                return message.content
        return NO_AGENT_OUTPUT
