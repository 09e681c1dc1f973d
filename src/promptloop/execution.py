"""Per-pair test execution.

``TestRunner.run_tests`` walks the pairs strictly in order. For each pair it
optionally injects retrieved context, produces the actual output (single
completion or tool loop), runs the verification checks and then, unless the
output is already equal to the expected one, fans out scoring, feedback and
similarity concurrently.
"""

import asyncio
import json
from typing import Any

import logfire
from pydantic import BaseModel

from . import config
from .cancellation import CancellationToken, guarded
from .capabilities import Capabilities, CompletionOptions, CompletionResponse, DeltaStream
from .checks import verify_json_valid, verify_tools_called
from .errors import ModelNotResolvedError, OperationAborted
from .loop import MAX_ITERATIONS_ERROR, ConversationLoop
from .models import (
    CheckType,
    ModelRef,
    PairSettings,
    Role,
    RunConfig,
    ScoreResult,
    TestPair,
    TestResult,
    ToolCall,
)
from .retrieval import KnowledgeStore, format_rag_message, get_rag_context
from .scoring import run_feedback, run_scoring, run_similarity


def resolve_core_model(run_config: RunConfig) -> ModelRef | None:
    """The run's core model, else ``MODEL_NAME`` from the environment."""
    if run_config.core_model is not None:
        return run_config.core_model
    name = config.env_model_name()
    return ModelRef.model_validate(name) if name else None


def resolve_embedding_model(run_config: RunConfig, settings: PairSettings) -> ModelRef | None:
    if settings.embedding_model is not None:
        return settings.embedding_model
    if run_config.default_embedding_model is not None:
        return run_config.default_embedding_model
    name = config.env_embedding_model_name()
    return ModelRef.model_validate(name) if name else None


class SingleTestResult(BaseModel):
    result: str
    response: CompletionResponse


class TestRunner:
    __test__ = False

    def __init__(
        self,
        capabilities: Capabilities,
        run_config: RunConfig,
        *,
        knowledge: KnowledgeStore | None = None,
        token: CancellationToken | None = None,
    ):
        self.capabilities = capabilities
        self.config = run_config
        self.knowledge = knowledge or KnowledgeStore()
        self.token = token or CancellationToken()

    async def run_tests(self, instructions: str, *, ask_feedback: bool = False) -> list[TestResult]:
        results = []
        for index, pair in enumerate(self.config.pairs, start=1):
            self.token.check()
            with logfire.span("Test pair", test=index, input=pair.input[:200]):
                results.append(await self.run_pair(pair, instructions, ask_feedback=ask_feedback))
        return results

    async def run_pair(
        self, pair: TestPair, instructions: str, *, ask_feedback: bool = False
    ) -> TestResult:
        settings = pair.settings
        model = settings.model or resolve_core_model(self.config)
        if model is None:
            raise ModelNotResolvedError(
                "No model for test pair, set a pair model, core_model or MODEL_NAME"
            )
        logfire.info("Model", model=model.name, context=settings.context.name if settings.context else None)

        test_input = await self._augment_input(pair)
        single = await self.run_single_test(instructions, test_input, settings, model)
        output = single.result
        logfire.info("Output", output=output)
        self.token.check()

        expected = pair.expected_output.strip()
        is_equal = settings.has(CheckType.EQUALITY) and output == expected

        tools_call_result = None
        if settings.has(CheckType.TOOLS_CALL) and settings.tools_called:
            tools_call_result = verify_tools_called(single.response.tool_calls, settings.tools_called)

        is_json_valid = json_error = None
        if settings.has(CheckType.JSON_VALID):
            check = verify_json_valid(
                output,
                settings.json_schema,
                use_schema=settings.use_json_schema,
                strict=settings.json_schema_strict,
            )
            is_json_valid, json_error = check.valid, check.error

        base = dict(
            input=pair.input,
            expected_output=pair.expected_output,
            actual_output=output,
            is_equal=is_equal,
            is_json_valid=is_json_valid,
            json_error=json_error,
            tools_call_result=tools_call_result,
            settings=settings,
        )

        if is_equal or not expected:
            if is_equal:
                logfire.info("Output equals expected, skipping scoring")
            return TestResult(**base)

        score, similarity, feedback = await asyncio.gather(
            self._score(expected, output, model),
            self._similarity(expected, output, settings),
            self._feedback(expected, output, model) if ask_feedback else _no_feedback(),
        )
        return TestResult(
            **base,
            ai_score=score.final_score if score else 0,
            scores=score.scores if score else None,
            ai_feedback=feedback or "",
            similarity=similarity or 0.0,
        )

    async def run_single_test(
        self,
        instructions: str,
        test_input: str,
        settings: PairSettings,
        model: ModelRef | None,
        *,
        stream: DeltaStream | None = None,
    ) -> SingleTestResult:
        """Produce the actual output for one input.

        Without tools this is one completion. With tools the conversation loop
        runs and the result is the last assistant message; the returned
        response carries every tool call made during the conversation.
        """
        if model is None:
            raise ModelNotResolvedError("No model specified for test")

        json_schema = self._json_schema(settings)
        context = settings.context.messages if settings.context else []

        if not self.config.selected_tools:
            options = CompletionOptions(
                context=context,
                json_mode=settings.has(CheckType.JSON_VALID),
                json_schema=json_schema,
                json_strict=settings.json_schema_strict,
                images=settings.images,
                stream=stream,
                token=self.token,
            )
            try:
                response = await guarded(
                    self.token,
                    self.capabilities.completion.complete(instructions, test_input, model, options),
                )
            finally:
                if stream is not None:
                    stream.close()
            return SingleTestResult(result=response.content.strip(), response=response)

        loop = ConversationLoop(
            self.capabilities,
            tools=self.config.selected_tools,
            agents=self.config.agents,
            max_iterations=self.config.max_tool_iterations,
            time_limit_ms=self.config.time_limit_ms,
            token=self.token,
        )
        outcome = await loop.run(
            instructions,
            test_input,
            model,
            initial_messages=context,
            images=settings.images,
            json_schema=json_schema,
            json_strict=settings.json_schema_strict,
            stream=stream,
        )
        if not outcome.success and outcome.error != MAX_ITERATIONS_ERROR:
            raise RuntimeError(outcome.error or "Tool execution failed")

        result = outcome.last_assistant_content.strip()
        tool_calls: list[ToolCall] = [
            call
            for message in outcome.messages
            if message.role == Role.ASSISTANT and message.tool_calls
            for call in message.tool_calls
        ]
        response = CompletionResponse(content=result, tool_calls=tool_calls, messages=outcome.messages)
        return SingleTestResult(result=result, response=response)

    def _json_schema(self, settings: PairSettings) -> dict[str, Any] | None:
        if not settings.use_json_schema:
            return None
        try:
            return settings.parsed_json_schema()
        except json.JSONDecodeError as e:
            logfire.warn("Ignoring unparsable JSON schema", error=str(e))
            return None

    async def _augment_input(self, pair: TestPair) -> str:
        settings = pair.settings
        if not settings.knowledge_bases:
            return pair.input
        embedder = self.capabilities.embedder
        try:
            embedding_model = resolve_embedding_model(self.config, settings)
            if embedder is None or embedding_model is None:
                logfire.warn("Knowledge bases set but no embedding model available")
                return pair.input

            logfire.info("Knowledge bases", count=len(settings.knowledge_bases))
            rag = await get_rag_context(
                pair.input,
                self.knowledge.resolve(settings.knowledge_bases),
                embedder,
                embedding_model,
                top_k=config.RAG_TOP_K,
                min_similarity=config.RAG_MIN_SIMILARITY,
                token=self.token,
            )
        except OperationAborted:
            raise
        except Exception as e:
            logfire.warn("RAG context retrieval failed", error=str(e))
            return pair.input

        if not rag.context:
            return pair.input
        logfire.info("RAG context", chunks=len(rag.chunks))
        return format_rag_message(rag.context, len(rag.chunks), pair.input)

    async def _score(self, expected: str, output: str, model: ModelRef) -> ScoreResult | None:
        return await run_scoring(
            self.capabilities.completion, expected, output, model, token=self.token
        )

    async def _feedback(self, expected: str, output: str, pair_model: ModelRef) -> str | None:
        try:
            model = resolve_core_model(self.config) or pair_model
        except ValueError as e:
            logfire.error("AI feedback failed", error=str(e))
            return None
        return await run_feedback(
            self.capabilities.completion, expected, output, model, token=self.token
        )

    async def _similarity(self, expected: str, output: str, settings: PairSettings) -> float | None:
        embedder = self.capabilities.embedder
        try:
            model = resolve_embedding_model(self.config, settings)
        except ValueError as e:
            logfire.error("Similarity calculation failed", error=str(e))
            return None
        if embedder is None or model is None:
            return None
        return await run_similarity(embedder, expected, output, model, token=self.token)


async def _no_feedback() -> str:
    return ""
