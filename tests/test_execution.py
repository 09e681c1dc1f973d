"""Tests for per-pair test execution."""

import asyncio
import json

import pytest
from conftest import FakeCompletion, FakeEmbedder, tool_call

from promptloop.cancellation import CancellationToken
from promptloop.capabilities import Capabilities, CompletionResponse, DeltaStream
from promptloop.errors import ModelNotResolvedError, OperationAborted
from promptloop.execution import TestRunner, resolve_core_model, resolve_embedding_model
from promptloop.models import (
    CheckType,
    Chunk,
    Context,
    ExpectedToolCall,
    ImageAttachment,
    KnowledgeBase,
    KnowledgeIndex,
    LocalFunction,
    Message,
    ModelRef,
    PairSettings,
    RemoteTool,
    Role,
    RunConfig,
    TestPair,
    ToolDefinition,
)
from promptloop.prompts import FEEDBACK_PROMPT, SCORING_PROMPT
from promptloop.retrieval import KnowledgeStore

INSTRUCTIONS = "Echo the input in uppercase"
SCORE_REPLY = json.dumps(
    {"scores": {"format": 90, "accuracy": 80, "completeness": 70, "meaning": 60}, "final_score": 76}
)
WEATHER = ToolDefinition(name="get_weather", implementation=LocalFunction(code="def get_weather(): ..."))
SEARCH = ToolDefinition(name="search", implementation=RemoteTool(server="docs"))


def grading_handler(output: str = "hello", feedback: str = "Use uppercase"):
    """Answer test prompts with ``output`` and grading prompts with fixed JSON."""

    def handler(system_prompt, user_message, model, options):
        if system_prompt == SCORING_PROMPT:
            return SCORE_REPLY
        if system_prompt == FEEDBACK_PROMPT:
            return json.dumps({"feedback": feedback})
        return output

    return handler


def _config(*pairs: TestPair, **kwargs) -> RunConfig:
    kwargs.setdefault("core_model", "test:core")
    return RunConfig(instructions=INSTRUCTIONS, pairs=list(pairs), **kwargs)


def _run_pair(capabilities, run_config, pair=None, **kwargs):
    runner = TestRunner(capabilities, run_config, **{k: v for k, v in kwargs.items() if k != "ask_feedback"})
    pair = pair or run_config.pairs[0]
    return asyncio.run(runner.run_pair(pair, INSTRUCTIONS, ask_feedback=kwargs.get("ask_feedback", False)))


class TestModelResolution:
    """Tests for core and embedding model resolution."""

    def test_core_model_from_config(self):
        assert resolve_core_model(_config()).name == "test:core"

    def test_core_model_from_env(self, monkeypatch):
        monkeypatch.setenv("MODEL_NAME", "openai:gpt-4o-mini")
        model = resolve_core_model(_config(core_model=None))
        assert (model.provider, model.id) == ("openai", "gpt-4o-mini")

    def test_core_model_env_reference(self, monkeypatch):
        monkeypatch.setenv("TEAM_MODEL", "test:team")
        monkeypatch.setenv("MODEL_NAME", "$TEAM_MODEL")
        assert resolve_core_model(_config(core_model=None)).name == "test:team"

    def test_no_core_model(self):
        assert resolve_core_model(_config(core_model=None)) is None

    def test_embedding_model_order(self, monkeypatch):
        monkeypatch.setenv("EMBEDDING_MODEL", "test:env-embed")
        run_config = _config(default_embedding_model="test:run-embed")
        pair_settings = PairSettings(embedding_model="test:pair-embed")

        assert resolve_embedding_model(run_config, pair_settings).name == "test:pair-embed"
        assert resolve_embedding_model(run_config, PairSettings()).name == "test:run-embed"
        assert resolve_embedding_model(_config(), PairSettings()).name == "test:env-embed"


class TestRunPair:
    """Tests for TestRunner.run_pair."""

    def test_equal_output_skips_grading(self, fake_embedder):
        completion = FakeCompletion(["  HI \n"])
        caps = Capabilities(completion=completion, embedder=fake_embedder)
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")), ask_feedback=True)

        assert result.actual_output == "HI"
        assert result.is_equal
        assert result.ai_score == 0
        assert result.similarity == 0.0
        assert result.ai_feedback == ""
        assert len(completion.calls) == 1
        assert fake_embedder.calls == []

    def test_test_completion_request(self):
        completion = FakeCompletion(["HI"])
        caps = Capabilities(completion=completion)
        _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")))

        call = completion.calls[0]
        assert call["system_prompt"] == INSTRUCTIONS
        assert call["user_message"] == "hi"
        assert call["model"].name == "test:core"
        assert call["options"].tools == []
        assert not call["options"].json_mode

    def test_not_equal_is_graded(self, embedding_model):
        embedder = FakeEmbedder({"HI": [1.0, 0.0], "hello": [1.0, 0.0]})
        caps = Capabilities(completion=FakeCompletion(handler=grading_handler()), embedder=embedder)
        run_config = _config(
            TestPair(input="hi", expected_output="HI"), default_embedding_model=embedding_model
        )
        result = _run_pair(caps, run_config)

        assert not result.is_equal
        assert result.ai_score == 76
        assert result.scores.meaning == 60
        assert result.similarity == pytest.approx(1.0)
        assert result.ai_feedback == ""

    def test_feedback_requested(self):
        completion = FakeCompletion(handler=grading_handler(feedback="Answer in uppercase"))
        caps = Capabilities(completion=completion)
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")), ask_feedback=True)

        assert result.ai_feedback == "Answer in uppercase"
        prompts = [c["system_prompt"] for c in completion.calls]
        assert prompts.count(FEEDBACK_PROMPT) == 1
        assert prompts.count(SCORING_PROMPT) == 1

    def test_feedback_uses_core_model(self):
        completion = FakeCompletion(handler=grading_handler())
        caps = Capabilities(completion=completion)
        pair = TestPair(input="hi", expected_output="HI", settings=PairSettings(model="test:pair"))
        _run_pair(caps, _config(pair), ask_feedback=True)

        models = {c["system_prompt"]: c["model"].name for c in completion.calls}
        assert models[INSTRUCTIONS] == "test:pair"
        assert models[SCORING_PROMPT] == "test:pair"
        assert models[FEEDBACK_PROMPT] == "test:core"

    def test_grading_failures_degrade(self):
        def handler(system_prompt, user_message, model, options):
            if system_prompt == INSTRUCTIONS:
                return "hello"
            raise RuntimeError("provider down")

        class BrokenEmbedder:
            async def embed(self, texts, model):
                raise RuntimeError("no embeddings")

        caps = Capabilities(completion=FakeCompletion(handler=handler), embedder=BrokenEmbedder())
        run_config = _config(
            TestPair(input="hi", expected_output="HI"), default_embedding_model="test:embed"
        )
        result = _run_pair(caps, run_config, ask_feedback=True)

        assert result.actual_output == "hello"
        assert result.ai_score == 0
        assert result.scores is None
        assert result.ai_feedback == ""
        assert result.similarity == 0.0

    def test_unset_model_reference_degrades_feedback(self, monkeypatch):
        monkeypatch.setenv("MODEL_NAME", "$PROMPTLOOP_UNSET_MODEL")
        monkeypatch.delenv("PROMPTLOOP_UNSET_MODEL", raising=False)
        completion = FakeCompletion(handler=grading_handler())
        caps = Capabilities(completion=completion)
        pair = TestPair(input="hi", expected_output="HI", settings=PairSettings(model="test:pair"))
        result = _run_pair(caps, _config(pair, core_model=None), ask_feedback=True)

        assert result.actual_output == "hello"
        assert result.ai_score == 76
        assert result.ai_feedback == ""
        prompts = [c["system_prompt"] for c in completion.calls]
        assert FEEDBACK_PROMPT not in prompts

    def test_unset_embedding_reference_degrades_similarity(self, monkeypatch, fake_embedder):
        monkeypatch.setenv("EMBEDDING_MODEL", "$PROMPTLOOP_UNSET_EMBED")
        monkeypatch.delenv("PROMPTLOOP_UNSET_EMBED", raising=False)
        caps = Capabilities(completion=FakeCompletion(handler=grading_handler()), embedder=fake_embedder)
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")), ask_feedback=True)

        assert result.ai_score == 76
        assert result.ai_feedback == "Use uppercase"
        assert result.similarity == 0.0
        assert fake_embedder.calls == []

    def test_no_embedding_model_means_no_similarity(self, fake_embedder):
        caps = Capabilities(completion=FakeCompletion(handler=grading_handler()), embedder=fake_embedder)
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")))
        assert result.similarity == 0.0
        assert fake_embedder.calls == []

    def test_blank_expected_output_skips_grading(self):
        completion = FakeCompletion(handler=grading_handler())
        caps = Capabilities(completion=completion)
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="   ")), ask_feedback=True)

        assert not result.is_equal
        assert result.ai_score == 0
        assert len(completion.calls) == 1

    def test_no_model_raises(self, fake_completion):
        caps = Capabilities(completion=fake_completion)
        with pytest.raises(ModelNotResolvedError):
            _run_pair(caps, _config(TestPair(input="hi", expected_output="HI"), core_model=None))

    def test_context_and_images_forwarded(self):
        completion = FakeCompletion(["HI"])
        caps = Capabilities(completion=completion)
        image = ImageAttachment(data_url="https://example.com/cat.png")
        context = Context(messages=[Message(role=Role.USER, content="earlier"), Message(role=Role.ASSISTANT, content="ok")])
        pair = TestPair(
            input="hi", expected_output="HI", settings=PairSettings(context=context, images=[image])
        )
        _run_pair(caps, _config(pair))

        options = completion.calls[0]["options"]
        assert [m.content for m in options.context] == ["earlier", "ok"]
        assert options.images == [image]


class TestJsonCheck:
    """Tests for the json_valid check inside a pair run."""

    def test_json_mode_and_validity(self):
        completion = FakeCompletion(['{"name": "Ada"}'])
        caps = Capabilities(completion=completion)
        pair = TestPair(
            input="who?",
            expected_output='{"name": "Ada"}',
            settings=PairSettings(check_types=[CheckType.JSON_VALID]),
        )
        result = _run_pair(caps, _config(pair))

        assert completion.calls[0]["options"].json_mode
        assert completion.calls[0]["options"].json_schema is None
        assert result.is_json_valid is True
        assert result.is_equal

    def test_schema_violation(self):
        schema = {"type": "object", "properties": {"age": {"type": "integer"}}}
        completion = FakeCompletion(handler=grading_handler(output='{"age": "old"}'))
        caps = Capabilities(completion=completion)
        pair = TestPair(
            input="age?",
            expected_output='{"age": 3}',
            settings=PairSettings(
                check_types=[CheckType.JSON_VALID], json_schema=schema, use_json_schema=True
            ),
        )
        result = _run_pair(caps, _config(pair))

        assert completion.calls[0]["options"].json_schema == schema
        assert result.is_json_valid is False
        assert result.json_error == "/age 'old' is not of type 'integer'"

    def test_unchecked_pairs_report_none(self):
        caps = Capabilities(completion=FakeCompletion(["HI"]))
        result = _run_pair(caps, _config(TestPair(input="hi", expected_output="HI")))
        assert result.is_json_valid is None
        assert result.tools_call_result is None


class TestToolPairs:
    """Tests for pairs run through the tool loop."""

    def test_tool_calls_collected_across_turns(self, capabilities, fake_completion):
        fake_completion.responses = [
            CompletionResponse(tool_calls=[tool_call("get_weather")]),
            CompletionResponse(tool_calls=[tool_call("search")]),
            "It is 21 degrees",
        ]
        pair = TestPair(
            input="weather?",
            expected_output="It is 21 degrees",
            settings=PairSettings(
                check_types=[CheckType.TOOLS_CALL],
                tools_called=[ExpectedToolCall(name="get_weather"), ExpectedToolCall(name="search")],
            ),
        )
        result = _run_pair(capabilities, _config(pair, selected_tools=[WEATHER, SEARCH]))

        assert result.actual_output == "It is 21 degrees"
        assert result.is_equal
        assert result.tools_call_result.success
        assert [t.name for t in result.tools_call_result.called_tools] == ["get_weather", "search"]

    def test_missing_tool_call(self, capabilities, fake_completion):
        fake_completion.handler = grading_handler(output="I guess 20")
        pair = TestPair(
            input="weather?",
            expected_output="It is 21 degrees",
            settings=PairSettings(
                check_types=[CheckType.TOOLS_CALL], tools_called=[ExpectedToolCall(name="get_weather")]
            ),
        )
        result = _run_pair(capabilities, _config(pair, selected_tools=[WEATHER]))

        assert not result.tools_call_result.success
        assert result.tools_call_result.missing == ["get_weather"]

    def test_iteration_limit_keeps_last_output(self, capabilities, fake_completion):
        fake_completion.handler = lambda *_: CompletionResponse(
            content="still working", tool_calls=[tool_call("get_weather")]
        )
        pair = TestPair(input="weather?")
        result = _run_pair(capabilities, _config(pair, selected_tools=[WEATHER], max_tool_iterations=2))

        assert result.actual_output == "still working"
        assert len(fake_completion.calls) == 2


class TestRetrievalAugmentation:
    """Tests for knowledge base context injected into inputs."""

    @staticmethod
    def _store() -> KnowledgeStore:
        chunk = Chunk(text="Refunds take 5 days.", index=0, start=0, end=20, file_id="f1", file_name="refunds.md")
        kb = KnowledgeBase(
            id="kb1", name="Docs", index=KnowledgeIndex(chunks=[chunk], embeddings=[[1.0, 0.0]])
        )
        return KnowledgeStore([kb])

    def test_context_prepended_to_input(self):
        completion = FakeCompletion(["5 days"])
        embedder = FakeEmbedder({"refund time?": [1.0, 0.0]})
        caps = Capabilities(completion=completion, embedder=embedder)
        pair = TestPair(
            input="refund time?", expected_output="5 days", settings=PairSettings(knowledge_bases=["Docs"])
        )
        result = _run_pair(
            caps, _config(pair, default_embedding_model="test:embed"), knowledge=self._store()
        )

        user_message = completion.calls[0]["user_message"]
        assert user_message.startswith("[Context from knowledge bases (1 results)]\n")
        assert "[Source: refunds.md | KB: Docs]\nRefunds take 5 days." in user_message
        assert user_message.endswith("[User Query]\nrefund time?")
        assert result.input == "refund time?"

    def test_low_similarity_leaves_input_unchanged(self):
        completion = FakeCompletion(["?"])
        embedder = FakeEmbedder({"refund time?": [0.0, 1.0]})
        caps = Capabilities(completion=completion, embedder=embedder)
        pair = TestPair(input="refund time?", settings=PairSettings(knowledge_bases=["Docs"]))
        _run_pair(caps, _config(pair, default_embedding_model="test:embed"), knowledge=self._store())

        assert completion.calls[0]["user_message"] == "refund time?"

    def test_no_embedding_model_leaves_input_unchanged(self, fake_embedder):
        completion = FakeCompletion(["?"])
        caps = Capabilities(completion=completion, embedder=fake_embedder)
        pair = TestPair(input="refund time?", settings=PairSettings(knowledge_bases=["Docs"]))
        _run_pair(caps, _config(pair), knowledge=self._store())

        assert completion.calls[0]["user_message"] == "refund time?"
        assert fake_embedder.calls == []

    def test_unset_embedding_reference_leaves_input_unchanged(self, monkeypatch, fake_embedder):
        monkeypatch.setenv("EMBEDDING_MODEL", "$PROMPTLOOP_UNSET_EMBED")
        monkeypatch.delenv("PROMPTLOOP_UNSET_EMBED", raising=False)
        completion = FakeCompletion(["?"])
        caps = Capabilities(completion=completion, embedder=fake_embedder)
        pair = TestPair(input="refund time?", settings=PairSettings(knowledge_bases=["Docs"]))
        _run_pair(caps, _config(pair), knowledge=self._store())

        assert completion.calls[0]["user_message"] == "refund time?"
        assert fake_embedder.calls == []

    def test_retrieval_error_leaves_input_unchanged(self):
        class BrokenEmbedder:
            async def embed(self, texts, model):
                raise RuntimeError("offline")

        completion = FakeCompletion(["?"])
        caps = Capabilities(completion=completion, embedder=BrokenEmbedder())
        pair = TestPair(input="refund time?", settings=PairSettings(knowledge_bases=["Docs"]))
        _run_pair(caps, _config(pair, default_embedding_model="test:embed"), knowledge=self._store())

        assert completion.calls[0]["user_message"] == "refund time?"


class TestRunTests:
    """Tests for TestRunner.run_tests and run_single_test."""

    def test_pairs_run_in_order(self):
        completion = FakeCompletion(["A", "B", "C"])
        caps = Capabilities(completion=completion)
        run_config = _config(*(TestPair(input=x, expected_output=x) for x in "ABC"))
        results = asyncio.run(TestRunner(caps, run_config).run_tests(INSTRUCTIONS))

        assert [r.input for r in results] == ["A", "B", "C"]
        assert all(r.is_equal for r in results)

    def test_cancelled_before_start(self, capabilities, fake_completion):
        token = CancellationToken()
        token.cancel()
        runner = TestRunner(capabilities, _config(TestPair(input="hi")), token=token)
        with pytest.raises(OperationAborted):
            asyncio.run(runner.run_tests(INSTRUCTIONS))
        assert fake_completion.calls == []

    def test_single_test_streams_and_closes(self, capabilities, fake_completion):
        fake_completion.responses = ["HI"]
        runner = TestRunner(capabilities, _config())

        async def scenario():
            stream = DeltaStream()
            single = await runner.run_single_test(
                INSTRUCTIONS, "hi", PairSettings(), ModelRef.model_validate("test:core"), stream=stream
            )
            assert stream.closed
            return single, [delta async for delta in stream]

        single, deltas = asyncio.run(scenario())
        assert single.result == "HI"
        assert deltas == ["HI"]

    def test_single_test_without_model(self, capabilities):
        runner = TestRunner(capabilities, _config())
        with pytest.raises(ModelNotResolvedError):
            asyncio.run(runner.run_single_test(INSTRUCTIONS, "hi", PairSettings(), None))
