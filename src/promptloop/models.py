"""Data contracts for prompt runs.

Test pairs, tools, agents, conversation messages and the structured results
produced by a run. No engine logic lives here, only schema and validation.
"""

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from . import config


class CheckType(str, Enum):
    EQUALITY = "equality"
    JSON_VALID = "json_valid"
    TOOLS_CALL = "tools_call"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ModelRef(BaseModel):
    """Reference to a model, written as ``provider:model`` in suites.

    Examples:
        ModelRef.model_validate("openai:gpt-4o") -> provider="openai", id="gpt-4o"
        ModelRef.model_validate("gpt-4o")        -> provider=None, id="gpt-4o"
    """

    id: str = Field(description="Model identifier as the provider knows it.")
    provider: str | None = Field(default=None, description="Provider prefix, e.g. 'openai'.")

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            provider, sep, model_id = data.partition(":")
            if not sep:
                return {"id": data}
            return {"id": model_id, "provider": provider}
        return data

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.id}" if self.provider else self.id

    def __str__(self) -> str:
        return self.name


class ImageAttachment(BaseModel):
    data_url: str = Field(description="Image encoded as a data URL or a remote URL.")
    mime_type: str = Field(default="image/png")


class ToolCall(BaseModel):
    id: str = Field(default="", description="Provider-issued call id.")
    name: str
    arguments: str | dict[str, Any] = Field(
        default="", description="Arguments as JSON text or an already parsed object."
    )


class Message(BaseModel):
    role: Role
    content: str = ""
    images: list[ImageAttachment] | None = None
    tool_calls: list[ToolCall] | None = None
    tool_id: str | None = None
    tool_name: str | None = None


class Context(BaseModel):
    """A named conversation prefix attached to a test pair."""

    name: str = "context"
    messages: list[Message] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tools and agents
# ---------------------------------------------------------------------------


class LocalFunction(BaseModel):
    kind: Literal["local"] = "local"
    code: str = Field(description="Python source defining a single function.")


class RemoteTool(BaseModel):
    kind: Literal["remote"] = "remote"
    server: str = Field(description="Name of the remote tool server.")


class AgentReference(BaseModel):
    kind: Literal["agent"] = "agent"
    agent: str = Field(description="Name of the agent to delegate to.")


ToolImplementation = Annotated[
    Union[LocalFunction, RemoteTool, AgentReference], Field(discriminator="kind")
]

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}

REQUEST_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "request": {
            "type": "string",
            "description": "Natural language request or question for the agent",
        }
    },
    "required": ["request"],
}


class ToolDefinition(BaseModel):
    name: str = Field(description="Tool name, unique within a run.")
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: dict(EMPTY_PARAMETERS),
        description="JSON Schema of the tool's argument object.",
    )
    implementation: ToolImplementation

    @property
    def is_agent(self) -> bool:
        return isinstance(self.implementation, AgentReference)


class AgentDefinition(BaseModel):
    """Instructions plus a tool set, callable by other loops as a tool."""

    name: str
    instructions: str = ""
    selected_tools: list[ToolDefinition] = Field(default_factory=list)
    core_model: ModelRef | None = None
    json_schema: dict[str, Any] | None = None
    json_schema_strict: bool = False

    def as_tool(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.instructions or f"Agent: {self.name}",
            parameters=REQUEST_PARAMETERS,
            implementation=AgentReference(agent=self.name),
        )


def agents_as_tools(agents: list[AgentDefinition], exclude: str | None = None) -> list[ToolDefinition]:
    return [agent.as_tool() for agent in agents if agent.name != exclude]


# ---------------------------------------------------------------------------
# Test pairs
# ---------------------------------------------------------------------------


class ExpectedToolCall(BaseModel):
    name: str
    parameters: dict[str, Any] | str | None = Field(
        default=None, description="Parameter schema of the expected tool."
    )
    expected_params: dict[str, Any] = Field(
        default_factory=dict, description="Parameter values the call must carry."
    )


class PairSettings(BaseModel):
    model: ModelRef | None = None
    check_types: list[CheckType] = Field(default_factory=lambda: [CheckType.EQUALITY])
    context: Context | None = None
    embedding_model: ModelRef | None = None
    knowledge_bases: list[str] = Field(default_factory=list)
    tools_called: list[ExpectedToolCall] = Field(default_factory=list)
    images: list[ImageAttachment] = Field(default_factory=list)
    json_schema: dict[str, Any] | str | None = None
    use_json_schema: bool = False
    json_schema_strict: bool = False

    @model_validator(mode="after")
    def _check_types(self) -> "PairSettings":
        if CheckType.EQUALITY not in self.check_types:
            self.check_types = [CheckType.EQUALITY, *self.check_types]
        if CheckType.TOOLS_CALL in self.check_types and CheckType.JSON_VALID in self.check_types:
            raise ValueError("tools_call and json_valid checks cannot both be active")
        return self

    def has(self, check: CheckType) -> bool:
        return check in self.check_types

    def parsed_json_schema(self) -> dict[str, Any] | None:
        if not self.json_schema:
            return None
        if isinstance(self.json_schema, str):
            return json.loads(self.json_schema)
        return self.json_schema


class TestPair(BaseModel):
    __test__ = False

    input: str = Field(validation_alias=AliasChoices("input", "in"))
    expected_output: str = Field(
        default="", validation_alias=AliasChoices("expected_output", "expected", "out")
    )
    settings: PairSettings = Field(default_factory=PairSettings)


# ---------------------------------------------------------------------------
# Structured model outputs
# ---------------------------------------------------------------------------


class ScoreBreakdown(BaseModel):
    format: int | None = None
    accuracy: int | None = None
    completeness: int | None = None
    meaning: int | None = None


class ScoreResult(BaseModel):
    scores: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    final_score: int


class FeedbackResult(BaseModel):
    feedback: str = Field(description="One imperative improvement directive, or empty.")


class ImprovedPrompt(BaseModel):
    improved_prompt: str = Field(
        description="Final improved system prompt",
        validation_alias=AliasChoices("improved_prompt", "improvedPrompt"),
    )
    summary: str = Field(default="", description="Short description of the prompt")


# ---------------------------------------------------------------------------
# Check and run results
# ---------------------------------------------------------------------------


class JsonCheckResult(BaseModel):
    valid: bool
    error: str | None = None
    schema_checked: bool = False


class ParamMismatch(BaseModel):
    param: str
    expected: Any = None
    actual: Any = None


class CalledTool(BaseModel):
    name: str
    arguments: str | dict[str, Any] = ""
    arguments_valid: bool | None = None
    missing_params: list[str] = Field(default_factory=list)
    expected_params: dict[str, Any] | None = None
    actual_params: dict[str, Any] | None = None
    expected_values: dict[str, Any] | None = None
    expected_values_valid: bool | None = None
    mismatches: list[ParamMismatch] = Field(default_factory=list)


class ToolsCallResult(BaseModel):
    success: bool
    called_tools: list[CalledTool] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class TestResult(BaseModel):
    __test__ = False
    model_config = ConfigDict(frozen=True)

    input: str
    expected_output: str
    actual_output: str
    is_equal: bool = False
    is_json_valid: bool | None = None
    json_error: str | None = None
    tools_call_result: ToolsCallResult | None = None
    ai_score: int = 0
    scores: ScoreBreakdown | None = None
    ai_feedback: str = ""
    similarity: float = 0.0
    settings: PairSettings = Field(default_factory=PairSettings)


class IterationRecord(BaseModel):
    instructions: str
    test_results: list[TestResult]


class RunConfig(BaseModel):
    instructions: str
    pairs: list[TestPair] = Field(default_factory=list)
    core_model: ModelRef | None = None
    default_embedding_model: ModelRef | None = None
    improve_mode: bool = False
    iterations: int = Field(default=1, ge=1)
    selected_tools: list[ToolDefinition] = Field(default_factory=list)
    agents: list[AgentDefinition] = Field(default_factory=list)
    max_tool_iterations: int = Field(default=config.DEFAULT_MAX_TOOL_ITERATIONS, ge=1)
    time_limit_ms: int = Field(default=config.DEFAULT_TIME_LIMIT_MS, gt=0)

    @model_validator(mode="after")
    def _unique_tool_names(self) -> "RunConfig":
        names = [tool.name for tool in self.selected_tools]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate tool names in run: {', '.join(duplicates)}")
        return self


class RunOutcome(BaseModel):
    """Return value of ``Orchestrator.run``.

    ``results`` is ``None`` in test mode, otherwise one instruction version per
    improvement iteration. ``tests`` holds one list of TestResult per pass; in
    improve mode the first pass ran the original instructions.
    """

    initial_instructions: str
    results: list[str] | None = None
    tests: list[list[TestResult]] = Field(default_factory=list)

    @property
    def iterations(self) -> list[IterationRecord]:
        versions = [self.initial_instructions, *(self.results or [])]
        return [
            IterationRecord(instructions=instructions, test_results=results)
            for instructions, results in zip(versions, self.tests)
        ]

    @property
    def best_instructions(self) -> str:
        """Instructions of the pass with the most equal pairs, then highest mean score."""
        records = self.iterations
        if not records:
            return self.initial_instructions

        def _rank(record: IterationRecord) -> tuple[int, float]:
            results = record.test_results
            equal = sum(1 for r in results if r.is_equal)
            mean = sum(100 if r.is_equal else r.ai_score for r in results) / (len(results) or 1)
            return equal, mean

        return max(records, key=_rank).instructions


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class KnowledgeFile(BaseModel):
    id: str
    name: str
    content: str = ""


class Chunk(BaseModel):
    text: str
    index: int
    start: int
    end: int
    file_id: str | None = None
    file_name: str | None = None


class KnowledgeIndex(BaseModel):
    chunks: list[Chunk]
    embeddings: list[list[float]]
    model: str | None = None
    indexed_at: float = 0.0


class KnowledgeBase(BaseModel):
    id: str
    name: str
    files: list[KnowledgeFile] = Field(default_factory=list)
    index: KnowledgeIndex | None = None


class RetrievedChunk(Chunk):
    similarity: float
    knowledge_base_id: str | None = None
    knowledge_base_name: str | None = None


class Source(BaseModel):
    knowledge_base_id: str | None = None
    knowledge_base_name: str | None = None
    file_id: str | None = None
    file_name: str | None = None


class RagContext(BaseModel):
    context: str = ""
    sources: list[Source] = Field(default_factory=list)
    chunks: list[RetrievedChunk] = Field(default_factory=list)
