import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import logfire
import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, model_validator

from . import config
from .capabilities import Capabilities
from .errors import SuiteLoadError
from .models import (
    AgentDefinition,
    KnowledgeBase,
    ModelRef,
    RunConfig,
    RunOutcome,
    TestPair,
    TestResult,
    ToolDefinition,
)
from .orchestrator import Orchestrator
from .retrieval import KnowledgeStore


def _normalize_tool(data: Any) -> Any:
    """Allow ``code:``, ``server:`` or ``agent:`` in place of an ``implementation`` block."""
    if not isinstance(data, dict) or "implementation" in data:
        return data
    data = dict(data)
    for key, kind in (("code", "local"), ("server", "remote"), ("agent", "agent")):
        if key in data:
            data["implementation"] = {"kind": kind, key: data.pop(key)}
            break
    return data


def _read_knowledge_files(data: Any) -> Any:
    if not isinstance(data, dict):
        return data
    files = []
    for item in data.get("files", []):
        if isinstance(item, dict) and "path" in item and not item.get("content"):
            path = Path(item["path"])
            item = {"id": str(path), "name": path.name, **item, "content": path.read_text()}
            item.pop("path")
        files.append(item)
    return {**data, "files": files}


class AgentSpec(BaseModel):
    name: str
    instructions: str = ""
    selected_tools: List[Union[str, ToolDefinition]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("selected_tools", "tools"),
        description="Tool names from the suite, other agent names, or inline tools.",
    )
    model: Optional[ModelRef] = None
    json_schema: Optional[Dict[str, Any]] = None
    json_schema_strict: bool = False

    @model_validator(mode="before")
    @classmethod
    def _inline_tools(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in ("selected_tools", "tools"):
                if key in data:
                    data = {**data, key: [_normalize_tool(t) for t in data[key]]}
        return data


class Suite(BaseModel):
    """A prompt test suite as written in YAML.

    Example:
        instructions: Echo the input in uppercase
        model: openai:gpt-4o-mini
        pairs:
          - input: hi
            expected: HI
    """

    instructions: str
    model: Optional[ModelRef] = Field(
        default=None, validation_alias=AliasChoices("model", "core_model")
    )
    embedding_model: Optional[ModelRef] = None
    improve: bool = False
    iterations: int = Field(default=1, ge=1)
    max_tool_iterations: int = Field(default_factory=config.max_tool_iterations, ge=1)
    time_limit_ms: int = Field(default_factory=config.time_limit_ms, gt=0)
    pairs: List[TestPair] = Field(default_factory=list)
    tools: List[ToolDefinition] = Field(default_factory=list)
    agents: List[AgentSpec] = Field(default_factory=list)
    knowledge_bases: List[KnowledgeBase] = Field(default_factory=list)
    mcp_servers: Dict[str, str] = Field(default_factory=dict)
    sandbox_env: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _shorthands(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "tools" in data:
            data["tools"] = [_normalize_tool(t) for t in data["tools"] or []]
        if "knowledge_bases" in data:
            data["knowledge_bases"] = [_read_knowledge_files(k) for k in data["knowledge_bases"] or []]
        return data

    @model_validator(mode="after")
    def _check_tools(self) -> "Suite":
        names = [t.name for t in self.tools]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate tool names in suite: {', '.join(duplicates)}")
        for spec in self.agents:
            self._resolve_agent_tools(spec)
        return self

    def _resolve_agent_tools(self, spec: AgentSpec) -> List[ToolDefinition]:
        by_name = {t.name: t for t in self.tools}
        agent_names = {a.name for a in self.agents}
        resolved = []
        for ref in spec.selected_tools:
            if isinstance(ref, ToolDefinition):
                resolved.append(ref)
            elif ref in by_name:
                resolved.append(by_name[ref])
            elif ref in agent_names:
                target = next(a for a in self.agents if a.name == ref)
                resolved.append(
                    AgentDefinition(name=target.name, instructions=target.instructions).as_tool()
                )
            else:
                raise ValueError(f"Agent '{spec.name}' references unknown tool '{ref}'")
        return resolved

    def to_run_config(self) -> RunConfig:
        agents = [
            AgentDefinition(
                name=spec.name,
                instructions=spec.instructions,
                selected_tools=self._resolve_agent_tools(spec),
                core_model=spec.model,
                json_schema=spec.json_schema,
                json_schema_strict=spec.json_schema_strict,
            )
            for spec in self.agents
        ]
        return RunConfig(
            instructions=self.instructions,
            pairs=self.pairs,
            core_model=self.model,
            default_embedding_model=self.embedding_model,
            improve_mode=self.improve,
            iterations=self.iterations,
            selected_tools=self.tools,
            agents=agents,
            max_tool_iterations=self.max_tool_iterations,
            time_limit_ms=self.time_limit_ms,
        )


def _validate_suite(data: Any) -> Suite:
    if not isinstance(data, dict):
        raise SuiteLoadError(f"Suite must be a mapping, got {type(data).__name__}")
    try:
        return Suite.model_validate(data)
    except (ValidationError, ValueError, OSError) as e:
        raise SuiteLoadError(str(e)) from e


def load_suite_file(yaml_path: Union[str, Path]) -> Suite:
    try:
        with open(yaml_path) as f:
            loaded = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SuiteLoadError(f"Invalid YAML in {yaml_path}: {e}") from e
    return _validate_suite(loaded)


def load_suite_from_yaml_string(yaml_content: str) -> Suite:
    try:
        loaded = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise SuiteLoadError(f"Invalid YAML: {e}") from e
    return _validate_suite(loaded)


def load_suite_from_dict(data: dict) -> Suite:
    return _validate_suite(data)


def load_suite(source: Union[str, Path, dict, Suite]) -> Suite:
    if isinstance(source, Suite):
        return source
    elif isinstance(source, dict):
        return load_suite_from_dict(source)
    elif isinstance(source, Path):
        return load_suite_file(source)
    elif isinstance(source, str):
        if "\n" in source or source.strip().startswith("{") or ": " in source:
            return load_suite_from_yaml_string(source)
        return load_suite_file(source)
    else:
        raise TypeError(
            f"source must be a file path (str/Path), YAML string (str), dict, or Suite object, got {type(source)}"
        )


def default_capabilities(suite: Suite) -> Capabilities:
    from .providers import HttpEmbedder, MCPRemoteTools, PydanticAICompletion, SubprocessSandbox

    return Capabilities(
        completion=PydanticAICompletion(),
        embedder=HttpEmbedder(),
        sandbox=SubprocessSandbox(env_vars=suite.sandbox_env),
        remote_tools=MCPRemoteTools(suite.mcp_servers) if suite.mcp_servers else None,
    )


class RunSummary(BaseModel):
    outcome: RunOutcome
    min_score: int = Field(default=100, description="Score at or above which a pair counts as passed.")

    @property
    def final_results(self) -> List[TestResult]:
        return self.outcome.tests[-1] if self.outcome.tests else []

    @property
    def final_instructions(self) -> str:
        if self.outcome.results:
            return self.outcome.results[-1]
        return self.outcome.initial_instructions

    @property
    def best_instructions(self) -> str:
        return self.outcome.best_instructions

    def passed(self, result: TestResult) -> bool:
        if result.is_equal:
            return True
        if result.is_json_valid is False:
            return False
        if result.tools_call_result is not None and not result.tools_call_result.success:
            return False
        return result.ai_score >= self.min_score

    @property
    def total_count(self) -> int:
        return len(self.final_results)

    @property
    def equal_count(self) -> int:
        return sum(1 for r in self.final_results if r.is_equal)

    @property
    def passed_count(self) -> int:
        return sum(1 for r in self.final_results if self.passed(r))

    @property
    def all_passed(self) -> bool:
        return self.passed_count == self.total_count

    @property
    def mean_score(self) -> float:
        results = self.final_results
        if not results:
            return 0.0
        return sum(100 if r.is_equal else r.ai_score for r in results) / len(results)

    @property
    def failed_results(self) -> List[TestResult]:
        return [r for r in self.final_results if not self.passed(r)]

    def print(self, *, include_instructions: bool = True):
        """Print the run as rich tables: overview, per-pass scores and final pairs."""
        from rich import box
        from rich.console import Console
        from rich.panel import Panel
        from rich.table import Table

        console = Console()

        summary_table = Table(title="📊 Run Summary", box=box.ROUNDED, show_header=True)
        summary_table.add_column("Metric", style="cyan", no_wrap=True)
        summary_table.add_column("Value", style="magenta")
        summary_table.add_row("Passes", str(len(self.outcome.tests)))
        summary_table.add_row("Pairs", str(self.total_count))
        summary_table.add_row("✅ Equal", f"[green]{self.equal_count}[/green]")
        summary_table.add_row("Mean Score", f"{self.mean_score:.1f}")
        summary_table.add_row(
            "Status",
            "[green]✅ ALL PASSED[/green]" if self.all_passed else "[red]❌ FAILURES DETECTED[/red]",
        )
        console.print(summary_table)

        if self.outcome.results is not None:
            console.print()
            passes = Table(title="🔁 Iterations", box=box.SIMPLE, show_header=True)
            passes.add_column("Pass", style="cyan", justify="right")
            passes.add_column("Equal", justify="right")
            passes.add_column("Mean Score", justify="right")
            passes.add_column("Feedbacks", justify="right")
            for i, record in enumerate(self.outcome.iterations):
                results = record.test_results
                equal = sum(1 for r in results if r.is_equal)
                mean = sum(100 if r.is_equal else r.ai_score for r in results) / (len(results) or 1)
                feedbacks = len({r.ai_feedback.strip() for r in results if r.ai_feedback.strip()})
                passes.add_row(
                    "initial" if i == 0 else str(i), f"{equal}/{len(results)}", f"{mean:.1f}", str(feedbacks)
                )
            console.print(passes)

        if self.final_results:
            console.print()
            pairs = Table(title="🔍 Pair Results", box=box.SIMPLE, show_header=True)
            pairs.add_column("#", style="cyan", justify="right")
            pairs.add_column("Input", overflow="fold")
            pairs.add_column("Output", overflow="fold")
            pairs.add_column("Status", justify="center")
            pairs.add_column("Score", justify="right")
            pairs.add_column("Similarity", justify="right")
            pairs.add_column("Checks", style="dim")
            for i, result in enumerate(self.final_results, start=1):
                checks = []
                if result.is_json_valid is not None:
                    checks.append("json ✅" if result.is_json_valid else f"json ❌ {result.json_error or ''}")
                if result.tools_call_result is not None:
                    tools = result.tools_call_result
                    checks.append(
                        "tools ✅" if tools.success else f"tools ❌ missing {', '.join(tools.missing)}"
                    )
                pairs.add_row(
                    str(i),
                    result.input[:80],
                    result.actual_output[:80],
                    "✅" if self.passed(result) else "❌",
                    "=" if result.is_equal else str(result.ai_score),
                    f"{result.similarity:.3f}",
                    "\n".join(checks),
                )
            console.print(pairs)

        if include_instructions and self.outcome.results is not None:
            console.print()
            console.print(Panel(self.best_instructions, title="Best Instructions", border_style="bright_cyan"))

    def json(self) -> dict:
        """
        Convert the run to a plain dict, suitable for ``json.dump``.

        Returns:
            dict
        """
        return {
            "summary": {
                "passes": len(self.outcome.tests),
                "pairs": self.total_count,
                "equal": self.equal_count,
                "passed": self.passed_count,
                "mean_score": round(self.mean_score, 2),
                "all_passed": self.all_passed,
            },
            "initial_instructions": self.outcome.initial_instructions,
            "results": self.outcome.results,
            "best_instructions": self.best_instructions,
            "tests": [
                [r.model_dump(mode="json", exclude={"settings"}) for r in results]
                for results in self.outcome.tests
            ],
        }


async def _index_knowledge(suite: Suite, store: KnowledgeStore, capabilities: Capabilities) -> None:
    if not suite.knowledge_bases:
        return
    name = config.env_embedding_model_name()
    model = suite.embedding_model or (ModelRef.model_validate(name) if name else None)
    if capabilities.embedder is None or model is None:
        logfire.warn("Knowledge bases defined but no embedding model is configured")
        return
    await store.index_all(capabilities.embedder, model)


async def arun_suite(
    source: Union[str, Path, dict, Suite],
    *,
    capabilities: Optional[Capabilities] = None,
    improve: Optional[bool] = None,
    iterations: Optional[int] = None,
    model: Optional[str] = None,
    min_score: int = 100,
) -> RunSummary:
    suite = load_suite(source)
    overrides: Dict[str, Any] = {}
    if improve is not None:
        overrides["improve"] = improve
    if iterations is not None:
        overrides["iterations"] = iterations
    if model is not None:
        overrides["model"] = ModelRef.model_validate(model)
    if overrides:
        suite = suite.model_copy(update=overrides)

    capabilities = capabilities or default_capabilities(suite)
    store = KnowledgeStore(suite.knowledge_bases)
    await _index_knowledge(suite, store, capabilities)

    outcome = await Orchestrator(capabilities, knowledge=store).run(suite.to_run_config())
    return RunSummary(outcome=outcome, min_score=min_score)


def run_suite(
    source: Union[str, Path, dict, Suite],
    *,
    capabilities: Optional[Capabilities] = None,
    improve: Optional[bool] = None,
    iterations: Optional[int] = None,
    model: Optional[str] = None,
    min_score: int = 100,
    debug: bool = False,
) -> RunSummary:
    """
    Run a prompt suite from various sources.

    Args:
        source: Suite source (file path, YAML string, dict, or Suite)
        capabilities: Capability implementations, defaults to the bundled providers
        improve: Override the suite's improve mode
        iterations: Override the number of improvement iterations
        model: Override the core model (``provider:model``)
        min_score: Score at or above which a non-equal pair passes
        debug: Log the loaded run configuration

    Returns:
        RunSummary of the run
    """
    if debug:
        suite = load_suite(source)
        logfire.info("Loaded suite", suite=suite.model_dump(mode="json", exclude={"knowledge_bases"}))
        source = suite
    return asyncio.run(
        arun_suite(
            source,
            capabilities=capabilities,
            improve=improve,
            iterations=iterations,
            model=model,
            min_score=min_score,
        )
    )
