"""
RunPrompt - A fluent API for running prompt suites
"""

import asyncio
from pathlib import Path
from typing import Optional, Union

import logfire

from .capabilities import Capabilities
from .utils import RunSummary, Suite, arun_suite, load_suite


class RunPrompt:
    """
    Fluent API for running prompt suites.

    Examples:
        RunPrompt.from_file("suite.yml").run()
        RunPrompt.from_source(yaml_str).improve(3).run()
        RunPrompt.from_dict(data).with_capabilities(caps).min_score(80).run()
        await RunPrompt.from_file("suite.yml").debug().arun()
    """

    def __init__(
        self,
        source: Union[str, Path, dict, Suite],
        *,
        capabilities: Optional[Capabilities] = None,
        improve: Optional[bool] = None,
        iterations: Optional[int] = None,
        model: Optional[str] = None,
        min_score: int = 100,
        debug_mode: bool = False,
    ):
        self._source = source
        self._capabilities = capabilities
        self._improve = improve
        self._iterations = iterations
        self._model = model
        self._min_score = min_score
        self._debug_mode = debug_mode

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "RunPrompt":
        """
        Create from a YAML file path.

        Example:
            RunPrompt.from_file("suite.yml").run()
        """
        return cls(Path(path))

    @classmethod
    def from_source(cls, source: Union[str, dict, Suite]) -> "RunPrompt":
        """
        Create from a YAML string, dict, or Suite object.

        Example:
            yaml_str = "instructions: ...\\npairs: [...]"
            RunPrompt.from_source(yaml_str).run()
        """
        return cls(source)

    @classmethod
    def from_dict(cls, data: dict) -> "RunPrompt":
        return cls(data)

    def with_capabilities(self, capabilities: Capabilities) -> "RunPrompt":
        """Use these capability implementations instead of the bundled providers."""
        self._capabilities = capabilities
        return self

    def with_model(self, model: str) -> "RunPrompt":
        self._model = model
        return self

    def improve(self, iterations: int = 1) -> "RunPrompt":
        """Switch to improve mode with ``iterations`` rewrite passes."""
        self._improve = True
        self._iterations = iterations
        return self

    def min_score(self, score: int) -> "RunPrompt":
        self._min_score = score
        return self

    def debug(self, enabled: bool = True) -> "RunPrompt":
        self._debug_mode = enabled
        return self

    async def arun(self) -> RunSummary:
        source = self._source
        if self._debug_mode:
            source = load_suite(source)
            logfire.info("Loaded suite", suite=source.model_dump(mode="json", exclude={"knowledge_bases"}))

        return await arun_suite(
            source,
            capabilities=self._capabilities,
            improve=self._improve,
            iterations=self._iterations,
            model=self._model,
            min_score=self._min_score,
        )

    def run(self) -> RunSummary:
        """
        Execute the suite.

        Returns:
            RunSummary with results of every pass
        """
        return asyncio.run(self.arun())
