"""Top-level run state machine.

Test mode runs every pair once. Improve mode runs the original instructions
once, then for each iteration rewrites the instructions from the previous
pass's feedback and runs the pairs again.
"""

from typing import Callable

import logfire

from .cancellation import CancellationToken
from .capabilities import Capabilities
from .errors import ModelNotResolvedError
from .execution import TestRunner, resolve_core_model
from .models import RunConfig, RunOutcome, TestResult
from .retrieval import KnowledgeStore
from .scoring import improve_instructions


def collect_feedbacks(results: list[TestResult]) -> list[str]:
    """Unique non-empty feedback strings, in first-seen order."""
    return list(dict.fromkeys(r.ai_feedback.strip() for r in results if r.ai_feedback.strip()))


class Orchestrator:
    """Runs a ``RunConfig`` and owns the cancellation token of that run.

    Examples:
        orchestrator = Orchestrator(capabilities)
        outcome = await orchestrator.run(run_config)

        # from another task while the run is in flight
        orchestrator.stop()
    """

    def __init__(
        self,
        capabilities: Capabilities,
        *,
        knowledge: KnowledgeStore | None = None,
        on_iteration: Callable[[int], None] | None = None,
    ):
        self.capabilities = capabilities
        self.knowledge = knowledge or KnowledgeStore()
        self.on_iteration = on_iteration
        self._token: CancellationToken | None = None

    @property
    def running(self) -> bool:
        return self._token is not None

    def stop(self) -> None:
        if self._token is not None:
            logfire.info("Stopping run")
            self._token.cancel()

    async def run(self, run_config: RunConfig) -> RunOutcome:
        token = CancellationToken()
        self._token = token
        try:
            with logfire.span(
                "Prompt run",
                improve_mode=run_config.improve_mode,
                iterations=run_config.iterations,
                pairs=len(run_config.pairs),
            ):
                runner = TestRunner(
                    self.capabilities, run_config, knowledge=self.knowledge, token=token
                )
                if run_config.improve_mode:
                    return await self._run_improve(run_config, runner, token)

                logfire.info("Testing instructions", instructions=run_config.instructions)
                tests = await runner.run_tests(run_config.instructions)
                return RunOutcome(
                    initial_instructions=run_config.instructions, results=None, tests=[tests]
                )
        finally:
            self._token = None

    async def _run_improve(
        self, run_config: RunConfig, runner: TestRunner, token: CancellationToken
    ) -> RunOutcome:
        logfire.info("Testing current instructions", instructions=run_config.instructions)
        tests = [await runner.run_tests(run_config.instructions, ask_feedback=True)]
        results: list[str] = []

        for i in range(run_config.iterations):
            token.check()
            if self.on_iteration:
                self.on_iteration(i + 1)

            with logfire.span("Iteration", iteration=i + 1, of=run_config.iterations):
                current = run_config.instructions if i == 0 else results[i - 1]
                feedbacks = collect_feedbacks(tests[-1])

                improved = current
                if feedbacks:
                    model = resolve_core_model(run_config)
                    if model is None:
                        raise ModelNotResolvedError(
                            "Improve mode needs a core model, set core_model or MODEL_NAME"
                        )
                    rewrite = await improve_instructions(
                        self.capabilities.completion,
                        current,
                        "\n".join(feedbacks),
                        model,
                        token=token,
                    )
                    token.check()
                    improved = rewrite.improved_prompt
                else:
                    logfire.warn("No feedback, skipping prompt improvement", iteration=i + 1)

                results.append(improved)
                last = i == run_config.iterations - 1
                tests.append(await runner.run_tests(improved, ask_feedback=not last))

        return RunOutcome(
            initial_instructions=run_config.instructions, results=results, tests=tests
        )
