"""Model-assisted grading of a completion against its expected output.

``run_scoring``, ``run_feedback`` and ``run_similarity`` never raise for
provider or parsing failures: they log the problem and return ``None`` so a
single failing call cannot take down a test pair. Cancellation still unwinds.
``improve_instructions`` is the exception: a failed rewrite aborts the run.
"""

import json
import math
import re
from typing import Any, Sequence

import json_repair
import logfire

from .cancellation import CancellationToken, guarded
from .capabilities import CompletionOptions, Embedder, PromptCompletion
from .errors import OperationAborted
from .models import FeedbackResult, ImprovedPrompt, ModelRef, ScoreResult
from .prompts import (
    FEEDBACK_PROMPT,
    IMPROVER_PROMPT,
    SCORING_PROMPT,
    comparison_message,
    improvement_message,
)

SIMILARITY_EPSILON = 1e-12

_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def repair_json(text: str) -> Any:
    """Parse model output as JSON, repairing near-valid documents.

    Strips Markdown code fences, then falls back to ``json_repair`` for
    trailing commas, single quotes, unquoted keys and similar slips.

    Raises:
        ValueError: if nothing parseable remains.
    """
    stripped = (text or "").strip()
    if match := _FENCE.match(stripped):
        stripped = match.group(1)
    if not stripped:
        raise ValueError("Empty model output, expected JSON")
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        pass
    repaired = json_repair.loads(stripped)
    if repaired in ("", None):
        raise ValueError(f"Could not repair model output into JSON: {stripped[:200]!r}")
    return repaired


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| * |b| + eps)``; zero vectors give 0.0."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a)
    norm_b = sum(y * y for y in b)
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b) + SIMILARITY_EPSILON)


async def _structured(
    completion: PromptCompletion,
    system_prompt: str,
    user_message: str,
    model: ModelRef,
    schema: dict[str, Any],
    token: CancellationToken | None,
) -> Any:
    options = CompletionOptions(json_schema=schema, token=token)
    response = await guarded(
        token, completion.complete(system_prompt, user_message, model, options)
    )
    return repair_json(response.content)


async def run_scoring(
    completion: PromptCompletion,
    reference: str,
    submission: str,
    model: ModelRef,
    *,
    token: CancellationToken | None = None,
) -> ScoreResult | None:
    try:
        data = await _structured(
            completion,
            SCORING_PROMPT,
            comparison_message(reference, submission),
            model,
            ScoreResult.model_json_schema(),
            token,
        )
        result = ScoreResult.model_validate(data)
    except OperationAborted:
        raise
    except Exception as e:
        logfire.error("AI scoring failed", model=model.name, error=str(e))
        return None

    logfire.info("AI score", final_score=result.final_score, scores=result.scores.model_dump())
    return result


async def run_feedback(
    completion: PromptCompletion,
    reference: str,
    submission: str,
    model: ModelRef,
    *,
    token: CancellationToken | None = None,
) -> str | None:
    try:
        data = await _structured(
            completion,
            FEEDBACK_PROMPT,
            comparison_message(reference, submission),
            model,
            FeedbackResult.model_json_schema(),
            token,
        )
        result = FeedbackResult.model_validate(data)
    except OperationAborted:
        raise
    except Exception as e:
        logfire.error("AI feedback failed", model=model.name, error=str(e))
        return None

    logfire.info("AI feedback", feedback=result.feedback)
    return result.feedback


async def run_similarity(
    embedder: Embedder,
    reference: str,
    submission: str,
    model: ModelRef,
    *,
    token: CancellationToken | None = None,
) -> float | None:
    try:
        vectors = await guarded(token, embedder.embed([reference, submission], model))
        if len(vectors) < 2 or not vectors[0] or not vectors[1]:
            logfire.error("Embeddings missing from response", model=model.name)
            return None
        similarity = cosine_similarity(vectors[0], vectors[1])
    except OperationAborted:
        raise
    except Exception as e:
        logfire.error("Cosine similarity failed", model=model.name, error=str(e))
        return None

    logfire.info("Cosine similarity", similarity=similarity)
    return similarity


async def improve_instructions(
    completion: PromptCompletion,
    instructions: str,
    feedbacks: str,
    model: ModelRef,
    *,
    token: CancellationToken | None = None,
) -> ImprovedPrompt:
    with logfire.span("Improving instructions", model=model.name):
        data = await _structured(
            completion,
            IMPROVER_PROMPT,
            improvement_message(instructions, feedbacks),
            model,
            ImprovedPrompt.model_json_schema(),
            token,
        )
        improved = ImprovedPrompt.model_validate(data)
        logfire.info(
            "Improved instructions",
            summary=improved.summary,
            improved_prompt=improved.improved_prompt,
        )
        return improved
