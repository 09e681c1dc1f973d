"""Runtime defaults for promptloop, resolved from the environment.

Set ``MODEL_NAME`` for the core model used by scoring, feedback and
improvement, and ``EMBEDDING_MODEL`` for similarity and retrieval. A value
starting with ``$`` names another environment variable to read instead::

    MODEL_NAME=$MY_TEAM_MODEL
"""

import os

import dotenv

dotenv.load_dotenv()

DEFAULT_MAX_TOOL_ITERATIONS = 5
DEFAULT_TIME_LIMIT_MS = 60_000

RAG_TOP_K = 5
RAG_MIN_SIMILARITY = 0.3
RAG_CONTEXT_MAX_LENGTH = 10_000

CHUNK_SIZE = 500
CHUNK_OVERLAP = 100
CHUNK_SEPARATORS = ("\n\n", "\n", ". ", " ")

EMBEDDING_BATCH_SIZE = 20
DEFAULT_EMBEDDING_BASE_URL = "https://api.openai.com/v1"


def resolve_env_reference(value: str | None) -> str | None:
    """Expand a ``$VAR`` reference; plain values are returned unchanged."""
    if not value:
        return value
    if value.strip().startswith("$"):
        env_var = value.strip().lstrip("$")
        resolved = os.getenv(env_var)
        if not resolved:
            raise ValueError(
                f"Environment variable {env_var} is not set, set {env_var} to a valid model name."
            )
        return resolved
    return value


def env_model_name() -> str | None:
    return resolve_env_reference(os.getenv("MODEL_NAME"))


def env_embedding_model_name() -> str | None:
    return resolve_env_reference(os.getenv("EMBEDDING_MODEL"))


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def max_tool_iterations() -> int:
    return env_int("PROMPTLOOP_MAX_TOOL_ITERATIONS", DEFAULT_MAX_TOOL_ITERATIONS)


def time_limit_ms() -> int:
    return env_int("PROMPTLOOP_TIME_LIMIT_MS", DEFAULT_TIME_LIMIT_MS)
