import importlib.util
import os
from typing import Any

import dotenv


def enable_monitoring(
    logfire_enabled: bool | Any = None,
    instrument_httpx: bool = False,
    httpx_capture_all: bool = False,
    **options,
):
    """Configure logfire when ``LOGFIRE_ENABLED`` (or ``logfire_enabled``) is true.

    Model requests are traced through pydantic-ai instrumentation; embedding
    calls additionally through httpx when ``instrument_httpx`` is set.
    """
    dotenv.load_dotenv()
    logfire_enabled = logfire_enabled or os.getenv("LOGFIRE_ENABLED")
    enabled = logfire_enabled is True or str(logfire_enabled).lower() in ("true", "1")

    if not enabled:
        return False

    if not importlib.util.find_spec("logfire"):
        raise ImportError(
            "LOGFIRE_ENABLED is set but logfire is not installed. "
            "Please install logfire or set LOGFIRE_ENABLED=false"
        )

    import logfire

    console = options.pop("console", logfire.ConsoleOptions(show_project_link=False))
    if "token" not in options and (token := os.getenv("LOGFIRE_TOKEN")):
        options["token"] = token
    options.setdefault("service_name", "promptloop")

    logfire.configure(**options, console=console)
    logfire.instrument_pydantic_ai()
    if instrument_httpx or os.getenv("LOGFIRE_INSTRUMENT_HTTPX", "").lower() == "true":
        logfire.instrument_httpx(capture_all=httpx_capture_all)
    return True
