"""
promptloop - test system prompts against expected outputs and improve them from AI feedback.
"""
import importlib.metadata

__version__ = importlib.metadata.version("promptloop")

from .cancellation import CancellationToken
from .capabilities import Capabilities, DeltaStream
from .errors import (
    EmptyConversationError,
    ModelNotResolvedError,
    OperationAborted,
    SuiteLoadError,
)
from .models import (
    AgentDefinition,
    CheckType,
    Message,
    ModelRef,
    PairSettings,
    RunConfig,
    RunOutcome,
    TestPair,
    TestResult,
    ToolDefinition,
)
from .orchestrator import Orchestrator
from .runner import RunPrompt
from .utils import (
    RunSummary,
    Suite,
    load_suite,
    load_suite_file,
    load_suite_from_dict,
    load_suite_from_yaml_string,
    run_suite,
)

__all__ = [
    "load_suite_file",
    "load_suite_from_yaml_string",
    "load_suite_from_dict",
    "load_suite",
    "run_suite",
    "RunPrompt",
    "RunSummary",
    "Suite",
    "Orchestrator",
    "RunConfig",
    "RunOutcome",
    "TestPair",
    "TestResult",
    "PairSettings",
    "CheckType",
    "ModelRef",
    "Message",
    "ToolDefinition",
    "AgentDefinition",
    "Capabilities",
    "CancellationToken",
    "DeltaStream",
    "OperationAborted",
    "ModelNotResolvedError",
    "EmptyConversationError",
    "SuiteLoadError",
]
