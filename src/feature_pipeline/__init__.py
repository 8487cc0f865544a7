from importlib.metadata import version

from .cycle_guard import CycleContext, CycleGuard
from .errors import ConfigurationError, PipelineError, SandboxProvisioningError, SignalClassificationError
from .models import (
    FeatureState,
    HistoryEntry,
    PhaseKind,
    PipelineConfig,
    PipelineStage,
    PipelineState,
    Signal,
    UserStory,
    WorkerRole,
)
from .orchestrator import FeaturePipeline, RunOutcome, RunResult
from .sandbox import DockerSandboxBackend, SandboxManager
from .signals import VOCABULARY_VERSION, classify, parse_worker_output
from .state_machine import transition
from .state_store import JsonFileStateStore, RequirementsStore, StateStore
from .workers import StageTask, WorkerInvoker, WorkerOutput, build_adapter


def get_version() -> str:
    try:
        return version("feature-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "ConfigurationError",
    "CycleContext",
    "CycleGuard",
    "DockerSandboxBackend",
    "FeaturePipeline",
    "FeatureState",
    "HistoryEntry",
    "JsonFileStateStore",
    "PhaseKind",
    "PipelineConfig",
    "PipelineError",
    "PipelineStage",
    "PipelineState",
    "RequirementsStore",
    "RunOutcome",
    "RunResult",
    "SandboxManager",
    "SandboxProvisioningError",
    "Signal",
    "SignalClassificationError",
    "StageTask",
    "StateStore",
    "UserStory",
    "VOCABULARY_VERSION",
    "WorkerInvoker",
    "WorkerOutput",
    "WorkerRole",
    "build_adapter",
    "classify",
    "get_version",
    "parse_worker_output",
    "transition",
]
