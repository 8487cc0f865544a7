from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import PipelineConfig


WORKER_TOOLS = ("amp", "claude", "codex")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_file: str = "feature_progress.json"
    requirements_file: str = "prd.json"
    progress_log: str = "progress.txt"
    agents_dir: str = "agents"
    output_log_dir: str = "pipeline_logs"
    project_root: str = ""
    max_iterations: int = 20
    worker_tool: str = "claude"
    worker_model: str = ""
    sandbox_enabled: bool = True
    sandbox_prefix: str = "feature-pipeline"
    teardown_on_complete: bool = True
    commit_on_complete: bool = True
    max_review_cycles: int = 5
    max_qa_cycles: int = 5
    skip_after_max_review: bool = True
    skip_after_max_qa: bool = True
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_file=os.getenv("PIPELINE_STATE_FILE", "feature_progress.json"),
            requirements_file=os.getenv("PIPELINE_REQUIREMENTS_FILE", "prd.json"),
            progress_log=os.getenv("PIPELINE_PROGRESS_LOG", "progress.txt"),
            agents_dir=os.getenv("PIPELINE_AGENTS_DIR", "agents"),
            output_log_dir=os.getenv("PIPELINE_OUTPUT_LOG_DIR", "pipeline_logs"),
            project_root=os.getenv("PIPELINE_PROJECT_ROOT", ""),
            max_iterations=_get_env_int("PIPELINE_MAX_ITERATIONS", default=20, minimum=1),
            worker_tool=os.getenv("PIPELINE_WORKER_TOOL", "claude"),
            worker_model=os.getenv("PIPELINE_WORKER_MODEL", ""),
            sandbox_enabled=_get_env_bool("PIPELINE_SANDBOX_ENABLED", default=True),
            sandbox_prefix=os.getenv("PIPELINE_SANDBOX_PREFIX", "feature-pipeline"),
            teardown_on_complete=_get_env_bool("PIPELINE_TEARDOWN_ON_COMPLETE", default=True),
            commit_on_complete=_get_env_bool("PIPELINE_COMMIT_ON_COMPLETE", default=True),
            max_review_cycles=_get_env_int("PIPELINE_MAX_REVIEW_CYCLES", default=5, minimum=0),
            max_qa_cycles=_get_env_int("PIPELINE_MAX_QA_CYCLES", default=5, minimum=0),
            skip_after_max_review=_get_env_bool("PIPELINE_SKIP_AFTER_MAX_REVIEW", default=True),
            skip_after_max_qa=_get_env_bool("PIPELINE_SKIP_AFTER_MAX_QA", default=True),
            recursion_limit=_get_env_int("PIPELINE_RECURSION_LIMIT", default=1_000, minimum=100),
        ).normalized()

    @property
    def project_root_path(self) -> Path:
        """Return the project root as a Path, defaulting to cwd if unset."""
        return Path(self.project_root) if self.project_root else Path.cwd()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        worker_tool = self.worker_tool.strip().lower()
        if worker_tool not in WORKER_TOOLS:
            raise ValueError(f"PIPELINE_WORKER_TOOL must be one of: {', '.join(WORKER_TOOLS)}, got: {self.worker_tool!r}")

        if self.max_iterations < 1:
            raise ValueError(f"PIPELINE_MAX_ITERATIONS must be >= 1, got: {self.max_iterations}")
        if self.recursion_limit > 100_000:
            raise ValueError(f"PIPELINE_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")

        for env_name, value in (
            ("PIPELINE_STATE_FILE", self.state_file),
            ("PIPELINE_REQUIREMENTS_FILE", self.requirements_file),
            ("PIPELINE_PROGRESS_LOG", self.progress_log),
            ("PIPELINE_AGENTS_DIR", self.agents_dir),
            ("PIPELINE_OUTPUT_LOG_DIR", self.output_log_dir),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        sandbox_prefix = self.sandbox_prefix.strip().lower()
        if not sandbox_prefix or not sandbox_prefix.replace("-", "").isalnum():
            raise ValueError(f"PIPELINE_SANDBOX_PREFIX must be alphanumeric with dashes, got: {self.sandbox_prefix!r}")

        return RuntimeSettings(
            state_file=self.state_file,
            requirements_file=self.requirements_file,
            progress_log=self.progress_log,
            agents_dir=self.agents_dir,
            output_log_dir=self.output_log_dir,
            project_root=self.project_root,
            max_iterations=self.max_iterations,
            worker_tool=worker_tool,
            worker_model=self.worker_model.strip(),
            sandbox_enabled=self.sandbox_enabled,
            sandbox_prefix=sandbox_prefix,
            teardown_on_complete=self.teardown_on_complete,
            commit_on_complete=self.commit_on_complete,
            max_review_cycles=self.max_review_cycles,
            max_qa_cycles=self.max_qa_cycles,
            skip_after_max_review=self.skip_after_max_review,
            skip_after_max_qa=self.skip_after_max_qa,
            recursion_limit=self.recursion_limit,
        )

    def resolve(self, value: str) -> Path:
        path = Path(value)
        return path if path.is_absolute() else self.project_root_path / path

    def state_file_path(self) -> Path:
        return self.resolve(self.state_file)

    def requirements_file_path(self) -> Path:
        return self.resolve(self.requirements_file)

    def progress_log_path(self) -> Path:
        return self.resolve(self.progress_log)

    def agents_dir_path(self) -> Path:
        return self.resolve(self.agents_dir)

    def output_log_dir_path(self) -> Path:
        return self.resolve(self.output_log_dir)

    def pipeline_config(self) -> PipelineConfig:
        """Retry ceilings used when a state file is created for the first time."""
        return PipelineConfig(
            max_review_cycles=self.max_review_cycles,
            max_qa_cycles=self.max_qa_cycles,
            skip_after_max_review=self.skip_after_max_review,
            skip_after_max_qa=self.skip_after_max_qa,
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off"})


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
