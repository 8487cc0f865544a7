from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Protocol, TextIO

from dotenv import load_dotenv

from .cycle_guard import CycleContext
from .errors import ConfigurationError
from .models import PipelineStage, UserStory, WorkerRole
from .sandbox import SandboxManager
from .state_machine import ROLE_SIGNALS

logger = logging.getLogger(__name__)


ROLE_INSTRUCTIONS: dict[WorkerRole, str] = {
    WorkerRole.BACKEND_DEVELOPER: "BACKEND_DEV.md",
    WorkerRole.BACKEND_REVIEWER: "BACKEND_REVIEWER.md",
    WorkerRole.FRONTEND_DEVELOPER: "FRONTEND_DEV.md",
    WorkerRole.FRONTEND_REVIEWER: "FRONTEND_REVIEWER.md",
    WorkerRole.QA_ENGINEER: "QA.md",
}

CODEX_AUTH_FILE = Path("~/.codex/auth.json")


@dataclass(frozen=True)
class StageTask:
    """Everything a worker is told about one invocation."""

    feature_id: str
    stage: PipelineStage
    role: WorkerRole
    cycle: CycleContext
    prior_issues: tuple[str, ...] = ()
    story: UserStory | None = None


@dataclass(frozen=True)
class WorkerOutput:
    text: str
    returncode: int


class Worker(Protocol):
    """Capability the orchestrator needs: run one stage task to completion."""

    def preflight(self) -> None: ...

    def invoke(self, task: StageTask, sandbox_handle: str | None) -> WorkerOutput: ...


# ---------------------------------------------------------------------------
# Per-tool adapters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerAdapter:
    """Command line shape and credential needs of one worker CLI."""

    name: str
    executable: str
    base_args: tuple[str, ...]
    context_file: str = "CLAUDE.md"
    passthrough_env: tuple[str, ...] = ()
    sandbox_required_env: tuple[str, ...] = ()
    sandbox_required_files: tuple[Path, ...] = field(default_factory=tuple)
    model_flag: str | None = "--model"

    def command(self, model: str = "") -> list[str]:
        argv = [self.executable, *self.base_args]
        if model:
            if self.model_flag is None:
                logger.warning("Worker tool %s has no model option; ignoring model %r", self.name, model)
            else:
                argv.extend([self.model_flag, model])
        return argv


WORKER_ADAPTERS: dict[str, WorkerAdapter] = {
    "claude": WorkerAdapter(
        name="claude",
        executable="claude",
        base_args=("--dangerously-skip-permissions", "--print"),
        context_file="CLAUDE.md",
        passthrough_env=("ANTHROPIC_API_KEY",),
        sandbox_required_env=("ANTHROPIC_API_KEY",),
    ),
    "codex": WorkerAdapter(
        name="codex",
        executable="codex",
        base_args=("exec", "--dangerously-bypass-approvals-and-sandbox"),
        context_file="CODEX.md",
        sandbox_required_files=(CODEX_AUTH_FILE,),
    ),
    "amp": WorkerAdapter(
        name="amp",
        executable="amp",
        base_args=("--dangerously-allow-all",),
        context_file="CLAUDE.md",
        passthrough_env=("ANTHROPIC_API_KEY", "AMP_API_KEY"),
        model_flag=None,
    ),
}


def build_adapter(tool: str) -> WorkerAdapter:
    try:
        return WORKER_ADAPTERS[tool]
    except KeyError:
        raise ConfigurationError(
            f"Invalid worker tool {tool!r}. Must be one of: {', '.join(sorted(WORKER_ADAPTERS))}"
        ) from None


def load_environment(project_root: Path) -> None:
    """Load a ``.env`` file from the project root, if present, without overriding the environment."""
    env_path = project_root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def check_credentials(
    adapter: WorkerAdapter,
    *,
    sandboxed: bool,
    env: Mapping[str, str] | None = None,
) -> None:
    """Fail fast when the selected tool cannot authenticate.

    Inside a sandbox the worker cannot reach the host keychain, so the
    credentials have to be handed in explicitly.  On the host the tool's own
    login is used and only the executable has to exist.

    Raises:
        ConfigurationError: With remediation text for the first missing item.
    """
    environ = os.environ if env is None else env
    if sandboxed:
        for name in adapter.sandbox_required_env:
            if not environ.get(name, "").strip():
                raise ConfigurationError(
                    f"{name} environment variable not set. Sandboxes cannot access the host keychain; "
                    f"export {name} or rerun with --no-sandbox."
                )
        for path in adapter.sandbox_required_files:
            resolved = path.expanduser()
            if not resolved.is_file():
                raise ConfigurationError(
                    f"{adapter.name} auth not found at {resolved}. Run '{adapter.executable} login' on the host "
                    "first, or rerun with --no-sandbox."
                )
        return
    if shutil.which(adapter.executable) is None:
        raise ConfigurationError(f"Worker executable '{adapter.executable}' not found on PATH")


# ---------------------------------------------------------------------------
# Input assembly
# ---------------------------------------------------------------------------


def render_task_context(task: StageTask) -> str:
    cycle = task.cycle
    markers = ", ".join(signal.value for signal in ROLE_SIGNALS[task.role])
    lines = [
        "# Pipeline Task",
        "",
        f"- Feature: {task.feature_id}",
    ]
    if task.story is not None and task.story.title:
        lines.append(f"- Title: {task.story.title}")
    lines.extend(
        [
            f"- Stage: {task.stage.value}",
            f"- Role: {task.role.value}",
            f"- Review cycle: {cycle.review_cycle_count} / {cycle.max_cycles} ({cycle.phase.value} phase)",
            f"- Cycle ceiling reached: {'yes' if cycle.ceiling_reached else 'no'}",
            f"- Approve after max cycles: {'yes' if cycle.skip_after_max else 'no'}",
            f"- Report exactly one completion marker: {markers}",
        ]
    )
    if task.story is not None:
        if task.story.description:
            lines.extend(["", "## Description", task.story.description])
        if task.story.acceptance_criteria:
            lines.extend(["", "## Acceptance Criteria"])
            lines.extend(f"- {item}" for item in task.story.acceptance_criteria)
    if task.prior_issues:
        lines.extend(["", "## Prior Issues"])
        lines.extend(f"- {issue}" for issue in task.prior_issues)
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Process execution
# ---------------------------------------------------------------------------


def stream_process(
    argv: list[str],
    *,
    stdin_text: str,
    cwd: Path,
    env: Mapping[str, str] | None = None,
    echo: TextIO | None = None,
) -> WorkerOutput:
    """Run *argv* to completion, echoing merged stdout/stderr live and capturing it.

    Raises:
        ConfigurationError: If the executable does not exist.
    """
    try:
        process = subprocess.Popen(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Worker executable not found: {argv[0]}") from exc

    chunks: list[str] = []
    try:
        try:
            process.stdin.write(stdin_text)
        except BrokenPipeError:
            logger.warning("Worker closed stdin before reading the full task input")
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass
        for line in process.stdout:
            chunks.append(line)
            if echo is not None:
                echo.write(line)
                echo.flush()
        returncode = process.wait()
    except BaseException:
        process.kill()
        process.wait()
        raise
    return WorkerOutput(text="".join(chunks), returncode=returncode)


class WorkerInvoker:
    """Runs a worker CLI for one stage task, on the host or inside the feature's sandbox."""

    def __init__(
        self,
        adapter: WorkerAdapter,
        *,
        project_root: Path,
        agents_dir: Path,
        model: str = "",
        sandboxes: SandboxManager | None = None,
        echo: TextIO | None = sys.stderr,
    ) -> None:
        self.adapter = adapter
        self.project_root = project_root
        self.agents_dir = agents_dir
        self.model = model
        self.sandboxes = sandboxes
        self.echo = echo

    @property
    def sandboxed(self) -> bool:
        return self.sandboxes is not None and self.sandboxes.enabled

    def preflight(self) -> None:
        """Check credentials and instruction documents before anything runs.

        Raises:
            ConfigurationError: If credentials or instruction documents are missing.
        """
        check_credentials(self.adapter, sandboxed=self.sandboxed)
        missing = [name for name in ROLE_INSTRUCTIONS.values() if not (self.agents_dir / name).is_file()]
        if missing:
            raise ConfigurationError(
                f"Missing worker instruction documents in {self.agents_dir}: {', '.join(sorted(missing))}"
            )

    def build_input(self, task: StageTask) -> str:
        parts: list[str] = []
        context_path = self.project_root / self.adapter.context_file
        if context_path.is_file():
            logger.info("Using project %s for context", self.adapter.context_file)
            parts.append(context_path.read_text(encoding="utf-8"))
        instructions_path = self.agents_dir / ROLE_INSTRUCTIONS[task.role]
        if not instructions_path.is_file():
            raise ConfigurationError(f"Worker instruction document not found: {instructions_path}")
        parts.append(instructions_path.read_text(encoding="utf-8"))
        parts.append(render_task_context(task))
        return "\n\n".join(part.rstrip("\n") for part in parts) + "\n"

    def invoke(self, task: StageTask, sandbox_handle: str | None) -> WorkerOutput:
        stdin_text = self.build_input(task)
        command = self.adapter.command(self.model)
        if sandbox_handle is not None:
            if self.sandboxes is None:
                raise ConfigurationError(f"sandbox {sandbox_handle} was requested but no sandbox manager is configured")
            env = {name: os.environ[name] for name in self.adapter.passthrough_env if os.environ.get(name)}
            argv = self.sandboxes.exec_argv(sandbox_handle, command, env)
            logger.info("Spawning %s (%s) in sandbox %s", task.role.value, self.adapter.name, sandbox_handle)
            output = stream_process(argv, stdin_text=stdin_text, cwd=self.project_root, echo=self.echo)
        else:
            logger.info("Spawning %s (%s) on host", task.role.value, self.adapter.name)
            output = stream_process(command, stdin_text=stdin_text, cwd=self.project_root, echo=self.echo)
        if output.returncode != 0:
            logger.warning(
                "Worker exited with status %d; classifying its output anyway",
                output.returncode,
            )
        return output
