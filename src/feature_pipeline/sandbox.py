"""Per-feature isolated execution environments.

A feature gets one sandbox, named deterministically from its id, created the
first time a worker stage needs it and reused until the feature completes.
The default backend drives Docker Desktop's ``docker sandbox`` command.
Provisioning problems are fatal and never retried; removal problems are only
logged, since a leaked sandbox is preferable to a stuck pipeline.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Mapping, Protocol, Sequence

from .errors import ConfigurationError, SandboxProvisioningError

logger = logging.getLogger(__name__)


# Executable name and npm package for each worker tool.
TOOL_PACKAGES: dict[str, tuple[str, str]] = {
    "claude": ("claude", "@anthropic-ai/claude-code"),
    "codex": ("codex", "@openai/codex"),
    "amp": ("amp", "@sourcegraph/amp"),
}

GIT_IDENTITY = ("Feature Pipeline", "feature-pipeline@localhost")


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SandboxBackend(Protocol):
    """Operations the manager needs from an isolation provider."""

    def check_available(self) -> None: ...

    def exists(self, name: str) -> bool: ...

    def create(self, name: str, template: str, workdir: Path) -> None: ...

    def run_script(self, name: str, script: str, *, stdin_text: str | None = None) -> CommandResult: ...

    def remove(self, name: str) -> None: ...

    def exec_argv(self, name: str, workdir: Path, command: Sequence[str], env: Mapping[str, str]) -> list[str]: ...


class DockerSandboxBackend:
    """``docker sandbox`` CLI wrapper (Docker Desktop 4.50+ with AI Sandboxes)."""

    def __init__(self, *, docker: str = "docker", timeout: int | None = 900) -> None:
        self.docker = docker
        self.timeout = timeout

    def _run(self, args: Sequence[str], *, stdin_text: str | None = None) -> CommandResult:
        command = [self.docker, *args]
        try:
            result = subprocess.run(
                command,
                input=stdin_text,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SandboxProvisioningError(
                f"'{self.docker}' executable not found. Install Docker Desktop 4.50+ "
                "or rerun with --no-sandbox."
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SandboxProvisioningError(
                f"'{' '.join(command[:3])}' timed out after {self.timeout}s"
            ) from exc
        return CommandResult(result.returncode, result.stdout, result.stderr)

    def check_available(self) -> None:
        if not self._run(["info"]).ok:
            raise SandboxProvisioningError(
                "Docker is not running. Start Docker Desktop or rerun with --no-sandbox."
            )
        if not self._run(["sandbox", "--help"]).ok:
            raise SandboxProvisioningError(
                "Docker sandbox command not found. Ensure Docker Desktop 4.50+ is installed "
                "with AI Sandboxes enabled, or rerun with --no-sandbox."
            )

    def exists(self, name: str) -> bool:
        result = self._run(["sandbox", "ls"])
        if not result.ok:
            raise SandboxProvisioningError(f"Unable to list Docker sandboxes: {result.stderr.strip()}")
        return any(name in line.split() for line in result.stdout.splitlines())

    def create(self, name: str, template: str, workdir: Path) -> None:
        result = self._run(["sandbox", "create", "--name", name, template, str(workdir)])
        if not result.ok:
            raise SandboxProvisioningError(
                f"Failed to create Docker sandbox {name}: {result.stderr.strip() or result.stdout.strip()}. "
                "Ensure Docker Desktop 4.50+ is installed and running."
            )

    def run_script(self, name: str, script: str, *, stdin_text: str | None = None) -> CommandResult:
        args = ["sandbox", "exec"]
        if stdin_text is not None:
            args.append("-i")
        return self._run([*args, name, "bash", "-c", script], stdin_text=stdin_text)

    def remove(self, name: str) -> None:
        result = self._run(["sandbox", "rm", name])
        if not result.ok:
            raise RuntimeError(result.stderr.strip() or f"docker sandbox rm exited with {result.returncode}")

    def exec_argv(self, name: str, workdir: Path, command: Sequence[str], env: Mapping[str, str]) -> list[str]:
        argv = [self.docker, "sandbox", "exec", "-i"]
        for key, value in env.items():
            argv.extend(["-e", f"{key}={value}"])
        inner = f"cd {shlex.quote(str(workdir))} && {shlex.join(command)}"
        argv.extend([name, "bash", "-c", inner])
        return argv


def sandbox_name(prefix: str, feature_id: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", feature_id.lower()).strip("-")
    if not slug:
        raise ConfigurationError(f"feature id {feature_id!r} cannot be turned into a sandbox name", feature_id=feature_id)
    return f"{prefix}-{slug}"


def provisioning_script(tool: str) -> str:
    """Shell script that installs what a worker needs inside a fresh sandbox."""
    executable, package = TOOL_PACKAGES[tool]
    user_name, user_email = GIT_IDENTITY
    return "\n".join(
        [
            "set -e",
            f"command -v {executable} >/dev/null 2>&1 || npm install -g {package}",
            "command -v jq >/dev/null 2>&1 || (apt-get update && apt-get install -y jq)",
            "command -v git >/dev/null 2>&1 || (apt-get update && apt-get install -y git)",
            f"git config --global user.name {shlex.quote(user_name)}",
            f"git config --global user.email {shlex.quote(user_email)}",
            "git config --global --add safe.directory '*'",
        ]
    )


class SandboxManager:
    """Binds one sandbox to the current feature and tears it down afterwards.

    With ``enabled=False`` every method is a no-op and ``ensure`` returns
    ``None``: workers then run directly against the shared tree.
    """

    def __init__(
        self,
        backend: SandboxBackend | None,
        *,
        tool: str,
        workdir: Path,
        prefix: str = "feature-pipeline",
        enabled: bool = True,
        auth_file: Path | None = None,
    ) -> None:
        if enabled and backend is None:
            raise ConfigurationError("sandboxing is enabled but no sandbox backend was configured")
        if tool not in TOOL_PACKAGES:
            raise ConfigurationError(f"unsupported worker tool for sandboxing: {tool!r}")
        self.backend = backend
        self.tool = tool
        self.workdir = workdir
        self.prefix = prefix
        self.enabled = enabled
        self.auth_file = auth_file
        self._available_checked = False

    @property
    def template(self) -> str:
        return "codex" if self.tool == "codex" else "claude"

    def name_for(self, feature_id: str) -> str:
        return sandbox_name(self.prefix, feature_id)

    def ensure(self, feature_id: str, current_handle: str | None = None) -> str | None:
        """Return a usable sandbox handle for *feature_id*.

        Reuses *current_handle* untouched when its environment still exists,
        recreates it when it was removed externally, and creates a new one
        when there is no handle yet.

        Raises:
            SandboxProvisioningError: If the backend is unavailable or the
                environment cannot be created or provisioned.
        """
        if not self.enabled:
            return None
        backend = self._require_backend()

        if current_handle is not None:
            if backend.exists(current_handle):
                logger.info("Reusing existing sandbox: %s", current_handle)
                return current_handle
            logger.warning("Sandbox %s not found, recreating", current_handle)
            name = current_handle
        else:
            name = self.name_for(feature_id)

        self._check_available()
        if backend.exists(name):
            logger.info("Sandbox %s already exists, adopting it", name)
        else:
            logger.info("Creating sandbox: %s", name)
            backend.create(name, self.template, self.workdir)
        self._provision(name)
        logger.info("Sandbox %s ready", name)
        return name

    def _require_backend(self) -> SandboxBackend:
        if self.backend is None:
            raise ConfigurationError("sandboxing is disabled; no sandbox backend is configured")
        return self.backend

    def _check_available(self) -> None:
        if self._available_checked:
            return
        self._require_backend().check_available()
        self._available_checked = True

    def _provision(self, name: str) -> None:
        backend = self._require_backend()
        logger.info("Installing worker dependencies in sandbox %s", name)
        result = backend.run_script(name, provisioning_script(self.tool))
        if not result.ok:
            raise SandboxProvisioningError(
                f"Failed to install dependencies in sandbox {name} (required tools: {self.tool}, jq, git): "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        if self.tool == "codex" and self.auth_file is not None and self.auth_file.is_file():
            copied = backend.run_script(
                name,
                "mkdir -p ~/.codex && cat > ~/.codex/auth.json",
                stdin_text=self.auth_file.read_text(encoding="utf-8"),
            )
            if not copied.ok:
                logger.warning(
                    "Failed to copy Codex auth into sandbox %s; run 'codex login' inside the sandbox",
                    name,
                )

    def teardown(self, handle: str | None) -> bool:
        """Best-effort removal. Returns True when the sandbox was removed."""
        if not self.enabled or handle is None:
            return False
        logger.info("Removing sandbox: %s", handle)
        try:
            self._require_backend().remove(handle)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to remove sandbox %s (left in place): %s", handle, exc)
            return False
        return True

    @contextmanager
    def guard(self, current_handle: Callable[[], str | None], *, teardown_on_exit: bool = True) -> Iterator[None]:
        """Tear down the in-flight feature's sandbox when the block exits.

        An error or interrupt always tears it down.  A normal exit does so
        only when *teardown_on_exit* is set.
        """
        try:
            yield
        except BaseException:
            self.teardown(current_handle())
            raise
        if teardown_on_exit:
            self.teardown(current_handle())

    def exec_argv(self, handle: str, command: Sequence[str], env: Mapping[str, str]) -> list[str]:
        return self._require_backend().exec_argv(handle, self.workdir, command, env)
