import json
from pathlib import Path
from typing import Any

import pytest

from feature_pipeline.sandbox import CommandResult
from feature_pipeline.workers import ROLE_INSTRUCTIONS, StageTask, WorkerOutput


class ScriptedWorker:
    """Replays canned worker outputs in order and records every task it was given."""

    def __init__(self, outputs: list[str]) -> None:
        self.outputs = list(outputs)
        self.tasks: list[StageTask] = []
        self.handles: list[str | None] = []
        self.preflight_calls = 0

    def preflight(self) -> None:
        self.preflight_calls += 1

    def invoke(self, task: StageTask, sandbox_handle: str | None) -> WorkerOutput:
        self.tasks.append(task)
        self.handles.append(sandbox_handle)
        if not self.outputs:
            raise AssertionError(f"worker invoked more often than scripted (stage {task.stage.value})")
        return WorkerOutput(text=self.outputs.pop(0), returncode=0)


class FakeSandboxBackend:
    """In-memory stand-in for the docker sandbox CLI."""

    def __init__(self, *, provision_ok: bool = True, remove_fails: bool = False) -> None:
        self.sandboxes: set[str] = set()
        self.calls: list[tuple[str, ...]] = []
        self.provision_ok = provision_ok
        self.remove_fails = remove_fails

    def check_available(self) -> None:
        self.calls.append(("check_available",))

    def exists(self, name: str) -> bool:
        return name in self.sandboxes

    def create(self, name: str, template: str, workdir: Path) -> None:
        self.calls.append(("create", name, template))
        self.sandboxes.add(name)

    def run_script(self, name: str, script: str, *, stdin_text: str | None = None) -> CommandResult:
        self.calls.append(("run_script", name))
        if not self.provision_ok:
            return CommandResult(1, "", "npm: command not found")
        return CommandResult(0, "", "")

    def remove(self, name: str) -> None:
        self.calls.append(("remove", name))
        if self.remove_fails:
            raise RuntimeError("sandbox is busy")
        self.sandboxes.discard(name)

    def exec_argv(self, name: str, workdir: Path, command: list[str], env: dict[str, str]) -> list[str]:
        return ["exec", name, *command]

    def count(self, action: str) -> int:
        return sum(1 for call in self.calls if call[0] == action)


def write_requirements(path: Path, stories: list[dict[str, Any]], **extra: Any) -> Path:
    payload = {"project": "demo", **extra, "userStories": stories}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    agents = tmp_path / "agents"
    agents.mkdir()
    for name in ROLE_INSTRUCTIONS.values():
        (agents / name).write_text(f"# {name}\nFollow the process.\n", encoding="utf-8")
    return tmp_path
