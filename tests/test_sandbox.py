from pathlib import Path

import pytest

from conftest import FakeSandboxBackend
from feature_pipeline.errors import ConfigurationError, SandboxProvisioningError
from feature_pipeline.sandbox import DockerSandboxBackend, SandboxManager, provisioning_script, sandbox_name


def _manager(backend: FakeSandboxBackend, tmp_path: Path, **kwargs: object) -> SandboxManager:
    return SandboxManager(backend, tool="claude", workdir=tmp_path, **kwargs)


def test_sandbox_name_is_deterministic() -> None:
    assert sandbox_name("feature-pipeline", "US-001") == "feature-pipeline-us-001"
    assert sandbox_name("fp", "Story #7: Login") == "fp-story-7-login"
    with pytest.raises(ConfigurationError):
        sandbox_name("fp", "???")


def test_ensure_creates_and_provisions_once(tmp_path: Path) -> None:
    backend = FakeSandboxBackend()
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    assert handle == "feature-pipeline-us-001"
    assert ("create", handle, "claude") in backend.calls
    assert backend.count("run_script") == 1


def test_ensure_is_idempotent_for_existing_handle(tmp_path: Path) -> None:
    backend = FakeSandboxBackend()
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    calls_before = list(backend.calls)
    assert manager.ensure("US-001", handle) == handle
    assert manager.ensure("US-001", handle) == handle
    assert backend.calls == calls_before


def test_ensure_recreates_externally_removed_sandbox(tmp_path: Path) -> None:
    backend = FakeSandboxBackend()
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    backend.sandboxes.clear()
    assert manager.ensure("US-001", handle) == handle
    assert backend.count("create") == 2
    assert backend.count("check_available") == 1


def test_provisioning_failure_is_fatal(tmp_path: Path) -> None:
    manager = _manager(FakeSandboxBackend(provision_ok=False), tmp_path)
    with pytest.raises(SandboxProvisioningError):
        manager.ensure("US-001")


def test_teardown_failure_is_not_fatal(tmp_path: Path) -> None:
    backend = FakeSandboxBackend(remove_fails=True)
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    assert manager.teardown(handle) is False
    assert handle in backend.sandboxes


def test_disabled_manager_is_a_no_op(tmp_path: Path) -> None:
    manager = SandboxManager(None, tool="claude", workdir=tmp_path, enabled=False)
    assert manager.ensure("US-001") is None
    assert manager.teardown("anything") is False
    with manager.guard(lambda: "anything"):
        pass


def test_enabled_manager_requires_backend(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        SandboxManager(None, tool="claude", workdir=tmp_path)


def test_guard_tears_down_on_exception(tmp_path: Path) -> None:
    backend = FakeSandboxBackend()
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    with pytest.raises(KeyboardInterrupt):
        with manager.guard(lambda: handle):
            raise KeyboardInterrupt
    assert ("remove", handle) in backend.calls
    assert handle not in backend.sandboxes


def test_codex_auth_file_is_copied(tmp_path: Path) -> None:
    auth = tmp_path / "auth.json"
    auth.write_text('{"token": "x"}', encoding="utf-8")
    backend = FakeSandboxBackend()
    manager = SandboxManager(backend, tool="codex", workdir=tmp_path, auth_file=auth)
    handle = manager.ensure("US-001")
    assert ("create", handle, "codex") in backend.calls
    assert backend.count("run_script") == 2


def test_provisioning_script_installs_tool_and_git_identity() -> None:
    script = provisioning_script("codex")
    assert "npm install -g @openai/codex" in script
    assert "jq" in script
    assert "git config --global user.email" in script


def test_docker_exec_argv_passes_env_and_workdir() -> None:
    argv = DockerSandboxBackend().exec_argv(
        "fp-us-001",
        Path("/work/my project"),
        ["claude", "--print"],
        {"ANTHROPIC_API_KEY": "secret"},
    )
    assert argv[:4] == ["docker", "sandbox", "exec", "-i"]
    assert argv[4:6] == ["-e", "ANTHROPIC_API_KEY=secret"]
    assert argv[6:9] == ["fp-us-001", "bash", "-c"]
    assert argv[9] == "cd '/work/my project' && claude --print"


def test_missing_docker_binary_is_a_provisioning_error() -> None:
    backend = DockerSandboxBackend(docker="docker-binary-that-does-not-exist")
    with pytest.raises(SandboxProvisioningError):
        backend.check_available()


def test_guard_keeps_sandbox_on_normal_exit_when_teardown_disabled(tmp_path: Path) -> None:
    backend = FakeSandboxBackend()
    manager = _manager(backend, tmp_path)
    handle = manager.ensure("US-001")
    with manager.guard(lambda: handle, teardown_on_exit=False):
        pass
    assert backend.count("remove") == 0
    with pytest.raises(RuntimeError):
        with manager.guard(lambda: handle, teardown_on_exit=False):
            raise RuntimeError("worker crashed")
    assert ("remove", handle) in backend.calls


def test_disabled_manager_cannot_build_exec_command(tmp_path: Path) -> None:
    manager = SandboxManager(None, tool="claude", workdir=tmp_path, enabled=False)
    with pytest.raises(ConfigurationError):
        manager.exec_argv("feature-pipeline-us-001", ["claude"], {})
