import json
import sys
from pathlib import Path

import pytest

from conftest import write_requirements
from feature_pipeline import __main__ as cli
from feature_pipeline.workers import WorkerAdapter


ROLE_PLAY_SCRIPT = """
import re, sys
text = sys.stdin.read()
stage = re.search(r"- Stage: (\\w+)", text).group(1)
print("working on " + stage)
print({
    "backend_dev": "BACKEND_DEV_COMPLETE",
    "backend_review": "SUMMARY: looks good\\nBACKEND_REVIEW_PASSED",
    "qa_testing": "QA_TESTING_COMPLETE",
}.get(stage, "no idea"))
"""


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    monkeypatch.setenv("PIPELINE_COMMIT_ON_COMPLETE", "false")
    monkeypatch.delenv("PIPELINE_WORKER_TOOL", raising=False)
    monkeypatch.delenv("PIPELINE_MAX_ITERATIONS", raising=False)
    return monkeypatch


def test_parse_args_defaults_and_overrides() -> None:
    args = cli.parse_args([])
    assert args.max_iterations is None
    assert args.sandbox_enabled is None
    args = cli.parse_args(["--tool", "codex", "--no-sandbox", "7"])
    assert args.tool == "codex"
    assert args.sandbox_enabled is False
    assert args.max_iterations == 7


@pytest.mark.parametrize("argv", [["0"], ["-3"], ["ten"], ["--tool", "cursor"], ["--sandbox", "--no-sandbox"]])
def test_parse_args_rejects_bad_input(argv: list[str]) -> None:
    with pytest.raises(SystemExit):
        cli.parse_args(argv)


def test_cli_overrides_environment(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("PIPELINE_MAX_ITERATIONS", "50")
    settings = cli.load_settings(cli.parse_args(["--project-root", str(tmp_path), "--model", " opus ", "4"]))
    assert settings.max_iterations == 4
    assert settings.worker_model == "opus"
    assert settings.project_root_path == tmp_path.resolve()


def test_invalid_environment_exits_with_configuration_status(clean_env: pytest.MonkeyPatch) -> None:
    clean_env.setenv("PIPELINE_MAX_REVIEW_CYCLES", "-1")
    assert cli.main(["--no-sandbox"]) == 4


def test_missing_worker_executable_exits_with_configuration_status(
    clean_env: pytest.MonkeyPatch, project: Path
) -> None:
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable="ghost-worker-cli-not-installed", base_args=()),
    )
    write_requirements(project / "prd.json", [{"id": "US-001"}])
    assert cli.main(["--no-sandbox", "--project-root", str(project)]) == 4
    assert not (project / "feature_progress.json").exists()


def test_end_to_end_run_on_host(
    clean_env: pytest.MonkeyPatch, project: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable=sys.executable, base_args=("-c", ROLE_PLAY_SCRIPT)),
    )
    write_requirements(project / "prd.json", [{"id": "US-001", "title": "Health check", "requiresFrontend": False}])

    status = cli.main(["--no-sandbox", "--project-root", str(project), "5"])

    assert status == 0
    out = capsys.readouterr().out
    assert "outcome=completed" in out
    assert "iterations_used=3" in out
    state = json.loads((project / "feature_progress.json").read_text(encoding="utf-8"))
    feature = state["features"]["US-001"]
    assert feature["state"] == "qa_passed"
    assert [entry["summary"] for entry in feature["history"]] == [
        "BACKEND_DEV_COMPLETE",
        "looks good",
        "QA_TESTING_COMPLETE",
    ]
    assert (project / "progress.txt").is_file()
    assert len(list((project / "pipeline_logs" / "US-001").iterdir())) == 3


def test_budget_exhaustion_exits_with_status_one(clean_env: pytest.MonkeyPatch, project: Path) -> None:
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable=sys.executable, base_args=("-c", ROLE_PLAY_SCRIPT)),
    )
    write_requirements(project / "prd.json", [{"id": "US-001", "requiresFrontend": False}])
    assert cli.main(["--no-sandbox", "--project-root", str(project), "2"]) == 1
    state = json.loads((project / "feature_progress.json").read_text(encoding="utf-8"))
    assert state["features"]["US-001"]["state"] == "qa_testing"


def test_unrecognized_signal_exits_with_status_two(clean_env: pytest.MonkeyPatch, project: Path) -> None:
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable=sys.executable, base_args=("-c", "print('done!')")),
    )
    write_requirements(project / "prd.json", [{"id": "US-001"}])
    assert cli.main(["--no-sandbox", "--project-root", str(project)]) == 2


def test_undecodable_worker_output_is_still_classified(clean_env: pytest.MonkeyPatch, project: Path) -> None:
    script = "import sys; sys.stdin.read(); sys.stdout.buffer.write(b'caf\\xe9 done\\nBACKEND_DEV_COMPLETE\\n')"
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable=sys.executable, base_args=("-c", script)),
    )
    write_requirements(project / "prd.json", [{"id": "US-001"}])

    assert cli.main(["--no-sandbox", "--project-root", str(project), "1"]) == 1
    state = json.loads((project / "feature_progress.json").read_text(encoding="utf-8"))
    feature = state["features"]["US-001"]
    assert feature["state"] == "backend_review"
    assert feature["history"][0]["signal"] == "BACKEND_DEV_COMPLETE"


def test_unexpected_failure_logs_feature_and_stage(
    clean_env: pytest.MonkeyPatch, project: Path, caplog: pytest.LogCaptureFixture
) -> None:
    clean_env.setattr(
        cli,
        "build_adapter",
        lambda tool: WorkerAdapter(name=tool, executable=sys.executable, base_args=("-c", ROLE_PLAY_SCRIPT)),
    )

    def disk_full(self: object, **_kwargs: object) -> Path:
        raise OSError(28, "No space left on device")

    clean_env.setattr(cli.WorkerOutputArchive, "write", disk_full)
    write_requirements(project / "prd.json", [{"id": "US-001"}])

    with caplog.at_level("ERROR"):
        status = cli.main(["--no-sandbox", "--project-root", str(project)])

    assert status == 1
    assert "US-001" in caplog.text
    assert "backend_dev" in caplog.text
    assert "No space left on device" in caplog.text
