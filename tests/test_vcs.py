import shutil
import subprocess
from pathlib import Path

import pytest

from feature_pipeline.vcs import GitTrackingCommitter


pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> str:
    return subprocess.run(["git", *args], cwd=repo, capture_output=True, text=True, check=True).stdout


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "config", "user.name", "Test")
    _git(tmp_path, "config", "user.email", "test@example.com")
    return tmp_path


def test_commits_only_tracking_files(repo: Path) -> None:
    state = repo / "feature_progress.json"
    state.write_text("{}", encoding="utf-8")
    (repo / "unrelated.txt").write_text("leave me", encoding="utf-8")
    committer = GitTrackingCommitter(repo, [state, repo / "prd.json"])

    assert committer("Update US-001 status to passed") is True
    assert _git(repo, "log", "--format=%s").strip() == "Update US-001 status to passed"
    assert _git(repo, "ls-files").split() == ["feature_progress.json"]


def test_nothing_to_commit_returns_false(repo: Path) -> None:
    state = repo / "feature_progress.json"
    state.write_text("{}", encoding="utf-8")
    committer = GitTrackingCommitter(repo, [state])
    assert committer("first") is True
    assert committer("second") is False


def test_outside_a_repository_is_not_fatal(tmp_path: Path) -> None:
    state = tmp_path / "feature_progress.json"
    state.write_text("{}", encoding="utf-8")
    assert GitTrackingCommitter(tmp_path, [state])("message") is False


def test_missing_git_binary_is_not_fatal(repo: Path) -> None:
    state = repo / "feature_progress.json"
    state.write_text("{}", encoding="utf-8")
    assert GitTrackingCommitter(repo, [state], git="git-binary-that-does-not-exist")("message") is False
