from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator, Protocol

from pydantic import ValidationError

from .errors import ConfigurationError
from .models import FeatureState, PipelineConfig, PipelineStage, PipelineState, UserStory
from .state_machine import initial_stage, select_next_pending

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so an interrupted write never leaves a
    partial file behind.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if missing or unreadable.

    Raises:
        ConfigurationError: If the file is missing, empty, or not UTF-8.
    """
    if not path.is_file():
        raise ConfigurationError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ConfigurationError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ConfigurationError(f"{model_name} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------


class StateStore(Protocol):
    """Persistence seam for the pipeline state document."""

    def exists(self) -> bool: ...

    def load(self) -> PipelineState: ...

    def atomic_save(self, state: PipelineState) -> None: ...


class JsonFileStateStore:
    """Pipeline state kept in a single JSON file.

    Every save is a temp-file-then-rename under an exclusive ``fcntl`` lock,
    so a crash mid-write leaves the previous document intact.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> PipelineState:
        """Read and validate the state file.

        Raises:
            ConfigurationError: If the file is missing, unreadable, or fails
                validation (including an unknown stage name).
        """
        with _locked_file(self.path):
            text = _safe_read_json(self.path, "pipeline state")
            try:
                return PipelineState.model_validate_json(text)
            except ValidationError as exc:
                raise ConfigurationError(f"pipeline state at {self.path} failed validation: {exc}") from exc

    def atomic_save(self, state: PipelineState) -> None:
        with _locked_file(self.path):
            _atomic_write_text(self.path, state.model_dump_json(by_alias=True, indent=2) + "\n")


def build_pipeline_state(stories: list[UserStory], config: PipelineConfig) -> PipelineState:
    """Create the initial state document from the requirements list.

    Stories already marked as passing start out complete.  The first pending
    feature (by priority, then list order) becomes current and is seeded with
    its initial stage.

    Raises:
        ConfigurationError: If the list is empty or repeats an id.
    """
    if not stories:
        raise ConfigurationError("requirements list contains no user stories")

    features: dict[str, FeatureState] = {}
    for story in stories:
        if story.id in features:
            raise ConfigurationError(f"duplicate user story id in requirements list: {story.id}")
        features[story.id] = FeatureState(
            state=PipelineStage.QA_PASSED if story.passes else PipelineStage.PENDING,
            requires_backend_work=story.requires_backend is not False,
            requires_frontend_work=story.requires_frontend is not False,
            priority=story.priority,
        )

    current_id = select_next_pending(features)
    if current_id is None:
        current_id = stories[-1].id
    else:
        current = features[current_id]
        current.state = initial_stage(current)

    return PipelineState(current_feature_id=current_id, features=features, config=config)


# ---------------------------------------------------------------------------
# Requirements list
# ---------------------------------------------------------------------------


class RequirementsStore:
    """Read access to the requirements list plus the completion flag write-back.

    The raw document is rewritten with only ``passes`` changed so keys this
    package does not know about survive.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read_raw(self) -> dict[str, Any]:
        text = _safe_read_json(self.path, "requirements list")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"requirements list at {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("userStories"), list):
            raise ConfigurationError(f"requirements list at {self.path} must be an object with a 'userStories' list")
        return payload

    def load_stories(self) -> list[UserStory]:
        payload = self._read_raw()
        try:
            return [UserStory.model_validate(item) for item in payload["userStories"]]
        except ValidationError as exc:
            raise ConfigurationError(f"requirements list at {self.path} failed validation: {exc}") from exc

    def story(self, story_id: str) -> UserStory | None:
        for story in self.load_stories():
            if story.id == story_id:
                return story
        return None

    def mark_complete(self, story_id: str) -> None:
        """Set ``passes`` to true for *story_id*. Idempotent."""
        with _locked_file(self.path):
            payload = self._read_raw()
            for item in payload["userStories"]:
                if isinstance(item, dict) and item.get("id") == story_id:
                    item["passes"] = True
                    break
            else:
                raise ConfigurationError(f"user story {story_id!r} not found in {self.path}", feature_id=story_id)
            _atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
        logger.info("Marked %s as passing in %s", story_id, self.path.name)


# ---------------------------------------------------------------------------
# Progress log and worker output archive
# ---------------------------------------------------------------------------


def ensure_progress_log(path: Path) -> None:
    """Create the shared progress log with a header if it does not exist yet."""
    if path.is_file():
        return
    _atomic_write_text(
        path,
        f"# Feature Pipeline Progress Log\nStarted: {datetime.now(UTC).isoformat()}\n---\n",
    )


class WorkerOutputArchive:
    """Keeps the raw output of each worker invocation for manual inspection."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def write(self, *, feature_id: str, stage: PipelineStage, sequence: int, text: str) -> Path:
        """Persist one invocation's output.

        Raises:
            ValueError: If *feature_id* contains no filesystem-safe characters.
        """
        safe_feature = re.sub(r"[^A-Za-z0-9_.-]+", "-", feature_id.strip()).strip("-")
        if not safe_feature:
            raise ValueError("feature_id must contain filesystem-safe characters")
        path = self.root / safe_feature / f"{sequence:03d}-{stage.value}.log"
        _atomic_write_text(path, text)
        return path
