"""Entry point for `python -m feature_pipeline` and the `feature-pipeline` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from feature_pipeline.errors import PipelineError
from feature_pipeline.orchestrator import FeaturePipeline, RunOutcome
from feature_pipeline.sandbox import DockerSandboxBackend, SandboxManager
from feature_pipeline.settings import WORKER_TOOLS, RuntimeSettings
from feature_pipeline.state_store import (
    JsonFileStateStore,
    RequirementsStore,
    WorkerOutputArchive,
    ensure_progress_log,
)
from feature_pipeline.vcs import GitTrackingCommitter
from feature_pipeline.workers import CODEX_AUTH_FILE, WorkerInvoker, build_adapter, load_environment


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got: {value!r}") from None
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got: {parsed}")
    return parsed


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Drive features from prd.json through development, review and QA stages"
    )
    parser.add_argument("--tool", default=None, choices=WORKER_TOOLS, help="Worker CLI to invoke (default: claude)")
    parser.add_argument("--model", default=None, help="Model name passed to the worker CLI")
    sandbox = parser.add_mutually_exclusive_group()
    sandbox.add_argument(
        "--sandbox",
        dest="sandbox_enabled",
        action="store_true",
        default=None,
        help="Run each feature in its own Docker sandbox (default)",
    )
    sandbox.add_argument(
        "--no-sandbox",
        dest="sandbox_enabled",
        action="store_false",
        help="Run workers directly against the project tree",
    )
    parser.add_argument("--state-file", default=None, help="Pipeline state file (default: feature_progress.json)")
    parser.add_argument("--requirements-file", default=None, help="Requirements list (default: prd.json)")
    parser.add_argument("--project-root", type=Path, default=None, help="Project directory (default: cwd)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "max_iterations",
        nargs="?",
        type=_positive_int,
        default=None,
        help="Worker invocation budget for this run (default: 20)",
    )
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> RuntimeSettings:
    """Environment settings with CLI overrides applied.

    Raises:
        ValueError: If the environment or the overrides are invalid.
    """
    settings = RuntimeSettings.from_env()
    overrides: dict[str, object] = {}
    if args.tool is not None:
        overrides["worker_tool"] = args.tool
    if args.model is not None:
        overrides["worker_model"] = args.model
    if args.sandbox_enabled is not None:
        overrides["sandbox_enabled"] = args.sandbox_enabled
    if args.state_file is not None:
        overrides["state_file"] = args.state_file
    if args.requirements_file is not None:
        overrides["requirements_file"] = args.requirements_file
    if args.project_root is not None:
        overrides["project_root"] = str(args.project_root.resolve())
    if args.max_iterations is not None:
        overrides["max_iterations"] = args.max_iterations
    if not overrides:
        return settings
    return dataclasses.replace(settings, **overrides).normalized()


@contextmanager
def _termination_signals() -> Iterator[None]:
    """Turn SIGTERM into KeyboardInterrupt so sandbox teardown runs on kill."""

    def _raise_interrupt(signum: int, _frame: object) -> None:
        raise KeyboardInterrupt(f"received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _position(pipeline: FeaturePipeline | None) -> tuple[str, str]:
    if pipeline is None:
        return "-", "-"
    stage = pipeline.current_stage
    return pipeline.current_feature_id or "-", stage.value if stage is not None else "-"


def build_pipeline(settings: RuntimeSettings) -> FeaturePipeline:
    project_root = settings.project_root_path
    adapter = build_adapter(settings.worker_tool)
    sandboxes = SandboxManager(
        DockerSandboxBackend() if settings.sandbox_enabled else None,
        tool=settings.worker_tool,
        workdir=project_root,
        prefix=settings.sandbox_prefix,
        enabled=settings.sandbox_enabled,
        auth_file=CODEX_AUTH_FILE.expanduser(),
    )
    worker = WorkerInvoker(
        adapter,
        project_root=project_root,
        agents_dir=settings.agents_dir_path(),
        model=settings.worker_model,
        sandboxes=sandboxes,
    )
    committer = None
    if settings.commit_on_complete:
        committer = GitTrackingCommitter(
            project_root,
            [settings.state_file_path(), settings.requirements_file_path()],
        )
    return FeaturePipeline(
        store=JsonFileStateStore(settings.state_file_path()),
        requirements=RequirementsStore(settings.requirements_file_path()),
        worker=worker,
        sandboxes=sandboxes,
        max_iterations=settings.max_iterations,
        initial_config=settings.pipeline_config(),
        teardown_on_complete=settings.teardown_on_complete,
        output_archive=WorkerOutputArchive(settings.output_log_dir_path()),
        committer=committer,
        recursion_limit=settings.recursion_limit,
    )


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_root = args.project_root.resolve() if args.project_root is not None else Path.cwd()
    load_environment(project_root)

    try:
        settings = load_settings(args)
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 4

    logging.info(
        "Starting feature pipeline: tool=%s, max iterations=%d, sandbox=%s",
        settings.worker_tool,
        settings.max_iterations,
        "enabled" if settings.sandbox_enabled else "disabled",
    )

    pipeline: FeaturePipeline | None = None
    try:
        ensure_progress_log(settings.progress_log_path())
        pipeline = build_pipeline(settings)
        with _termination_signals():
            result = pipeline.run()
    except PipelineError as exc:
        logging.error(
            "Pipeline stopped: %s (feature=%s, stage=%s)",
            exc,
            exc.feature_id or "-",
            exc.stage or "-",
        )
        return exc.exit_code
    except KeyboardInterrupt:
        feature_id, stage = _position(pipeline)
        logging.warning(
            "Interrupted at feature %s, stage %s; state file left at the last completed step",
            feature_id,
            stage,
        )
        return 130
    except Exception as exc:  # noqa: BLE001
        feature_id, stage = _position(pipeline)
        logging.exception("Pipeline failed at feature %s, stage %s: %s", feature_id, stage, exc)
        return 1

    if pipeline.committer is not None:
        pipeline.committer("Final state after pipeline run")

    print(f"outcome={result.outcome.value}")
    print(f"iterations_used={result.iterations_used}")
    print(f"completed_features={','.join(result.completed_features)}")
    if result.outcome == RunOutcome.BUDGET_EXHAUSTED:
        logging.error(
            "Iteration budget exhausted at feature %s, stage %s; rerun to continue",
            result.current_feature_id,
            result.current_stage.value,
        )
    return result.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
