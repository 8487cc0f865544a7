from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .cycle_guard import CycleGuard
from .errors import PipelineError, SignalClassificationError
from .models import HistoryEntry, PipelineConfig, PipelineStage, PipelineState
from .sandbox import SandboxManager
from .signals import parse_worker_output
from .state_machine import (
    FAILURE_SIGNALS,
    NO_WORK_SIGNALS,
    PASS_THROUGH_STAGES,
    TERMINAL_STAGES,
    approval_for,
    initial_stage,
    pass_through_target,
    role_for,
    select_next_pending,
    transition,
)
from .state_store import RequirementsStore, StateStore, WorkerOutputArchive, build_pipeline_state
from .workers import StageTask, Worker

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"


@dataclass(frozen=True)
class RunResult:
    outcome: RunOutcome
    iterations_used: int
    current_feature_id: str
    current_stage: PipelineStage
    completed_features: tuple[str, ...] = ()

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome == RunOutcome.COMPLETED else 1


class PipelineGraphState(TypedDict, total=False):
    iterations_used: int
    action: str
    outcome: str | None
    invoked_stage: str | None
    raw_output: str | None
    completed_features: list[str]


class FeaturePipeline:
    """Drives the current feature through its stages as a LangGraph dispatch cycle.

    Every node re-reads the state file and writes it back atomically before
    returning, so the file is always the resumption point: killing the
    process between two nodes and starting again continues from the last
    persisted stage.  The iteration budget counts worker invocations only;
    pass-through stages and feature completion bookkeeping are free.
    """

    def __init__(
        self,
        *,
        store: StateStore,
        requirements: RequirementsStore,
        worker: Worker,
        sandboxes: SandboxManager,
        max_iterations: int = 20,
        initial_config: PipelineConfig | None = None,
        teardown_on_complete: bool = True,
        output_archive: WorkerOutputArchive | None = None,
        committer: Callable[[str], Any] | None = None,
        recursion_limit: int = 1_000,
    ) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got: {max_iterations}")
        self.store = store
        self.requirements = requirements
        self.worker = worker
        self.sandboxes = sandboxes
        self.max_iterations = max_iterations
        self.initial_config = initial_config if initial_config is not None else PipelineConfig()
        self.teardown_on_complete = teardown_on_complete
        self.output_archive = output_archive
        self.committer = committer
        self.recursion_limit = recursion_limit
        self._feature_id: str | None = None
        self._stage: PipelineStage | None = None
        self._in_flight_handle: str | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineGraphState)
        graph.add_node("dispatch", self._dispatch_node)
        graph.add_node("advance", self._advance_node)
        graph.add_node("complete_feature", self._complete_feature_node)
        graph.add_node("invoke_worker", self._invoke_worker_node)
        graph.add_node("apply_signal", self._apply_signal_node)

        graph.add_edge(START, "dispatch")
        graph.add_conditional_edges(
            "dispatch",
            self._dispatch_route,
            {
                "advance": "advance",
                "complete": "complete_feature",
                "invoke": "invoke_worker",
                "end": END,
            },
        )
        graph.add_edge("advance", "dispatch")
        graph.add_conditional_edges(
            "complete_feature",
            self._complete_route,
            {
                "dispatch": "dispatch",
                "end": END,
            },
        )
        graph.add_edge("invoke_worker", "apply_signal")
        graph.add_edge("apply_signal", "dispatch")
        return graph

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def _load(self) -> PipelineState:
        state = self.store.load()
        self._track(state)
        return state

    def _save(self, state: PipelineState) -> None:
        self.store.atomic_save(state)
        self._track(state)

    def _track(self, state: PipelineState) -> None:
        feature = state.current_feature
        self._feature_id = state.current_feature_id
        self._stage = feature.state
        self._in_flight_handle = feature.sandbox_handle

    @property
    def current_feature_id(self) -> str | None:
        """Feature id from the last state read or write, if any."""
        return self._feature_id

    @property
    def current_stage(self) -> PipelineStage | None:
        return self._stage

    def initialize(self) -> PipelineState:
        """Load the state file, creating it from the requirements list on first run."""
        if self.store.exists():
            return self._load()
        stories = self.requirements.load_stories()
        state = build_pipeline_state(stories, self.initial_config)
        self._save(state)
        logger.info(
            "Created pipeline state with %d features; starting with %s at %s",
            len(state.features),
            state.current_feature_id,
            state.current_feature.state.value,
        )
        return state

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _dispatch_node(self, state: PipelineGraphState) -> dict[str, Any]:
        pipeline = self._load()
        feature = pipeline.current_feature
        logger.info(
            "Feature %s at %s (backend=%s, frontend=%s, cycles=%d)",
            pipeline.current_feature_id,
            feature.state.value,
            feature.requires_backend_work,
            feature.requires_frontend_work,
            feature.review_cycle_count,
        )
        if feature.state in TERMINAL_STAGES:
            return {"action": "complete"}
        if feature.state in PASS_THROUGH_STAGES:
            return {"action": "advance"}
        if state.get("iterations_used", 0) >= self.max_iterations:
            logger.error(
                "Reached max iterations (%d) with feature %s at %s",
                self.max_iterations,
                pipeline.current_feature_id,
                feature.state.value,
            )
            return {"action": "end", "outcome": RunOutcome.BUDGET_EXHAUSTED.value}
        return {"action": "invoke"}

    def _dispatch_route(self, state: PipelineGraphState) -> str:
        return state.get("action", "end")

    def _advance_node(self, _state: PipelineGraphState) -> dict[str, Any]:
        pipeline = self._load()
        feature = pipeline.current_feature
        previous = feature.state
        feature.state = pass_through_target(previous, feature)
        self._save(pipeline)
        logger.info("Auto-transition %s -> %s", previous.value, feature.state.value)
        return {}

    def _complete_feature_node(self, state: PipelineGraphState) -> dict[str, Any]:
        pipeline = self._load()
        feature_id = pipeline.current_feature_id
        feature = pipeline.current_feature
        completed = list(state.get("completed_features", []))
        logger.info("Feature %s fully complete", feature_id)

        self.requirements.mark_complete(feature_id)
        if self.teardown_on_complete and feature.sandbox_handle is not None:
            self.sandboxes.teardown(feature.sandbox_handle)
            feature.sandbox_handle = None
            self._save(pipeline)
        if self.committer is not None:
            self.committer(f"Update {feature_id} status to passed")
        if feature_id not in completed:
            completed.append(feature_id)

        next_id = select_next_pending(pipeline.features)
        if next_id is None:
            logger.info("All features complete")
            return {"outcome": RunOutcome.COMPLETED.value, "completed_features": completed}

        next_feature = pipeline.features[next_id]
        next_feature.state = initial_stage(next_feature)
        pipeline.current_feature_id = next_id
        self._save(pipeline)
        logger.info("Moving to next feature %s, starting at %s", next_id, next_feature.state.value)
        return {"completed_features": completed}

    def _complete_route(self, state: PipelineGraphState) -> str:
        return "end" if state.get("outcome") else "dispatch"

    def _invoke_worker_node(self, state: PipelineGraphState) -> dict[str, Any]:
        iteration = state.get("iterations_used", 0) + 1
        pipeline = self._load()
        feature_id = pipeline.current_feature_id
        feature = pipeline.current_feature
        stage = feature.state
        logger.info("Iteration %d of %d: %s for %s", iteration, self.max_iterations, stage.value, feature_id)

        handle = self.sandboxes.ensure(feature_id, feature.sandbox_handle)
        if handle != feature.sandbox_handle:
            feature.sandbox_handle = handle
            self._save(pipeline)

        task = StageTask(
            feature_id=feature_id,
            stage=stage,
            role=role_for(stage),
            cycle=CycleGuard(pipeline.config).context_for(feature, stage),
            prior_issues=tuple(feature.current_issues),
            story=self.requirements.story(feature_id),
        )
        output = self.worker.invoke(task, handle)
        if self.output_archive is not None:
            path = self.output_archive.write(
                feature_id=feature_id,
                stage=stage,
                sequence=len(feature.history) + 1,
                text=output.text,
            )
            logger.debug("Worker output saved to %s", path)
        return {
            "iterations_used": iteration,
            "invoked_stage": stage.value,
            "raw_output": output.text,
        }

    def _apply_signal_node(self, state: PipelineGraphState) -> dict[str, Any]:
        pipeline = self._load()
        feature_id = pipeline.current_feature_id
        feature = pipeline.current_feature
        stage = PipelineStage(state["invoked_stage"])
        if feature.state != stage:
            raise PipelineError(
                f"state file changed underneath the run: expected {stage.value}, found {feature.state.value}",
                feature_id=feature_id,
                stage=feature.state.value,
            )

        classified = parse_worker_output(state.get("raw_output") or "")
        if not classified.recognized:
            raise SignalClassificationError(
                "Could not determine next state from worker output; state left unchanged for inspection",
                feature_id=feature_id,
                stage=stage.value,
            )

        signal = classified.signal
        next_stage = transition(stage, signal)
        if signal in FAILURE_SIGNALS:
            count = CycleGuard(pipeline.config).record_failure(feature)
            feature.current_issues = list(classified.issues)
            logger.info("Review cycle: %d", count)
        else:
            feature.current_issues = []

        feature.history.append(
            HistoryEntry(
                stage=stage,
                actor=role_for(stage).value,
                summary=classified.summary,
                signal=signal,
                approved=approval_for(signal),
                no_work=signal in NO_WORK_SIGNALS,
            )
        )
        feature.state = next_stage
        self._save(pipeline)
        logger.info("Signal %s: %s -> %s", signal.value, stage.value, next_stage.value)
        return {"raw_output": None, "invoked_stage": None}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _graph_recursion_limit(self, feature_count: int) -> int:
        # Each invocation costs three supersteps plus at most one pass-through
        # (two supersteps); each feature adds completion and seeding.
        return max(self.recursion_limit, 5 * self.max_iterations + 4 * feature_count + 10)

    def run(self) -> RunResult:
        """Run until every feature passes QA or the iteration budget is spent.

        The in-flight feature's sandbox is torn down on errors and
        interrupts, and on a normal exit when ``teardown_on_complete`` is
        set; its handle stays recorded so the next run can recreate it.

        Raises:
            PipelineError: On configuration, classification or provisioning
                failures, annotated with the current feature and stage.
        """
        with self.sandboxes.guard(lambda: self._in_flight_handle, teardown_on_exit=self.teardown_on_complete):
            try:
                self.worker.preflight()
                pipeline = self.initialize()
                result = self.graph.invoke(
                    {"iterations_used": 0, "outcome": None, "completed_features": []},
                    config={"recursion_limit": self._graph_recursion_limit(len(pipeline.features))},
                )
            except PipelineError as exc:
                raise exc.with_context(
                    feature_id=self._feature_id,
                    stage=self._stage.value if self._stage is not None else None,
                )

        if self._feature_id is None or self._stage is None:
            raise PipelineError("run finished without reading the pipeline state")
        return RunResult(
            outcome=RunOutcome(result.get("outcome") or RunOutcome.BUDGET_EXHAUSTED.value),
            iterations_used=result.get("iterations_used", 0),
            current_feature_id=self._feature_id,
            current_stage=self._stage,
            completed_features=tuple(result.get("completed_features", [])),
        )
