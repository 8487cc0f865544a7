"""Pure transition logic for the feature pipeline.

Nothing here touches the filesystem or a worker: the orchestrator feeds the
current stage plus a classified signal in and persists whatever comes out.

Stage graph::

    pending -> backend_dev -> backend_review -> backend_review_{passed,failed}
    backend_review_failed   -(dev again)-> backend_review
    backend_review_passed   -> frontend_dev | qa_testing   (pass-through)
    frontend_dev -> frontend_review -> frontend_review_{passed,failed}
    frontend_review_failed  -(dev again)-> frontend_review
    frontend_review_passed  -> qa_testing                  (pass-through)
    qa_testing -> qa_passed | qa_issues_backend | qa_issues_frontend
    qa_issues_backend/_frontend -(dev again)-> layer review -> qa_testing
"""

from __future__ import annotations

import sys

from .models import FeatureState, PhaseKind, PipelineStage, Signal, WorkerRole


STAGE_ROLES: dict[PipelineStage, WorkerRole] = {
    PipelineStage.BACKEND_DEV: WorkerRole.BACKEND_DEVELOPER,
    PipelineStage.BACKEND_REVIEW_FAILED: WorkerRole.BACKEND_DEVELOPER,
    PipelineStage.QA_ISSUES_BACKEND: WorkerRole.BACKEND_DEVELOPER,
    PipelineStage.BACKEND_REVIEW: WorkerRole.BACKEND_REVIEWER,
    PipelineStage.FRONTEND_DEV: WorkerRole.FRONTEND_DEVELOPER,
    PipelineStage.FRONTEND_REVIEW_FAILED: WorkerRole.FRONTEND_DEVELOPER,
    PipelineStage.QA_ISSUES_FRONTEND: WorkerRole.FRONTEND_DEVELOPER,
    PipelineStage.FRONTEND_REVIEW: WorkerRole.FRONTEND_REVIEWER,
    PipelineStage.QA_TESTING: WorkerRole.QA_ENGINEER,
}

PASS_THROUGH_STAGES = frozenset(
    {
        PipelineStage.PENDING,
        PipelineStage.BACKEND_REVIEW_PASSED,
        PipelineStage.FRONTEND_REVIEW_PASSED,
    }
)

TERMINAL_STAGES = frozenset({PipelineStage.QA_PASSED})

SIGNAL_TARGETS: dict[Signal, PipelineStage] = {
    Signal.BACKEND_DEV_COMPLETE: PipelineStage.BACKEND_REVIEW,
    Signal.BACKEND_NO_WORK: PipelineStage.BACKEND_REVIEW_PASSED,
    Signal.BACKEND_REVIEW_PASSED: PipelineStage.BACKEND_REVIEW_PASSED,
    Signal.BACKEND_REVIEW_FAILED: PipelineStage.BACKEND_REVIEW_FAILED,
    Signal.BACKEND_REVIEW_PASSED_NO_WORK: PipelineStage.BACKEND_REVIEW_PASSED,
    Signal.BACKEND_REVIEW_PASSED_MAX_CYCLES: PipelineStage.BACKEND_REVIEW_PASSED,
    Signal.FRONTEND_DEV_COMPLETE: PipelineStage.FRONTEND_REVIEW,
    Signal.FRONTEND_NO_WORK: PipelineStage.FRONTEND_REVIEW_PASSED,
    Signal.FRONTEND_REVIEW_PASSED: PipelineStage.FRONTEND_REVIEW_PASSED,
    Signal.FRONTEND_REVIEW_FAILED: PipelineStage.FRONTEND_REVIEW_FAILED,
    Signal.FRONTEND_REVIEW_PASSED_NO_WORK: PipelineStage.FRONTEND_REVIEW_PASSED,
    Signal.FRONTEND_REVIEW_PASSED_MAX_CYCLES: PipelineStage.FRONTEND_REVIEW_PASSED,
    Signal.QA_TESTING_COMPLETE: PipelineStage.QA_PASSED,
    Signal.QA_NO_TESTING: PipelineStage.QA_PASSED,
    Signal.QA_ISSUES_BACKEND: PipelineStage.QA_ISSUES_BACKEND,
    Signal.QA_ISSUES_FRONTEND: PipelineStage.QA_ISSUES_FRONTEND,
    Signal.QA_PASSED_MAX_CYCLES: PipelineStage.QA_PASSED,
}

FAILURE_SIGNALS = frozenset(
    {
        Signal.BACKEND_REVIEW_FAILED,
        Signal.FRONTEND_REVIEW_FAILED,
        Signal.QA_ISSUES_BACKEND,
        Signal.QA_ISSUES_FRONTEND,
    }
)

NO_WORK_SIGNALS = frozenset(
    {
        Signal.BACKEND_NO_WORK,
        Signal.BACKEND_REVIEW_PASSED_NO_WORK,
        Signal.FRONTEND_NO_WORK,
        Signal.FRONTEND_REVIEW_PASSED_NO_WORK,
        Signal.QA_NO_TESTING,
    }
)

APPROVING_SIGNALS = frozenset(
    {
        Signal.BACKEND_REVIEW_PASSED,
        Signal.BACKEND_REVIEW_PASSED_NO_WORK,
        Signal.BACKEND_REVIEW_PASSED_MAX_CYCLES,
        Signal.FRONTEND_REVIEW_PASSED,
        Signal.FRONTEND_REVIEW_PASSED_NO_WORK,
        Signal.FRONTEND_REVIEW_PASSED_MAX_CYCLES,
        Signal.QA_TESTING_COMPLETE,
        Signal.QA_NO_TESTING,
        Signal.QA_PASSED_MAX_CYCLES,
    }
)

ROLE_SIGNALS: dict[WorkerRole, tuple[Signal, ...]] = {
    WorkerRole.BACKEND_DEVELOPER: (Signal.BACKEND_DEV_COMPLETE, Signal.BACKEND_NO_WORK),
    WorkerRole.BACKEND_REVIEWER: (
        Signal.BACKEND_REVIEW_PASSED,
        Signal.BACKEND_REVIEW_FAILED,
        Signal.BACKEND_REVIEW_PASSED_NO_WORK,
        Signal.BACKEND_REVIEW_PASSED_MAX_CYCLES,
    ),
    WorkerRole.FRONTEND_DEVELOPER: (Signal.FRONTEND_DEV_COMPLETE, Signal.FRONTEND_NO_WORK),
    WorkerRole.FRONTEND_REVIEWER: (
        Signal.FRONTEND_REVIEW_PASSED,
        Signal.FRONTEND_REVIEW_FAILED,
        Signal.FRONTEND_REVIEW_PASSED_NO_WORK,
        Signal.FRONTEND_REVIEW_PASSED_MAX_CYCLES,
    ),
    WorkerRole.QA_ENGINEER: (
        Signal.QA_TESTING_COMPLETE,
        Signal.QA_NO_TESTING,
        Signal.QA_ISSUES_BACKEND,
        Signal.QA_ISSUES_FRONTEND,
        Signal.QA_PASSED_MAX_CYCLES,
    ),
}

_QA_PHASE_STAGES = frozenset(
    {
        PipelineStage.QA_TESTING,
        PipelineStage.QA_ISSUES_BACKEND,
        PipelineStage.QA_ISSUES_FRONTEND,
    }
)


def is_worker_stage(stage: PipelineStage) -> bool:
    return stage in STAGE_ROLES


def role_for(stage: PipelineStage) -> WorkerRole:
    try:
        return STAGE_ROLES[stage]
    except KeyError:
        raise ValueError(f"stage {stage.value!r} does not run a worker") from None


def phase_kind(stage: PipelineStage) -> PhaseKind:
    """Which retry ceiling applies while a feature sits in *stage*."""
    return PhaseKind.QA if stage in _QA_PHASE_STAGES else PhaseKind.REVIEW


def initial_stage(feature: FeatureState) -> PipelineStage:
    if feature.requires_backend_work:
        return PipelineStage.BACKEND_DEV
    return PipelineStage.FRONTEND_DEV


def pass_through_target(stage: PipelineStage, feature: FeatureState) -> PipelineStage:
    """Next stage for a stage that is rewritten without running a worker."""
    if stage == PipelineStage.PENDING:
        return initial_stage(feature)
    if stage == PipelineStage.BACKEND_REVIEW_PASSED:
        if feature.requires_frontend_work:
            return PipelineStage.FRONTEND_DEV
        return PipelineStage.QA_TESTING
    if stage == PipelineStage.FRONTEND_REVIEW_PASSED:
        return PipelineStage.QA_TESTING
    raise ValueError(f"stage {stage.value!r} is not a pass-through stage")


def transition(stage: PipelineStage, signal: Signal) -> PipelineStage:
    """Return the stage a feature moves to when *signal* is reported in *stage*.

    The signal alone names the target: a worker stage accepts every
    recognized signal, so the mapping is total over worker stages.

    Raises:
        ValueError: If *stage* does not run a worker or *signal* is
            ``UNRECOGNIZED``.
    """
    if not is_worker_stage(stage):
        raise ValueError(f"no worker runs in stage {stage.value!r}; signals cannot be applied")
    try:
        return SIGNAL_TARGETS[signal]
    except KeyError:
        raise ValueError(f"signal {signal.value!r} has no transition") from None


def approval_for(signal: Signal) -> bool | None:
    """Approval flag recorded in history: None for developer outcomes."""
    if signal in APPROVING_SIGNALS:
        return True
    if signal in FAILURE_SIGNALS:
        return False
    return None


def select_next_pending(features: dict[str, FeatureState]) -> str | None:
    """Pick the next pending feature: lowest priority first, then insertion order."""
    candidates = [
        (feature.priority if feature.priority is not None else sys.maxsize, order, feature_id)
        for order, (feature_id, feature) in enumerate(features.items())
        if feature.state == PipelineStage.PENDING
    ]
    if not candidates:
        return None
    return min(candidates)[2]
