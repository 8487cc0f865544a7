from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import FeatureState, PhaseKind, PipelineConfig, PipelineStage
from .state_machine import phase_kind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CycleContext:
    """Retry counters handed to the worker; the worker decides what to do at the ceiling."""

    phase: PhaseKind
    review_cycle_count: int
    max_cycles: int
    skip_after_max: bool

    @property
    def ceiling_reached(self) -> bool:
        return self.review_cycle_count >= self.max_cycles


class CycleGuard:
    """Counts failure signals per feature against the configured ceilings.

    The counter is shared by every retry-bearing phase of a feature and is
    never reset, so it reflects the feature's cumulative churn.  The guard
    only counts; approving despite failures is a worker decision reported
    through the ``*_MAX_CYCLES`` signals.
    """

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def record_failure(self, feature: FeatureState) -> int:
        feature.review_cycle_count += 1
        return feature.review_cycle_count

    @staticmethod
    def current_count(feature: FeatureState) -> int:
        return feature.review_cycle_count

    def configured_max(self, phase: PhaseKind) -> int:
        if phase == PhaseKind.QA:
            return self.config.max_qa_cycles
        return self.config.max_review_cycles

    def skip_after_max(self, phase: PhaseKind) -> bool:
        if phase == PhaseKind.QA:
            return self.config.skip_after_max_qa
        return self.config.skip_after_max_review

    def ceiling_reached(self, feature: FeatureState, phase: PhaseKind) -> bool:
        return self.current_count(feature) >= self.configured_max(phase)

    def context_for(self, feature: FeatureState, stage: PipelineStage) -> CycleContext:
        phase = phase_kind(stage)
        context = CycleContext(
            phase=phase,
            review_cycle_count=self.current_count(feature),
            max_cycles=self.configured_max(phase),
            skip_after_max=self.skip_after_max(phase),
        )
        if context.ceiling_reached:
            logger.info(
                "Cycle ceiling reached for %s phase (%d/%d); worker may approve with a MAX_CYCLES signal",
                phase.value,
                context.review_cycle_count,
                context.max_cycles,
            )
        return context
