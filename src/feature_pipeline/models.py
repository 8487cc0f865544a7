from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class PipelineStage(str, Enum):
    PENDING = "pending"
    BACKEND_DEV = "backend_dev"
    BACKEND_REVIEW = "backend_review"
    BACKEND_REVIEW_PASSED = "backend_review_passed"
    BACKEND_REVIEW_FAILED = "backend_review_failed"
    FRONTEND_DEV = "frontend_dev"
    FRONTEND_REVIEW = "frontend_review"
    FRONTEND_REVIEW_PASSED = "frontend_review_passed"
    FRONTEND_REVIEW_FAILED = "frontend_review_failed"
    QA_TESTING = "qa_testing"
    QA_PASSED = "qa_passed"
    QA_ISSUES_BACKEND = "qa_issues_backend"
    QA_ISSUES_FRONTEND = "qa_issues_frontend"


class WorkerRole(str, Enum):
    BACKEND_DEVELOPER = "backend_developer"
    BACKEND_REVIEWER = "backend_reviewer"
    FRONTEND_DEVELOPER = "frontend_developer"
    FRONTEND_REVIEWER = "frontend_reviewer"
    QA_ENGINEER = "qa_engineer"


class PhaseKind(str, Enum):
    REVIEW = "review"
    QA = "qa"


class Signal(str, Enum):
    """Completion markers emitted by workers (vocabulary version 1).

    Member values are the literal wire tokens.  ``UNRECOGNIZED`` is never
    emitted by a worker; the classifier returns it when no token is present.
    """

    BACKEND_DEV_COMPLETE = "BACKEND_DEV_COMPLETE"
    BACKEND_NO_WORK = "BACKEND_NO_WORK"
    BACKEND_REVIEW_PASSED = "BACKEND_REVIEW_PASSED"
    BACKEND_REVIEW_FAILED = "BACKEND_REVIEW_FAILED"
    BACKEND_REVIEW_PASSED_NO_WORK = "BACKEND_REVIEW_PASSED_NO_WORK"
    BACKEND_REVIEW_PASSED_MAX_CYCLES = "BACKEND_REVIEW_PASSED_MAX_CYCLES"
    FRONTEND_DEV_COMPLETE = "FRONTEND_DEV_COMPLETE"
    FRONTEND_NO_WORK = "FRONTEND_NO_WORK"
    FRONTEND_REVIEW_PASSED = "FRONTEND_REVIEW_PASSED"
    FRONTEND_REVIEW_FAILED = "FRONTEND_REVIEW_FAILED"
    FRONTEND_REVIEW_PASSED_NO_WORK = "FRONTEND_REVIEW_PASSED_NO_WORK"
    FRONTEND_REVIEW_PASSED_MAX_CYCLES = "FRONTEND_REVIEW_PASSED_MAX_CYCLES"
    QA_TESTING_COMPLETE = "QA_TESTING_COMPLETE"
    QA_NO_TESTING = "QA_NO_TESTING"
    QA_ISSUES_BACKEND = "QA_ISSUES_BACKEND"
    QA_ISSUES_FRONTEND = "QA_ISSUES_FRONTEND"
    QA_PASSED_MAX_CYCLES = "QA_PASSED_MAX_CYCLES"
    UNRECOGNIZED = "UNRECOGNIZED"


def _rename_legacy_keys(data: Any, renames: dict[str, str]) -> Any:
    """Map legacy key names onto current ones; null values fall back to defaults."""
    if not isinstance(data, dict):
        return data
    migrated = dict(data)
    for legacy, current in renames.items():
        if legacy in migrated:
            value = migrated.pop(legacy)
            if current not in migrated and value is not None:
                migrated[current] = value
    return migrated


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryEntry(_CamelModel):
    """One worker invocation recorded against a feature. Never mutated."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow")

    stage: PipelineStage
    actor: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    summary: str = ""
    signal: Signal | None = None
    approved: bool | None = None
    no_work: bool = False


class FeatureState(_CamelModel):
    state: PipelineStage = PipelineStage.PENDING
    review_cycle_count: int = Field(default=0, ge=0)
    history: list[HistoryEntry] = Field(default_factory=list)
    current_issues: list[str] = Field(default_factory=list)
    sandbox_handle: str | None = None
    requires_backend_work: bool = True
    requires_frontend_work: bool = True
    priority: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(
            data,
            {
                "sandboxName": "sandboxHandle",
                "requiresBackend": "requiresBackendWork",
                "requiresFrontend": "requiresFrontendWork",
            },
        )


class PipelineConfig(_CamelModel):
    """Retry ceilings, loaded once per run and never modified afterwards."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    max_review_cycles: int = Field(default=5, ge=0)
    max_qa_cycles: int = Field(default=5, ge=0, alias="maxQACycles")
    skip_after_max_review: bool = True
    skip_after_max_qa: bool = Field(default=True, alias="skipAfterMaxQA")

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(
            data,
            {
                "skipReviewAfterMax": "skipAfterMaxReview",
                "skipQAAfterMax": "skipAfterMaxQA",
            },
        )


class PipelineState(_CamelModel):
    """Root document of the state file."""

    current_feature_id: str
    features: dict[str, FeatureState]
    config: PipelineConfig = Field(default_factory=PipelineConfig)

    @model_validator(mode="before")
    @classmethod
    def _legacy_keys(cls, data: Any) -> Any:
        return _rename_legacy_keys(data, {"currentFeature": "currentFeatureId"})

    @model_validator(mode="after")
    def _current_feature_known(self) -> "PipelineState":
        if not self.features:
            raise ValueError("features must contain at least one feature")
        if self.current_feature_id not in self.features:
            raise ValueError(f"currentFeatureId {self.current_feature_id!r} is not a known feature")
        return self

    @property
    def current_feature(self) -> FeatureState:
        return self.features[self.current_feature_id]


class UserStory(_CamelModel):
    """Entry of the external requirements list. Unknown keys are kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: int | None = None
    passes: bool = False
    requires_backend: bool | None = None
    requires_frontend: bool | None = None
