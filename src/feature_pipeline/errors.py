"""Fatal error taxonomy for the feature pipeline.

Worker-reported failures (review failed, QA issues) are not errors here: they
are ordinary pipeline progress.  Everything below aborts the run, and carries
the current feature id and stage so the operator knows where to resume.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for fatal pipeline conditions."""

    exit_code = 1

    def __init__(self, message: str, *, feature_id: str | None = None, stage: str | None = None) -> None:
        super().__init__(message)
        self.feature_id = feature_id
        self.stage = stage

    def with_context(self, *, feature_id: str | None, stage: str | None) -> "PipelineError":
        """Fill in feature context if the raiser did not know it."""
        if self.feature_id is None:
            self.feature_id = feature_id
        if self.stage is None:
            self.stage = stage
        return self


class ConfigurationError(PipelineError):
    """Missing credentials, invalid tool selection, or a malformed state file."""

    exit_code = 4


class SignalClassificationError(PipelineError):
    """Worker output carried no completion marker from the vocabulary."""

    exit_code = 2


class SandboxProvisioningError(PipelineError):
    """The isolated environment could not be created or provisioned."""

    exit_code = 3
