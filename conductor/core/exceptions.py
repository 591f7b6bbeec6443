"""
Pipeline Errors
===============
Error taxonomy shared by every stage collaborator.

Propagation policy:
    - Every error bubbles to the owning PipelineRun and fails the stage.
    - TransientInfraError is retried by the caller a bounded number of times
      (see conductor.utils.retry) before it surfaces.
    - ConflictError gets exactly one retry inside the Manifest Patcher.
    - ConfigurationError is never retried.
    - Only the Notifier swallows errors.
"""
from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all conductor errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message

    @property
    def kind(self) -> str:
        return type(self).__name__


class TransientInfraError(PipelineError):
    """Network failure or timeout talking to an external collaborator."""


class GateRejectedError(PipelineError):
    """Quality gate or vulnerability scan did not pass."""


class GateTimeoutError(GateRejectedError):
    """No quality gate verdict arrived before the deadline."""


class ConflictError(PipelineError):
    """The GitOps repository moved between read and write."""


class ConfigurationError(PipelineError):
    """Missing credential or endpoint. Fatal, never retried."""


class ArtifactTagError(PipelineError):
    """A run may not be tagged, or its tag is owned by another run."""


class ManifestFieldError(PipelineError):
    """The structural field path does not resolve to a scalar in the manifest."""


class InvalidTransitionError(PipelineError):
    """A PipelineRun state change that the state machine does not allow."""


class StageFailedError(PipelineError):
    """A collaborator reported failure without a more specific error."""
