"""Error taxonomy for job orchestration."""


class JobNotFoundError(Exception):
    """Raised when a job id does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class StaleWriteError(Exception):
    """Raised when an update loses a version compare-and-swap."""

    def __init__(self, job_id: str, expected_version: int):
        super().__init__(f"Job {job_id} was modified concurrently (expected version {expected_version})")
        self.job_id = job_id
        self.expected_version = expected_version


class ProviderError(Exception):
    """Base class for generation provider failures."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class TransientProviderError(ProviderError):
    """Timeouts, rate limits and 5xx responses. Retried in place."""


class StructuralProviderError(ProviderError):
    """The provider is unusable for this request. Triggers escalation."""


class ProviderValidationError(ProviderError):
    """The provider answered with a malformed payload. Never retried."""


class StepValidationError(Exception):
    """Missing metadata for a step, or an illegal step transition."""


class PlannerNonComplianceError(Exception):
    """The planner returned no tool call."""


class DispatchError(Exception):
    """A self-invocation or delegation could not be handed off."""


class EscalationError(Exception):
    """Switching a job to its fallback provider failed."""
