"""
Error types for the node maintenance operator.

Two families live here:
- The taxonomy (NotFoundError, ConflictError, PolicyError, TransportError,
  TaskFailedError) describes *what* went wrong.
- The step errors (DrainError, DispatchError, ...) describe *where* it went
  wrong. Each step error carries the node name and the classified cause.

Nothing in this module retries. Callers decide what a failure means.
"""

from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

# ==================== Taxonomy ====================


class MaintenanceError(Exception):
    """Base class for every error raised by the operator."""


class NotFoundError(MaintenanceError):
    """Target object is absent."""


class ConflictError(MaintenanceError):
    """Object was modified concurrently."""


class PolicyError(MaintenanceError):
    """Operation refused by cluster policy (PodDisruptionBudget, drain filters)."""


class TransportError(MaintenanceError):
    """Connectivity or unexpected API failure."""


class TaskFailedError(MaintenanceError):
    """The maintenance Job reported a failed pod."""

    def __init__(self, job_name: str, failed: int):
        super().__init__(f"Job {job_name} failed ({failed} failed pod(s))")
        self.job_name = job_name
        self.failed = failed


def classify_api_error(exc: Exception) -> MaintenanceError:
    """
    Map a Kubernetes client exception onto the error taxonomy.

    Args:
        exc: ApiException, urllib3 HTTPError, or an already classified error

    Returns:
        MaintenanceError subclass instance describing the failure
    """
    if isinstance(exc, MaintenanceError):
        return exc

    if isinstance(exc, ApiException):
        detail = f"{exc.status} {exc.reason}"
        if exc.status == 404:
            return NotFoundError(detail)
        if exc.status == 409:
            return ConflictError(detail)
        if exc.status == 429:
            return PolicyError(detail)
        return TransportError(detail)

    if isinstance(exc, HTTPError):
        return TransportError(str(exc))

    return TransportError(repr(exc))


# ==================== Step Errors ====================


class StepError(MaintenanceError):
    """A maintenance step failed for a node."""

    step = "step"

    def __init__(self, node_name: str, cause: Optional[Exception] = None):
        self.node_name = node_name
        self.cause = classify_api_error(cause) if cause is not None else None
        message = f"{self.step} failed for node '{node_name}'"
        if self.cause is not None:
            message += f": {type(self.cause).__name__}: {self.cause}"
        super().__init__(message)


class DrainError(StepError):
    step = "drain"


class DispatchError(StepError):
    step = "dispatch"


class PollError(StepError):
    step = "job poll"


class UncordonError(StepError):
    step = "uncordon"


class ReadinessError(StepError):
    step = "readiness check"


class AnnotateError(StepError):
    step = "annotate"


class WaitNotReady(MaintenanceError):
    """A wait ended by timeout or cancellation instead of reaching its goal."""

    def __init__(self, description: str, outcome):
        super().__init__(f"{description} {outcome.value}")
        self.outcome = outcome
