"""Error taxonomy for the analysis pipeline.

Four families drive how the orchestrator reacts to a failure:

- ValidationError: bad input, rejected before a run starts
- TransientExternalError: timeout or rate limit from a collaborator,
  retried with bounded backoff at unit/stage granularity
- PartialFailure: some repos/units failed, the run still completes
- FatalFailure: nothing usable was produced, the run moves to FAILED
"""

from typing import Any, Dict, List, Optional


class WorkloomError(RuntimeError):
    """Base class for all pipeline errors."""


class ValidationError(WorkloomError, ValueError):
    """Raised when a run request is invalid (year, org, user, unsynced data)."""


class TransientExternalError(WorkloomError):
    """Raised by collaborators for retryable failures (timeouts, rate limits)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PartialFailure(WorkloomError):
    """Some items of a phase failed while others succeeded.

    Carries the failed items as ``[{"item": ..., "error": ...}]`` so the
    caller can surface them in progress and stats.
    """

    def __init__(self, message: str, failed: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.failed = failed or []


class FatalFailure(WorkloomError):
    """No usable data was produced, or the checkpoint is corrupt."""


class RunStateError(WorkloomError):
    """The requested operation is not allowed in the run's current status."""


class RunNotFoundError(WorkloomError, LookupError):
    """No analysis run exists for the given id."""
