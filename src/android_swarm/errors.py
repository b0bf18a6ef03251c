"""Error taxonomy for the swarm pipeline.

Fatal errors unwind to ``TaskOrchestrator.execute_task`` which records the
task as ``FAILED`` and re-raises.  Recoverable producer failures (critic and
verifier output problems) never surface here; they are absorbed by the
producer's failure policy.
"""

from __future__ import annotations

from typing import Literal

ErrorClassification = Literal["permanent", "rate_limit", "server_error", "timeout", "transient"]


class SwarmError(RuntimeError):
    """Base class for every error raised by the swarm core."""


class TaskValidationError(SwarmError, ValueError):
    """Raised when a task specification is malformed."""


class PlanValidationError(TaskValidationError):
    """Raised when planner output does not describe an executable plan."""


class UnsandboxedPathError(PlanValidationError):
    """Raised when a file path is absolute or escapes the task workspace."""


class ApiError(SwarmError):
    """Completion-service failure carrying its retry classification."""

    def __init__(
        self,
        message: str,
        *,
        classification: ErrorClassification,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.classification = classification
        self.status_code = status_code


class TransientApiError(ApiError):
    """Timeout, rate limit, server error or unclassified transport failure."""


class PermanentApiError(ApiError):
    """Non-retriable client error (4xx other than 429) or unusable response."""


class MalformedProducerOutput(SwarmError):
    """Raised when a producer response cannot be decoded into its contract."""

    def __init__(self, producer: str, message: str) -> None:
        super().__init__(f"{producer} output is malformed: {message}")
        self.producer = producer


class ResourceLimitExceeded(SwarmError):
    """Raised by the resource governor when a task budget is exhausted."""

    def __init__(self, budget: str, message: str) -> None:
        super().__init__(message)
        self.budget = budget


class StepRetryLimitExceeded(SwarmError):
    """Raised when one step exhausts its attempt cap without acceptance."""

    def __init__(self, step_number: int) -> None:
        super().__init__(f"Step {step_number} exceeded retry limit")
        self.step_number = step_number


class CircuitBreakerTripped(SwarmError):
    """Raised when consecutive steps keep exhausting their attempt caps."""

    def __init__(self, consecutive_failures: int) -> None:
        super().__init__(f"Circuit breaker: {consecutive_failures} consecutive step failures")
        self.consecutive_failures = consecutive_failures


class TaskAborted(SwarmError):
    """Raised when cooperative cancellation is observed at a step boundary."""

    def __init__(self, message: str = "Task aborted by user") -> None:
        super().__init__(message)


class InvalidStateTransition(SwarmError):
    """Raised when a task state change is not permitted by the state machine."""


class SwarmAlreadyRunning(SwarmError):
    """Raised when another live process holds the PID file."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"Another android-swarm process is already running (pid {pid})")
        self.pid = pid
