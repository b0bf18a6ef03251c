from importlib.metadata import version

from .errors import (
    CircuitBreakerTripped,
    InvalidStateTransition,
    MalformedProducerOutput,
    PermanentApiError,
    PlanValidationError,
    ResourceLimitExceeded,
    StepRetryLimitExceeded,
    SwarmError,
    TaskAborted,
    TaskValidationError,
    TransientApiError,
    UnsandboxedPathError,
)
from .governor import ResourceGovernor
from .llm import ChatMessage, CompletionClient, CompletionResult
from .models import (
    ApiCallRecord,
    CriticDecision,
    CriticOutput,
    Issue,
    Plan,
    Step,
    StepRecord,
    TaskAudit,
    TaskRecord,
    TaskSpecification,
    TaskState,
    VerifierReport,
)
from .orchestrator import CancellationToken, OrchestratorContext, TaskOrchestrator
from .profile import ANDROID_PROFILE, ProjectProfile
from .settings import RuntimeSettings
from .state_store import SwarmStateStore
from .workspace import WorkspaceMaterializer


def get_version() -> str:
    try:
        return version("android-swarm")
    except Exception:
        return "0.0.0"


__all__ = [
    "ANDROID_PROFILE",
    "ApiCallRecord",
    "CancellationToken",
    "ChatMessage",
    "CircuitBreakerTripped",
    "CompletionClient",
    "CompletionResult",
    "CriticDecision",
    "CriticOutput",
    "InvalidStateTransition",
    "Issue",
    "MalformedProducerOutput",
    "OrchestratorContext",
    "PermanentApiError",
    "Plan",
    "PlanValidationError",
    "ProjectProfile",
    "ResourceGovernor",
    "ResourceLimitExceeded",
    "RuntimeSettings",
    "Step",
    "StepRecord",
    "StepRetryLimitExceeded",
    "SwarmError",
    "SwarmStateStore",
    "TaskAborted",
    "TaskAudit",
    "TaskOrchestrator",
    "TaskRecord",
    "TaskSpecification",
    "TaskState",
    "TaskValidationError",
    "TransientApiError",
    "UnsandboxedPathError",
    "VerifierReport",
    "WorkspaceMaterializer",
    "get_version",
]
