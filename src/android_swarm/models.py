from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .errors import TaskValidationError

_APP_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")
_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+$")

MIN_SUPPORTED_SDK = 21
MAX_SUPPORTED_SDK = 34
MAX_FEATURES = 10
MAX_PLAN_STEPS = 25


class TaskState(str, Enum):
    PLANNING = "PLANNING"
    EXECUTING = "EXECUTING"
    VERIFYING = "VERIFYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskState.COMPLETED, TaskState.FAILED}


TASK_STATE_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PLANNING: frozenset({TaskState.EXECUTING, TaskState.FAILED}),
    TaskState.EXECUTING: frozenset({TaskState.VERIFYING, TaskState.FAILED}),
    TaskState.VERIFYING: frozenset({TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
}


class Architecture(str, Enum):
    MVVM = "MVVM"
    MVP = "MVP"
    MVI = "MVI"


class UiSystem(str, Enum):
    VIEWS = "Views"
    COMPOSE = "Compose"


class StepPhase(str, Enum):
    FOUNDATION = "foundation"
    FEATURE = "feature"
    INTEGRATION = "integration"
    FINALIZATION = "finalization"


class CriticDecision(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"


class IssueSeverity(str, Enum):
    BLOCKER = "BLOCKER"
    MAJOR = "MAJOR"
    MINOR = "MINOR"


class TaskSpecification(BaseModel):
    """Immutable app request validated once at task creation."""

    model_config = ConfigDict(frozen=True)

    app_name: str
    features: tuple[str, ...]
    architecture: Architecture
    ui_system: UiSystem
    min_sdk: int
    target_sdk: int
    gradle_version: str
    kotlin_version: str

    @field_validator("app_name")
    @classmethod
    def _check_app_name(cls, value: str) -> str:
        if not _APP_NAME_RE.match(value):
            raise ValueError("app_name must be non-empty and contain only letters, digits and underscores")
        return value

    @field_validator("features")
    @classmethod
    def _check_features(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if not 1 <= len(value) <= MAX_FEATURES:
            raise ValueError(f"features must contain between 1 and {MAX_FEATURES} entries")
        if any(not feature.strip() for feature in value):
            raise ValueError("features must be non-empty strings")
        return value

    @field_validator("min_sdk")
    @classmethod
    def _check_min_sdk(cls, value: int) -> int:
        if not MIN_SUPPORTED_SDK <= value <= MAX_SUPPORTED_SDK:
            raise ValueError(f"min_sdk must be between {MIN_SUPPORTED_SDK} and {MAX_SUPPORTED_SDK}")
        return value

    @field_validator("gradle_version", "kotlin_version")
    @classmethod
    def _check_semver(cls, value: str) -> str:
        if not _SEMVER_RE.match(value):
            raise ValueError("version must use MAJOR.MINOR.PATCH format")
        return value

    @model_validator(mode="after")
    def _check_target_sdk(self) -> "TaskSpecification":
        if not self.min_sdk <= self.target_sdk <= MAX_SUPPORTED_SDK:
            raise ValueError(f"target_sdk must be between min_sdk and {MAX_SUPPORTED_SDK}")
        return self

    @classmethod
    def parse(cls, raw: Mapping[str, Any] | str) -> "TaskSpecification":
        """Validate a raw mapping or JSON document into a task specification.

        Raises:
            TaskValidationError: If any field is missing or out of bounds.
        """
        try:
            if isinstance(raw, str):
                return cls.model_validate_json(raw)
            return cls.model_validate(dict(raw))
        except ValidationError as exc:
            raise TaskValidationError(f"Invalid task specification: {exc}") from exc


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_number: int
    phase: StepPhase
    file_path: str
    file_type: str
    dependencies: tuple[int, ...] = ()
    description: str

    @field_validator("step_number")
    @classmethod
    def _check_step_number(cls, value: int) -> int:
        if value < 1:
            raise ValueError("step_number must be a positive integer")
        return value

    @field_validator("file_path", "file_type", "description")
    @classmethod
    def _check_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be a non-empty string")
        return value


class Plan(BaseModel):
    """Ordered steps produced by the planner; always built through ``parse_plan``."""

    model_config = ConfigDict(frozen=True)

    steps: tuple[Step, ...]

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def file_paths(self) -> list[str]:
        return [step.file_path for step in self.steps]

    def to_payload(self) -> list[dict[str, Any]]:
        return [step.model_dump(mode="json") for step in self.steps]


class Issue(BaseModel):
    severity: IssueSeverity
    line: int | None = None
    message: str


class CriticOutput(BaseModel):
    decision: CriticDecision
    issues: list[Issue]

    @classmethod
    def accept(cls) -> "CriticOutput":
        return cls(decision=CriticDecision.ACCEPT, issues=[])


class VerifierReport(BaseModel):
    warnings: list[str]
    missing_items: list[str]
    quality_score: float

    @field_validator("quality_score")
    @classmethod
    def _check_score(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("quality_score must be within [0.0, 1.0]")
        return value


class StepAttempt(BaseModel):
    """Per-step retry record; a fresh one is created for every step."""

    step: Step
    attempt: int = 0
    content: str | None = None
    decision: CriticDecision | None = None
    issues: list[Issue] | None = None


class TaskRecord(BaseModel):
    task_id: str
    state: TaskState
    task_spec: str
    plan: str | None = None
    api_call_count: int = 0
    total_tokens: int = 0
    start_time: datetime
    end_time: datetime | None = None
    error_message: str | None = None


class StepRecord(BaseModel):
    task_id: str
    step_number: int
    file_path: str
    attempt: int
    generated_content: str | None = None
    critic_decision: CriticDecision | None = None
    critic_issues: list[Issue] | None = None
    timestamp: datetime


class ApiCallRecord(BaseModel):
    task_id: str
    producer: Literal["planner", "coder", "critic", "verifier"]
    prompt_tokens: int
    completion_tokens: int
    timestamp: datetime


class TaskAudit(BaseModel):
    """Audit trail reconstructed from the durable store."""

    task: TaskRecord
    attempts: list[StepRecord]
    api_calls: list[ApiCallRecord]

    @property
    def accepted_steps(self) -> list[int]:
        return [record.step_number for record in self.attempts if record.critic_decision == CriticDecision.ACCEPT]

    @property
    def prompt_tokens(self) -> int:
        return sum(call.prompt_tokens for call in self.api_calls)

    @property
    def completion_tokens(self) -> int:
        return sum(call.completion_tokens for call in self.api_calls)
