from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from .errors import PlanValidationError
from .models import MAX_PLAN_STEPS, Plan, Step, TaskSpecification
from .profile import ProjectProfile
from .workspace import ensure_sandboxed_path


def parse_plan(payload: Any, spec: TaskSpecification, profile: ProjectProfile) -> Plan:
    """Build a ``Plan`` from decoded planner JSON, validating as it goes.

    Step numbers are checked for uniqueness and dependencies for backward
    references while each step is read, so the first offending step is the
    one reported.  Coverage checks run once the whole plan is known.

    Raises:
        PlanValidationError: On any shape, ordering or coverage violation.
        UnsandboxedPathError: If a file path is absolute or traverses upward.
    """
    if not isinstance(payload, list):
        raise PlanValidationError(f"Plan must be a JSON array, got {type(payload).__name__}")
    if not 1 <= len(payload) <= MAX_PLAN_STEPS:
        raise PlanValidationError(f"Plan must contain 1-{MAX_PLAN_STEPS} steps, got {len(payload)}")

    declared: set[int] = set()
    steps: list[Step] = []
    for index, raw_step in enumerate(payload):
        if not isinstance(raw_step, dict):
            raise PlanValidationError(f"Plan entry {index} must be an object")
        try:
            step = Step.model_validate(raw_step)
        except ValidationError as exc:
            raise PlanValidationError(f"Plan entry {index} is invalid: {exc}") from exc

        if step.step_number in declared:
            raise PlanValidationError(f"Duplicate step_number: {step.step_number}")
        ensure_sandboxed_path(step.file_path)
        if step.file_type not in profile.file_types:
            allowed = ", ".join(sorted(profile.file_types))
            raise PlanValidationError(
                f"Step {step.step_number} has unknown file_type {step.file_type!r} (expected one of: {allowed})"
            )
        for dependency in step.dependencies:
            if dependency not in declared:
                raise PlanValidationError(
                    f"Step {step.step_number} depends on step {dependency} which is not declared before it"
                )

        declared.add(step.step_number)
        steps.append(step)

    plan = Plan(steps=tuple(steps))
    validate_plan_coverage(plan, spec, profile)
    return plan


def validate_plan_coverage(plan: Plan, spec: TaskSpecification, profile: ProjectProfile) -> None:
    descriptions = " ".join(step.description.lower() for step in plan.steps)
    for feature in spec.features:
        if feature.lower() not in descriptions:
            raise PlanValidationError(f"Plan does not cover feature: {feature}")

    if not any(profile.is_manifest(step.file_path) for step in plan.steps):
        raise PlanValidationError(f"Plan missing {profile.manifest_filename}")

    if not any(profile.is_build_config(step.file_type) for step in plan.steps):
        raise PlanValidationError(f"Plan missing {profile.build_config_file_type} build files")
