from typing import Any

import pytest

from android_swarm.errors import PlanValidationError, UnsandboxedPathError
from android_swarm.models import TaskSpecification
from android_swarm.planning import parse_plan
from android_swarm.profile import ANDROID_PROFILE


def _parse(payload: Any, spec_payload: dict[str, Any]):
    return parse_plan(payload, TaskSpecification.parse(spec_payload), ANDROID_PROFILE)


def test_valid_plan_is_accepted(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan = _parse(plan_payload, spec_payload)
    assert len(plan) == 3
    assert plan.steps[2].dependencies == (1, 2)
    assert plan.file_paths[1] == "app/src/main/AndroidManifest.xml"


def test_duplicate_step_numbers_are_rejected(
    plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]
) -> None:
    plan_payload[2]["step_number"] = 2
    plan_payload[2]["dependencies"] = [1]
    with pytest.raises(PlanValidationError, match="Duplicate step_number: 2"):
        _parse(plan_payload, spec_payload)


def test_forward_dependency_is_rejected(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan_payload[1]["dependencies"] = [3]
    with pytest.raises(PlanValidationError, match="depends on step 3"):
        _parse(plan_payload, spec_payload)


def test_self_dependency_is_rejected(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan_payload[0]["dependencies"] = [1]
    with pytest.raises(PlanValidationError):
        _parse(plan_payload, spec_payload)


@pytest.mark.parametrize(
    "file_path",
    ["/etc/passwd", "../outside.kt", "app/../../escape.kt", "C:/Windows/evil.kt", ".", "./", "app/src/"],
)
def test_unsandboxed_paths_are_rejected(
    plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any], file_path: str
) -> None:
    plan_payload[2]["file_path"] = file_path
    with pytest.raises(UnsandboxedPathError):
        _parse(plan_payload, spec_payload)


def test_dotted_file_names_are_not_traversal(
    plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]
) -> None:
    plan_payload[2]["file_path"] = "app/src/main/res/values/strings..xml"
    plan = _parse(plan_payload, spec_payload)
    assert plan.steps[2].file_path.endswith("strings..xml")


def test_plan_without_manifest_is_rejected(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan_payload[1]["file_path"] = "app/src/main/res/layout/activity_main.xml"
    plan_payload[1]["file_type"] = "xml"
    with pytest.raises(PlanValidationError, match="Plan missing AndroidManifest.xml"):
        _parse(plan_payload, spec_payload)


def test_plan_without_build_config_is_rejected(
    plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]
) -> None:
    plan_payload[0]["file_path"] = "app/src/main/java/com/example/notes/App.kt"
    plan_payload[0]["file_type"] = "kotlin"
    with pytest.raises(PlanValidationError, match="Plan missing gradle build files"):
        _parse(plan_payload, spec_payload)


def test_plan_missing_a_feature_is_rejected(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan_payload[2]["description"] = "Main activity hosting the login screen"
    with pytest.raises(PlanValidationError, match="Plan does not cover feature: note list"):
        _parse(plan_payload, spec_payload)


def test_feature_coverage_is_case_insensitive(
    plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]
) -> None:
    plan_payload[2]["description"] = "LOGIN screen and NOTE LIST screen"
    assert len(_parse(plan_payload, spec_payload)) == 3


def test_unknown_file_type_is_rejected(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    plan_payload[2]["file_type"] = "java"
    with pytest.raises(PlanValidationError, match="unknown file_type"):
        _parse(plan_payload, spec_payload)


def test_plan_shape_is_enforced(plan_payload: list[dict[str, Any]], spec_payload: dict[str, Any]) -> None:
    with pytest.raises(PlanValidationError, match="JSON array"):
        _parse({"steps": plan_payload}, spec_payload)
    with pytest.raises(PlanValidationError, match="1-25 steps"):
        _parse([], spec_payload)
    with pytest.raises(PlanValidationError, match="1-25 steps"):
        _parse(plan_payload * 9, spec_payload)
