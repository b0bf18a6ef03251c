"""Message assembly for the four producers.

Every builder returns the ordered ``system``/``user`` pair sent through the
completion client.  The JSON shapes spelled out here are the ones decoded in
``producers.py``.
"""

from __future__ import annotations

import json
from typing import Sequence

from .llm import ChatMessage
from .models import MAX_PLAN_STEPS, Issue, Step, TaskSpecification
from .profile import ProjectProfile

_JSON_ONLY = "Output valid JSON only. No markdown fences. No explanation."


def _spec_json(spec: TaskSpecification) -> str:
    return json.dumps(spec.model_dump(mode="json"), indent=2)


def planner_messages(spec: TaskSpecification, profile: ProjectProfile) -> list[ChatMessage]:
    file_types = "|".join(sorted(profile.file_types))
    user = (
        f"Task: {_spec_json(spec)}\n\n"
        "Output a plan as a JSON array with this schema:\n"
        "[\n"
        "  {\n"
        '    "step_number": 1,\n'
        '    "phase": "foundation|feature|integration|finalization",\n'
        '    "file_path": "relative/path/File.kt",\n'
        f'    "file_type": "{file_types}",\n'
        '    "dependencies": [],\n'
        '    "description": "Brief description"\n'
        "  }\n"
        "]\n\n"
        "Constraints:\n"
        f"- 1-{MAX_PLAN_STEPS} steps total\n"
        f"- Cover all features, naming each one in a step description: {', '.join(spec.features)}\n"
        f"- Use architecture: {spec.architecture.value}\n"
        f"- UI system: {spec.ui_system.value}\n"
        "- No invented features\n"
        "- Dependencies list step_number values of earlier steps only\n"
        "- File paths must be relative, with no leading slash and no '..' segments\n"
        f"- Must include {profile.manifest_filename}, {profile.build_config_file_type} build files "
        "and all necessary project structure\n\n"
        f"Coding Profile:\n{profile.coding_guidelines}"
    )
    return [
        ChatMessage(role="system", content=f"You are a planning agent. {_JSON_ONLY}"),
        ChatMessage(role="user", content=user),
    ]


def coder_messages(
    step: Step,
    spec: TaskSpecification,
    completed_files: Sequence[str],
    prior_issues: Sequence[Issue] | None,
    profile: ProjectProfile,
    *,
    max_output_tokens: int,
) -> list[ChatMessage]:
    completed = "\n".join(completed_files) if completed_files else "None"
    user = (
        f"Generate file: {step.file_path}\n"
        f"Type: {step.file_type}\n"
        f"Description: {step.description}\n\n"
        f"Task Spec:\n{_spec_json(spec)}\n\n"
        f"Architecture: {spec.architecture.value}\n"
        f"UI System: {spec.ui_system.value}\n"
        f"Min SDK: {spec.min_sdk}\n"
        f"Target SDK: {spec.target_sdk}\n"
        f"Kotlin Version: {spec.kotlin_version}\n"
        f"Gradle Version: {spec.gradle_version}\n\n"
        f"Dependencies (already completed):\n{completed}\n"
    )
    if prior_issues:
        issues_json = json.dumps([issue.model_dump(mode="json") for issue in prior_issues], indent=2)
        user += (
            f"\nPrior Rejection:\n{issues_json}\n\n"
            "You must address all BLOCKER issues. Fix the problems identified in the prior rejection.\n"
        )
    user += (
        "\nConstraints:\n"
        "- Complete, buildable file only\n"
        "- Follow the coding profile below\n"
        "- No placeholders or TODOs\n"
        f"- Max {max_output_tokens} tokens\n"
        "- Output raw file content, no markdown fences\n\n"
        f"Coding Profile:\n{profile.coding_guidelines}"
    )
    return [
        ChatMessage(
            role="system",
            content=(
                "You are a code generation agent. Output only the complete file content. "
                "No markdown fences. No explanation. No comments outside code."
            ),
        ),
        ChatMessage(role="user", content=user),
    ]


def critic_messages(
    step: Step,
    content: str,
    spec: TaskSpecification,
    profile: ProjectProfile,
) -> list[ChatMessage]:
    criteria = "\n".join(f"- {criterion}" for criterion in profile.review_criteria)
    user = (
        f"Review this file:\nPath: {step.file_path}\nContent:\n{content}\n\n"
        f"Expected:\n{step.description}\n\n"
        f"Task Spec:\n{_spec_json(spec)}\n\n"
        f"Coding Profile:\n{profile.coding_guidelines}\n"
        "Output JSON:\n"
        "{\n"
        '  "decision": "ACCEPT" | "REJECT",\n'
        '  "issues": [\n'
        '    {"severity": "BLOCKER" | "MAJOR" | "MINOR", "line": <number or null>, "message": "Description"}\n'
        "  ]\n"
        "}\n\n"
        f"Reject only for:\n{criteria}\n\n"
        "Accept if functionally correct even if style is imperfect."
    )
    return [
        ChatMessage(role="system", content=f"You are a code review agent. {_JSON_ONLY}"),
        ChatMessage(role="user", content=user),
    ]


def verifier_messages(
    files: Sequence[str],
    spec: TaskSpecification,
    profile: ProjectProfile,
) -> list[ChatMessage]:
    user = (
        "Verify complete project:\nFiles:\n"
        + "\n".join(files)
        + f"\n\nTask Spec:\n{_spec_json(spec)}\n\n"
        "Output JSON:\n"
        '{\n  "warnings": ["warning1"],\n  "missing_items": ["item1"],\n  "quality_score": 0.0-1.0\n}\n\n'
        "Check:\n"
        f"- All features implemented: {', '.join(spec.features)}\n"
        f"- {profile.manifest_filename} present and valid\n"
        f"- {profile.build_config_file_type} build files present\n"
        "- No missing dependencies\n"
        f"- Architecture consistency ({spec.architecture.value})\n"
        f"- UI system consistency ({spec.ui_system.value})\n\n"
        "Provide quality_score between 0.0 and 1.0 based on completeness and consistency."
    )
    return [
        ChatMessage(role="system", content=f"You are a verification agent. {_JSON_ONLY}"),
        ChatMessage(role="user", content=user),
    ]
