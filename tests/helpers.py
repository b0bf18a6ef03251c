"""Fake chat models and canned payloads shared by the test modules."""

from __future__ import annotations

import json
from typing import Any

from langchain_core.messages import AIMessage

def reply(content: str, *, prompt_tokens: int = 10, completion_tokens: int = 5) -> AIMessage:
    return AIMessage(
        content=content,
        usage_metadata={
            "input_tokens": prompt_tokens,
            "output_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    )


class StatusError(Exception):
    """Stand-in for an HTTP error raised by the chat model client."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class ScriptedChatModel:
    """Returns scripted replies in order; exceptions in the script are raised."""

    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls: list[Any] = []

    def invoke(self, input: Any) -> Any:
        self.calls.append(input)
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, AIMessage):
            return item
        return reply(item)


_ROLE_MARKERS = {
    "planning agent": "planner",
    "code generation agent": "coder",
    "code review agent": "critic",
    "verification agent": "verifier",
}


class RoleChatModel:
    """Routes each request to a per-producer script by its system prompt.

    The last entry of a script repeats once the others are consumed.
    """

    def __init__(self, **scripts: list[Any]) -> None:
        self.scripts = {role: list(items) for role, items in scripts.items()}
        self.calls: list[str] = []

    def invoke(self, input: Any) -> Any:
        system = input[0].content
        role = next(name for marker, name in _ROLE_MARKERS.items() if marker in system)
        self.calls.append(role)
        queue = self.scripts[role]
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return reply(item)


SPEC_PAYLOAD: dict[str, Any] = {
    "app_name": "NotesApp",
    "features": ["login", "note list"],
    "architecture": "MVVM",
    "ui_system": "Compose",
    "min_sdk": 24,
    "target_sdk": 34,
    "gradle_version": "8.2.0",
    "kotlin_version": "1.9.20",
}

PLAN_PAYLOAD: list[dict[str, Any]] = [
    {
        "step_number": 1,
        "phase": "foundation",
        "file_path": "app/build.gradle.kts",
        "file_type": "gradle",
        "dependencies": [],
        "description": "Gradle build configuration for the app module",
    },
    {
        "step_number": 2,
        "phase": "foundation",
        "file_path": "app/src/main/AndroidManifest.xml",
        "file_type": "manifest",
        "dependencies": [1],
        "description": "Application manifest with launcher activity",
    },
    {
        "step_number": 3,
        "phase": "feature",
        "file_path": "app/src/main/java/com/example/notes/MainActivity.kt",
        "file_type": "kotlin",
        "dependencies": [1, 2],
        "description": "Main activity hosting the login screen and the note list",
    },
]

ACCEPT = json.dumps({"decision": "ACCEPT", "issues": []})
REJECT = json.dumps(
    {"decision": "REJECT", "issues": [{"severity": "BLOCKER", "line": 3, "message": "Missing import"}]}
)
REPORT = json.dumps({"warnings": [], "missing_items": [], "quality_score": 0.9})
