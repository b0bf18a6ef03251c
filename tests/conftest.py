from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from android_swarm.settings import RuntimeSettings

from helpers import PLAN_PAYLOAD, SPEC_PAYLOAD, RoleChatModel, ScriptedChatModel, StatusError


@pytest.fixture
def spec_payload() -> dict[str, Any]:
    return json.loads(json.dumps(SPEC_PAYLOAD))


@pytest.fixture
def plan_payload() -> list[dict[str, Any]]:
    return json.loads(json.dumps(PLAN_PAYLOAD))


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(state_root=str(tmp_path / "state"))


@pytest.fixture
def role_model() -> Callable[..., RoleChatModel]:
    return RoleChatModel


@pytest.fixture
def scripted_model() -> Callable[[list[Any]], ScriptedChatModel]:
    return ScriptedChatModel


@pytest.fixture
def status_error() -> Callable[[int], StatusError]:
    return StatusError
