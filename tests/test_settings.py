from pathlib import Path

import pytest

from android_swarm.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SWARM_API_TIMEOUT", "SWARM_MAX_RETRIES", "SWARM_STATE_ROOT", "SWARM_WORKSPACE_ROOT", "SWARM_DEBUG"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.api_timeout_seconds == 30
    assert settings.max_retries == 3
    assert settings.api_call_limit == 80
    assert settings.token_limit == 200_000
    assert settings.max_file_bytes == 50 * 1024
    assert settings.step_failure_policy == "abort"
    assert settings.database_path == Path("~/.openclaw").expanduser() / "swarm.db"
    assert settings.workspace_root_path == Path("~/.openclaw").expanduser() / "workspace" / "android-swarm"
    assert settings.debug is False


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SWARM_API_TIMEOUT", "45")
    monkeypatch.setenv("SWARM_MAX_RETRIES", "5")
    monkeypatch.setenv("SWARM_STATE_ROOT", str(tmp_path))
    monkeypatch.setenv("SWARM_WORKSPACE_ROOT", str(tmp_path / "out"))
    monkeypatch.setenv("SWARM_DEBUG", "1")
    monkeypatch.setenv("SWARM_STEP_FAILURE_POLICY", " Continue ")
    settings = RuntimeSettings.from_env()
    assert settings.api_timeout_seconds == 45
    assert settings.max_retries == 5
    assert settings.pid_file == tmp_path / "swarm.pid"
    assert settings.log_dir == tmp_path / "logs"
    assert settings.workspace_root_path == tmp_path / "out"
    assert settings.step_failure_policy == "continue"
    assert settings.debug is True


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("SWARM_API_TIMEOUT", "abc"),
        ("SWARM_API_TIMEOUT", "0"),
        ("SWARM_MAX_RETRIES", "-1"),
        ("SWARM_API_BASE_URL", "ftp://example.com"),
        ("SWARM_STEP_FAILURE_POLICY", "ignore"),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()
