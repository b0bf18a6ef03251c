import json
import logging
import os
import signal
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from android_swarm import __main__ as cli
from android_swarm.errors import SwarmAlreadyRunning, TaskValidationError
from android_swarm.pidfile import PidFile

from helpers import SPEC_PAYLOAD


class FakeStore:
    def __init__(self) -> None:
        self.failed_messages: list[str] = []

    def fail_interrupted_tasks(self, message: str) -> list[str]:
        self.failed_messages.append(message)
        return ["old-task"]


class FakeOrchestrator:
    instances: list["FakeOrchestrator"] = []

    def __init__(self, *, settings: Any) -> None:
        self.settings = settings
        self.store = FakeStore()
        self.aborted = False
        self.closed = False
        self.executed: list[Any] = []
        FakeOrchestrator.instances.append(self)

    def execute_task(self, spec: Any) -> Path:
        self.executed.append(spec)
        return self.settings.workspace_root_path / "task-1"

    def abort(self) -> None:
        self.aborted = True

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[dict[int, Callable[..., None]]]:
    monkeypatch.setenv("SWARM_STATE_ROOT", str(tmp_path / "state"))
    monkeypatch.delenv("SWARM_WORKSPACE_ROOT", raising=False)
    monkeypatch.chdir(tmp_path)
    handlers: dict[int, Callable[..., None]] = {}
    monkeypatch.setattr(signal, "signal", lambda signum, handler: handlers.__setitem__(signum, handler))
    root = logging.getLogger()
    before = list(root.handlers)
    yield handlers
    for handler in root.handlers[:]:
        if handler not in before:
            root.removeHandler(handler)
            handler.close()


def _message() -> str:
    return "build app: " + json.dumps(SPEC_PAYLOAD)


def test_extract_task_spec_from_message() -> None:
    spec = cli.extract_task_spec("please build app:\n" + json.dumps(SPEC_PAYLOAD))
    assert spec.app_name == "NotesApp"
    assert spec.features == ("login", "note list")


@pytest.mark.parametrize("message", ["make me an app", 'build app: {"app_name": "x"', "build app: {\"app_name\": 1}"])
def test_extract_task_spec_rejects_bad_messages(message: str) -> None:
    with pytest.raises(TaskValidationError):
        cli.extract_task_spec(message)


def test_main_runs_task_and_prints_workspace(
    cli_env: dict[int, Callable[..., None]],
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    FakeOrchestrator.instances.clear()
    monkeypatch.setattr(cli, "TaskOrchestrator", FakeOrchestrator)

    assert cli.main(["agent", "--message", _message()]) == 0

    orchestrator = FakeOrchestrator.instances[0]
    assert orchestrator.executed[0].app_name == "NotesApp"
    assert orchestrator.closed
    assert orchestrator.store.failed_messages == []
    output = capsys.readouterr().out
    assert "task_success=True" in output
    assert f"workspace={tmp_path / 'state' / 'workspace' / 'android-swarm' / 'task-1'}" in output
    assert not (tmp_path / "state" / "swarm.pid").exists()
    assert list((tmp_path / "state" / "logs").glob("swarm-*.log"))

    cli_env[signal.SIGTERM](signal.SIGTERM, None)
    assert orchestrator.aborted


def test_main_fails_interrupted_tasks_after_stale_pid_file(
    cli_env: dict[int, Callable[..., None]], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    FakeOrchestrator.instances.clear()
    monkeypatch.setattr(cli, "TaskOrchestrator", FakeOrchestrator)
    pid_path = tmp_path / "state" / "swarm.pid"
    pid_path.parent.mkdir(parents=True)
    pid_path.write_text("not-a-pid", encoding="utf-8")

    assert cli.main(["agent", "--message", _message()]) == 0
    assert FakeOrchestrator.instances[0].store.failed_messages == [cli.INTERRUPTED_TASK_MESSAGE]


def test_main_refuses_to_run_beside_live_process(
    cli_env: dict[int, Callable[..., None]], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    FakeOrchestrator.instances.clear()
    monkeypatch.setattr(cli, "TaskOrchestrator", FakeOrchestrator)
    pid_path = tmp_path / "state" / "swarm.pid"
    pid_path.parent.mkdir(parents=True)
    pid_path.write_text(str(os.getppid()), encoding="utf-8")

    assert cli.main(["agent", "--message", _message()]) == 1
    assert FakeOrchestrator.instances == []
    assert pid_path.read_text(encoding="utf-8") == str(os.getppid())


def test_main_without_api_key_exits_nonzero(
    cli_env: dict[int, Callable[..., None]], monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.delenv("KIMI_API_KEY", raising=False)
    assert cli.main(["agent", "--message", _message()]) == 1
    assert not (tmp_path / "state" / "swarm.pid").exists()


def test_main_with_invalid_message_exits_nonzero(cli_env: dict[int, Callable[..., None]]) -> None:
    assert cli.main(["agent", "--message", "build something"]) == 1


def test_pid_file_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "swarm.pid"
    pid_file = PidFile(path)
    assert pid_file.acquire() is False
    assert path.read_text(encoding="utf-8") == str(os.getpid())
    pid_file.release()
    assert not path.exists()


def test_pid_file_held_by_live_process_blocks(tmp_path: Path) -> None:
    path = tmp_path / "swarm.pid"
    path.write_text(str(os.getppid()), encoding="utf-8")
    with pytest.raises(SwarmAlreadyRunning):
        PidFile(path).acquire()
