"""Entry point for `python -m android_swarm` and the `android-swarm` CLI script."""

from __future__ import annotations

import argparse
import logging
import re
import signal
from datetime import date
from types import FrameType

from android_swarm.errors import SwarmAlreadyRunning, TaskValidationError
from android_swarm.models import TaskSpecification
from android_swarm.orchestrator import TaskOrchestrator
from android_swarm.pidfile import PidFile
from android_swarm.settings import RuntimeSettings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVEL_CHOICES = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
INTERRUPTED_TASK_MESSAGE = "Process terminated unexpectedly"

_MESSAGE_RE = re.compile(r"build app:\s*(\{.*\})", re.DOTALL)

EXAMPLE_MESSAGE = (
    'build app: {"app_name":"MyApp","features":["login","list"],"architecture":"MVVM",'
    '"ui_system":"Compose","min_sdk":24,"target_sdk":34,"gradle_version":"8.2.0","kotlin_version":"1.9.20"}'
)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="android-swarm",
        description="Generate an Android project from a task specification",
        epilog=f"Example:\n  android-swarm agent --message '{EXAMPLE_MESSAGE}'",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=LOG_LEVEL_CHOICES,
        help="Logging verbosity (default: INFO, or DEBUG when SWARM_DEBUG=1)",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)
    agent = subcommands.add_parser("agent", help="Run one build task")
    agent.add_argument(
        "--message",
        required=True,
        help="Task message of the form 'build app: <task spec json>'",
    )
    return parser.parse_args(argv)


def extract_task_spec(message: str) -> TaskSpecification:
    """Pull the JSON task specification out of a ``build app: {...}`` message.

    Raises:
        TaskValidationError: If the message carries no specification or an invalid one.
    """
    match = _MESSAGE_RE.search(message)
    if match is None:
        raise TaskValidationError('Invalid message format. Expected: build app: {"app_name":"...", ...}')
    return TaskSpecification.parse(match.group(1))


def configure_logging(settings: RuntimeSettings, log_level: str | None) -> None:
    if log_level is not None:
        level = getattr(logging, log_level)
    else:
        level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(settings.log_dir / f"swarm-{date.today():%Y-%m-%d}.log", encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(file_handler)


def _install_signal_handlers(orchestrator: TaskOrchestrator) -> None:
    def _handle(signum: int, _frame: FrameType | None) -> None:
        logging.warning("Received %s, aborting task...", signal.Signals(signum).name)
        orchestrator.abort()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(settings, args.log_level)

    try:
        spec = extract_task_spec(args.message)
    except TaskValidationError as exc:
        logging.error("Unable to load task specification: %s", exc)
        return 1

    pid_file = PidFile(settings.pid_file)
    try:
        stale = pid_file.acquire()
    except SwarmAlreadyRunning as exc:
        logging.error("%s", exc)
        return 1

    try:
        try:
            orchestrator = TaskOrchestrator(settings=settings)
        except RuntimeError as exc:
            logging.error("Unable to start: %s", exc)
            return 1

        if stale:
            interrupted = orchestrator.store.fail_interrupted_tasks(INTERRUPTED_TASK_MESSAGE)
            if interrupted:
                logging.warning("Marked %d interrupted task(s) as FAILED: %s", len(interrupted), interrupted)

        _install_signal_handlers(orchestrator)
        print(f"app_name={spec.app_name}")
        print(f"features={', '.join(spec.features)}")
        try:
            workspace_path = orchestrator.execute_task(spec)
        except Exception as exc:  # noqa: BLE001
            logging.error("Task failed: %s", exc)
            print("task_success=False")
            return 1
        finally:
            orchestrator.close()

        print("task_success=True")
        print(f"workspace={workspace_path}")
        print(f"build_command=cd {workspace_path} && ./gradlew assembleDebug")
        return 0
    finally:
        pid_file.release()


if __name__ == "__main__":
    raise SystemExit(main())
