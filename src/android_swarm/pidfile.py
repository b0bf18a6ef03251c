from __future__ import annotations

import logging
import os
from pathlib import Path

from .errors import SwarmAlreadyRunning
from .workspace import atomic_write_text

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


def _read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class PidFile:
    """Single-process guard for the CLI.

    ``acquire`` returns ``True`` when it replaced a PID file left behind by a
    dead process, so the caller can fail that process's interrupted tasks.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self) -> bool:
        stale = False
        if self.path.exists():
            pid = _read_pid(self.path)
            if pid is not None and pid != os.getpid() and _pid_alive(pid):
                raise SwarmAlreadyRunning(pid)
            logger.warning("Removing stale PID file %s (pid %s)", self.path, pid)
            stale = True
        atomic_write_text(self.path, str(os.getpid()))
        self._held = True
        return stale

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if _read_pid(self.path) == os.getpid():
            self.path.unlink(missing_ok=True)

    def __enter__(self) -> "PidFile":
        self.acquire()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.release()
