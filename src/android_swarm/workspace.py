"""Sandboxed per-task workspace holding accepted generated files.

Layout::

    <workspace_root>/<task_id>/<plan-declared relative path>

Every write goes to a temporary sibling first and is moved into place with
``os.replace`` so a crash mid-write never leaves a partial file at its final
path.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath

from .errors import UnsandboxedPathError

logger = logging.getLogger(__name__)

_TEMP_SUFFIX = ".tmp"


def ensure_sandboxed_path(file_path: str) -> PurePosixPath:
    """Validate a workspace-relative path and return it in POSIX form.

    Raises:
        UnsandboxedPathError: If the path is empty, absolute, names a
            directory, or contains a parent-directory segment.
    """
    if not file_path or not file_path.strip():
        raise UnsandboxedPathError("File path must be non-empty")
    if "\x00" in file_path:
        raise UnsandboxedPathError(f"File path contains a NUL byte: {file_path!r}")
    if file_path.startswith(("/", "\\")):
        raise UnsandboxedPathError(f"Absolute paths not allowed: {file_path}")
    segments = file_path.replace("\\", "/").split("/")
    if ".." in segments:
        raise UnsandboxedPathError(f"Path traversal not allowed: {file_path}")
    if len(segments[0]) == 2 and segments[0][1] == ":":
        raise UnsandboxedPathError(f"Drive-qualified paths not allowed: {file_path}")
    if segments[-1] in {"", "."}:
        raise UnsandboxedPathError(f"Path does not name a file: {file_path}")
    return PurePosixPath(*[segment for segment in segments if segment not in {"", "."}])


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=_TEMP_SUFFIX,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        # Clean up the temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class WorkspaceMaterializer:
    """Owns on-disk file content for accepted steps."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def workspace_path(self, task_id: str) -> Path:
        return self.root / task_id

    def ensure_workspace(self, task_id: str) -> Path:
        path = self.workspace_path(task_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def resolve(self, task_id: str, file_path: str) -> Path:
        """Map a plan-declared relative path onto the task workspace.

        Raises:
            UnsandboxedPathError: If the path is not workspace-relative or
                resolves (through symlinks) outside the workspace.
        """
        relative = ensure_sandboxed_path(file_path)
        base = self.workspace_path(task_id).resolve()
        target = (base / relative).resolve()
        if target != base and base not in target.parents:
            raise UnsandboxedPathError(f"Path escapes workspace: {file_path}")
        if target == base:
            raise UnsandboxedPathError(f"Path does not name a file: {file_path}")
        return target

    def write_file(self, task_id: str, file_path: str, content: str) -> Path:
        target = self.resolve(task_id, file_path)
        atomic_write_text(target, content)
        logger.debug("Materialized %s for task %s (%d chars)", file_path, task_id, len(content))
        return target

    def read_file(self, task_id: str, file_path: str) -> str:
        return self.resolve(task_id, file_path).read_text(encoding="utf-8")

    def list_files(self, task_id: str) -> list[str]:
        """Return sorted workspace-relative POSIX paths of every materialized file."""
        base = self.workspace_path(task_id)
        if not base.is_dir():
            return []
        files: list[str] = []
        for path in base.rglob("*"):
            if not path.is_file():
                continue
            if path.name.startswith(".") and path.name.endswith(_TEMP_SUFFIX):
                continue
            files.append(path.relative_to(base).as_posix())
        return sorted(files)
