from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from pydantic import TypeAdapter

from .canonical import to_canonical_json
from .errors import InvalidStateTransition
from .models import (
    TASK_STATE_TRANSITIONS,
    ApiCallRecord,
    Issue,
    Plan,
    StepRecord,
    TaskAudit,
    TaskRecord,
    TaskSpecification,
    TaskState,
)

logger = logging.getLogger(__name__)

_ISSUES_ADAPTER = TypeAdapter(list[Issue])

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    task_spec TEXT NOT NULL,
    plan TEXT,
    api_call_count INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    start_time TEXT NOT NULL,
    end_time TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    step_number INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    generated_content TEXT,
    critic_decision TEXT,
    critic_issues TEXT,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);

CREATE TABLE IF NOT EXISTS api_calls (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL,
    producer TEXT NOT NULL,
    prompt_tokens INTEGER NOT NULL,
    completion_tokens INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);

CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);
CREATE INDEX IF NOT EXISTS idx_steps_task ON steps(task_id);
CREATE INDEX IF NOT EXISTS idx_api_calls_task ON api_calls(task_id);
"""


def _now() -> datetime:
    return datetime.now(UTC)


class SwarmStateStore:
    """SQLite store of tasks, step attempts and API calls.

    Each public mutation commits on its own, so the durable mirror is
    current before the orchestrator moves on to the next step.  The store
    is the only state that survives a process restart.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = path
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def create_task(self, task_id: str, spec: TaskSpecification, *, start_time: datetime | None = None) -> TaskRecord:
        started = start_time if start_time is not None else _now()
        with self._conn:
            self._conn.execute(
                "INSERT INTO tasks (task_id, state, task_spec, start_time) VALUES (?, ?, ?, ?)",
                (task_id, TaskState.PLANNING.value, to_canonical_json(spec), started.isoformat()),
            )
        return self.get_task(task_id)

    def update_task_state(self, task_id: str, state: TaskState, error_message: str | None = None) -> None:
        """Move a task to ``state``, stamping ``end_time`` for terminal states.

        Raises:
            KeyError: If the task does not exist.
            InvalidStateTransition: If the move is not allowed from the stored state.
        """
        current = self.get_task(task_id).state
        if state not in TASK_STATE_TRANSITIONS[current]:
            raise InvalidStateTransition(f"Task {task_id} cannot move from {current.value} to {state.value}")
        end_time = _now().isoformat() if state.is_terminal else None
        with self._conn:
            self._conn.execute(
                "UPDATE tasks SET state = ?, end_time = ?, error_message = ? WHERE task_id = ?",
                (state.value, end_time, error_message, task_id),
            )

    def update_task_plan(self, task_id: str, plan: Plan) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE tasks SET plan = ? WHERE task_id = ?",
                (to_canonical_json(plan.to_payload()), task_id),
            )

    def update_task_counters(self, task_id: str, api_call_count: int, total_tokens: int) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE tasks SET api_call_count = ?, total_tokens = ? WHERE task_id = ?",
                (api_call_count, total_tokens, task_id),
            )

    def fail_interrupted_tasks(self, message: str) -> list[str]:
        """Mark every non-terminal task as FAILED and return the affected ids.

        Only call this when no live process owns the store; a task in a
        non-terminal state then belongs to a process that died mid-run.
        """
        rows = self._conn.execute(
            "SELECT task_id FROM tasks WHERE state NOT IN (?, ?)",
            (TaskState.COMPLETED.value, TaskState.FAILED.value),
        ).fetchall()
        task_ids = [row["task_id"] for row in rows]
        for task_id in task_ids:
            self.update_task_state(task_id, TaskState.FAILED, message)
            logger.warning("Marked interrupted task %s as FAILED", task_id)
        return task_ids

    # ------------------------------------------------------------------
    # Append-only audit rows
    # ------------------------------------------------------------------

    def record_step(self, record: StepRecord) -> None:
        issues = (
            to_canonical_json(record.critic_issues)
            if record.critic_issues is not None
            else None
        )
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO steps (
                    task_id, step_number, file_path, attempt, generated_content,
                    critic_decision, critic_issues, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.task_id,
                    record.step_number,
                    record.file_path,
                    record.attempt,
                    record.generated_content,
                    record.critic_decision.value if record.critic_decision is not None else None,
                    issues,
                    record.timestamp.isoformat(),
                ),
            )

    def record_api_call(self, record: ApiCallRecord) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO api_calls (task_id, producer, prompt_tokens, completion_tokens, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.task_id,
                    record.producer,
                    record.prompt_tokens,
                    record.completion_tokens,
                    record.timestamp.isoformat(),
                ),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskRecord:
        row = self._conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            raise KeyError(f"task not found: {task_id}")
        return TaskRecord.model_validate(dict(row))

    def list_tasks(self, state: TaskState | None = None) -> list[TaskRecord]:
        if state is None:
            rows = self._conn.execute("SELECT * FROM tasks ORDER BY start_time").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM tasks WHERE state = ? ORDER BY start_time",
                (state.value,),
            ).fetchall()
        return [TaskRecord.model_validate(dict(row)) for row in rows]

    def list_step_attempts(self, task_id: str, step_number: int | None = None) -> list[StepRecord]:
        query = "SELECT * FROM steps WHERE task_id = ?"
        params: tuple[object, ...] = (task_id,)
        if step_number is not None:
            query += " AND step_number = ?"
            params = (task_id, step_number)
        rows = self._conn.execute(query + " ORDER BY id", params).fetchall()
        records: list[StepRecord] = []
        for row in rows:
            payload = dict(row)
            payload.pop("id")
            raw_issues = payload.pop("critic_issues")
            payload["critic_issues"] = (
                _ISSUES_ADAPTER.validate_python(json.loads(raw_issues)) if raw_issues is not None else None
            )
            records.append(StepRecord.model_validate(payload))
        return records

    def list_api_calls(self, task_id: str) -> list[ApiCallRecord]:
        rows = self._conn.execute(
            "SELECT task_id, producer, prompt_tokens, completion_tokens, timestamp "
            "FROM api_calls WHERE task_id = ? ORDER BY id",
            (task_id,),
        ).fetchall()
        return [ApiCallRecord.model_validate(dict(row)) for row in rows]

    def audit(self, task_id: str) -> TaskAudit:
        """Reconstruct the full audit trail of one task."""
        return TaskAudit(
            task=self.get_task(task_id),
            attempts=self.list_step_attempts(task_id),
            api_calls=self.list_api_calls(task_id),
        )
