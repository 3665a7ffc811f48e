"""
Task Store — deferred units of agent work.

A task is a piece of work the assistant could not finish inside one turn:
"email Sam about Tuesday", "book a meeting once Sarah replies". Tasks are
created by the conversation loop or by the instruction evaluator, mutated only
through tool calls, and resumed by the orchestration driver on every pass.

The state machine is deliberately soft. There are four states, but no table
of legal transitions: the model decides when a task is done, waiting or
failed, and records its reasoning in the task's ``context`` document. The
store only persists. Two optional guards exist for callers that want more:

  - ``strict_transitions`` rejects moving a terminal task back to an open
    state unless the caller passes ``reopen=True``.
  - ``expected_version`` turns an update into a compare-and-swap on the
    row's version counter, so overlapping writers detect each other instead
    of silently losing an update.

Context updates are a recursive merge: new keys overwrite matching keys,
nested objects merge key-by-key, and nothing else is dropped.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from concierge.events import EventBus, TaskCreatedEvent, TaskUpdatedEvent
from concierge.store import DataStore

logger = structlog.get_logger(__name__)


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskError(Exception):
    """Base class for task store failures."""


class TaskNotFoundError(TaskError):
    """No task with this id exists for this owner."""


class StaleTaskError(TaskError):
    """A compare-and-swap update lost the race against another writer."""

    def __init__(self, task_id: str, expected: int, actual: int):
        super().__init__(
            f"Task {task_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class InvalidTransitionError(TaskError):
    """A strict-mode store refused to reopen a terminal task."""


class InvalidContextError(TaskError):
    """A context value is not representable as JSON."""


@dataclass
class Task:
    """A single deferred unit of work owned by one tenant."""

    owner: str
    description: str
    task_id: str = field(default_factory=lambda: f"task-{uuid.uuid4().hex[:12]}")
    status: TaskStatus = TaskStatus.IN_PROGRESS
    context: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "owner": self.owner,
            "description": self.description,
            "status": self.status.value,
            "context": self.context,
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: Any) -> Task:
        return cls(
            task_id=row["task_id"],
            owner=row["owner"],
            description=row["description"],
            status=TaskStatus(row["status"]),
            context=json.loads(row["context"] or "{}"),
            version=int(row["version"]),
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


def _validate_context_value(value: Any, path: str = "context") -> None:
    """Reject anything that is not a JSON scalar, list or string-keyed object."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _validate_context_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidContextError(f"{path} has non-string key {key!r}")
            _validate_context_value(item, f"{path}.{key}")
        return
    raise InvalidContextError(f"{path} holds unsupported type {type(value).__name__}")


def merge_context(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """
    Recursively merge ``update`` over ``base`` and return a new document.

    Keys in ``update`` overwrite keys in ``base``; when both sides hold an
    object the merge descends into it. Keys only present in ``base`` survive.
    Neither input is mutated.
    """
    merged = dict(base)
    for key, value in update.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = merge_context(existing, value)
        else:
            merged[key] = value
    return merged


class TaskStore:
    """Owner-scoped persistence for tasks."""

    def __init__(
        self,
        store: DataStore,
        strict_transitions: bool = False,
        event_bus: Optional[EventBus] = None,
    ):
        self._store = store
        self._strict_transitions = strict_transitions
        self._event_bus = event_bus

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, owner: str, task_id: str) -> Optional[Task]:
        row = self._store.fetchone(
            "SELECT * FROM tasks WHERE owner = ? AND task_id = ?",
            (owner, task_id),
        )
        return Task.from_row(row) if row else None

    def list_by_status(self, owner: str, status: TaskStatus | str) -> list[Task]:
        status = TaskStatus(status)
        rows = self._store.fetchall(
            "SELECT * FROM tasks WHERE owner = ? AND status = ? ORDER BY created_at, task_id",
            (owner, status.value),
        )
        return [Task.from_row(r) for r in rows]

    def list_tasks(self, owner: str) -> list[Task]:
        rows = self._store.fetchall(
            "SELECT * FROM tasks WHERE owner = ? ORDER BY created_at, task_id",
            (owner,),
        )
        return [Task.from_row(r) for r in rows]

    def count_by_status(self, owner: str) -> dict[str, int]:
        rows = self._store.fetchall(
            "SELECT status, COUNT(*) AS n FROM tasks WHERE owner = ? GROUP BY status",
            (owner,),
        )
        counts = {status.value: 0 for status in TaskStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(
        self,
        owner: str,
        description: str,
        context: Optional[dict[str, Any]] = None,
        status: TaskStatus | str = TaskStatus.IN_PROGRESS,
    ) -> Task:
        description = description.strip()
        if not description:
            raise ValueError("Task description must not be empty")
        context = dict(context or {})
        _validate_context_value(context)

        task = Task(owner=owner, description=description, status=TaskStatus(status), context=context)
        with self._store.transaction() as conn:
            conn.execute(
                """INSERT INTO tasks
                   (task_id, owner, description, status, context, version, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    task.task_id,
                    task.owner,
                    task.description,
                    task.status.value,
                    json.dumps(task.context),
                    task.version,
                    task.created_at,
                    task.updated_at,
                ),
            )
        logger.info("task_store.created", owner=owner, task_id=task.task_id, status=task.status.value)
        if self._event_bus is not None:
            self._event_bus.emit(
                TaskCreatedEvent(owner=owner, task_id=task.task_id, description=task.description)
            )
        return task

    def update_status(
        self,
        owner: str,
        task_id: str,
        status: TaskStatus | str,
        *,
        expected_version: Optional[int] = None,
        reopen: bool = False,
        context_updates: Optional[dict[str, Any]] = None,
    ) -> Task:
        """
        Move a task to ``status``. ``context_updates``, when given, are merged
        into the context in the same write, so the change costs one version.
        """
        new_status = TaskStatus(status)
        if context_updates is not None:
            _validate_context_value(context_updates)
        with self._store.transaction() as conn:
            task = self._load_for_update(conn, owner, task_id, expected_version)
            if (
                self._strict_transitions
                and task.status.is_terminal
                and not new_status.is_terminal
                and not reopen
            ):
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value}; pass reopen=True to move it "
                    f"back to {new_status.value}"
                )
            previous = task.status
            task.status = new_status
            if context_updates:
                task.context = merge_context(task.context, context_updates)
            self._write(conn, task)

        logger.info(
            "task_store.status_updated",
            owner=owner,
            task_id=task_id,
            previous=previous.value,
            status=new_status.value,
            version=task.version,
        )
        self._notify_updated(task, ["status", *sorted(context_updates or {})])
        return task

    def update_context(
        self,
        owner: str,
        task_id: str,
        updates: dict[str, Any],
        *,
        expected_version: Optional[int] = None,
    ) -> Task:
        if not isinstance(updates, dict):
            raise InvalidContextError("context updates must be an object")
        _validate_context_value(updates)
        with self._store.transaction() as conn:
            task = self._load_for_update(conn, owner, task_id, expected_version)
            task.context = merge_context(task.context, updates)
            self._write(conn, task)

        logger.info(
            "task_store.context_updated",
            owner=owner,
            task_id=task_id,
            keys=sorted(updates.keys()),
            version=task.version,
        )
        self._notify_updated(task, sorted(updates.keys()))
        return task

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _notify_updated(self, task: Task, changed_keys: list[str]) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            TaskUpdatedEvent(
                owner=task.owner,
                task_id=task.task_id,
                status=task.status.value,
                version=task.version,
                changed_keys=changed_keys,
            )
        )

    @staticmethod
    def _load_for_update(
        conn: Any, owner: str, task_id: str, expected_version: Optional[int]
    ) -> Task:
        row = conn.execute(
            "SELECT * FROM tasks WHERE owner = ? AND task_id = ?",
            (owner, task_id),
        ).fetchone()
        if row is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        task = Task.from_row(row)
        if expected_version is not None and task.version != expected_version:
            raise StaleTaskError(task_id, expected_version, task.version)
        return task

    @staticmethod
    def _write(conn: Any, task: Task) -> None:
        old_version = task.version
        task.version += 1
        task.updated_at = time.time()
        cursor = conn.execute(
            """UPDATE tasks SET status = ?, context = ?, version = ?, updated_at = ?
               WHERE owner = ? AND task_id = ? AND version = ?""",
            (
                task.status.value,
                json.dumps(task.context),
                task.version,
                task.updated_at,
                task.owner,
                task.task_id,
                old_version,
            ),
        )
        if cursor.rowcount != 1:
            raise StaleTaskError(task.task_id, old_version, -1)
