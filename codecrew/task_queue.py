"""In-memory task queue with dependency tracking.

The queue is the single writer of task status. Status only moves forward
along ``pending -> in_progress -> completed | failed``; signals that would
move a task backward (or that name an unknown task) are ignored, so late or
duplicate completions from concurrent workers are harmless.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from codecrew.logging import get_logger

log = get_logger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_TERMINAL_STATES = {TaskStatus.COMPLETED, TaskStatus.FAILED}

DEFAULT_ESTIMATED_DURATION_MS = 100


# ---------------------------------------------------------------------------
# Task records
# ---------------------------------------------------------------------------


@dataclass
class TaskSpec:
    """Caller-supplied description of a task, before it is queued."""

    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_duration_ms: int = DEFAULT_ESTIMATED_DURATION_MS
    dependencies: list[str] = field(default_factory=list)
    id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskSpec":
        return cls(
            description=str(data.get("description", "")),
            priority=TaskPriority(str(data.get("priority") or TaskPriority.MEDIUM.value)),
            estimated_duration_ms=int(data.get("estimated_duration_ms", DEFAULT_ESTIMATED_DURATION_MS)),
            dependencies=[str(dep) for dep in data.get("dependencies") or []],
            id=str(data["id"]) if data.get("id") else None,
        )


@dataclass
class Task:
    """A queued unit of work."""

    id: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    estimated_duration_ms: int = DEFAULT_ESTIMATED_DURATION_MS
    dependencies: set[str] = field(default_factory=set)
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: str | None = None
    started_at: float = 0.0
    completed_at: float = 0.0

    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority.value,
            "estimated_duration_ms": self.estimated_duration_ms,
            "dependencies": sorted(self.dependencies),
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            description=str(data.get("description", "")),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            estimated_duration_ms=int(data.get("estimated_duration_ms", DEFAULT_ESTIMATED_DURATION_MS)),
            dependencies=set(data.get("dependencies") or []),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            result=data.get("result"),
            error=data.get("error"),
        )


# ---------------------------------------------------------------------------
# TaskQueue
# ---------------------------------------------------------------------------


class TaskQueue:
    """Task records plus dependency edges; answers which tasks can run now."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}
        self._completion_order: list[str] = []
        self._next_index = 0

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def _next_auto_id(self) -> str:
        while True:
            candidate = f"task-{self._next_index}"
            self._next_index += 1
            if candidate not in self._tasks:
                return candidate

    def add_task(self, spec: TaskSpec, id_override: str | None = None) -> str:
        """Queue a task and return its id.

        The id is ``id_override``, else ``spec.id``, else ``task-<n>`` where
        ``n`` counts insertions into this queue.
        """
        task_id = id_override or spec.id
        if not task_id:
            task_id = self._next_auto_id()
        else:
            self._next_index += 1

        self._tasks[task_id] = Task(
            id=task_id,
            description=spec.description,
            priority=spec.priority,
            estimated_duration_ms=spec.estimated_duration_ms,
            dependencies=set(spec.dependencies),
        )
        log.debug("Task queued", task_id=task_id, dependencies=sorted(spec.dependencies))
        return task_id

    def restore_task(self, task: Task, restart_in_progress: bool = True) -> None:
        """Re-insert a task record from a checkpoint.

        A task that was in progress when the checkpoint was taken is
        restored as a fresh pending record unless ``restart_in_progress``
        is False.
        """
        if restart_in_progress and task.status == TaskStatus.IN_PROGRESS:
            task = replace(task, status=TaskStatus.PENDING, started_at=0.0)
        self._tasks[task.id] = task
        self._next_index += 1
        if task.status == TaskStatus.COMPLETED and task.id not in self._completion_order:
            self._completion_order.append(task.id)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def start_task(self, task_id: str) -> bool:
        """Move a pending task to in-progress. Returns True if it moved."""
        task = self._tasks.get(task_id)
        if task is None or task.status != TaskStatus.PENDING:
            return False
        task.status = TaskStatus.IN_PROGRESS
        task.started_at = time.monotonic()
        return True

    def complete_task(self, task_id: str, result: Any = None) -> None:
        """Mark a task completed and append it to the completion order."""
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal():
            return
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.error = None
        task.completed_at = time.monotonic()
        self._completion_order.append(task_id)

    def fail_task(self, task_id: str, error: str = "") -> None:
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal():
            return
        task.status = TaskStatus.FAILED
        task.error = error or "failed"
        task.completed_at = time.monotonic()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pending_tasks(self) -> list[Task]:
        return [task for task in self._tasks.values() if task.status == TaskStatus.PENDING]

    def _dependency_completed(self, dep_id: str) -> bool:
        dep = self._tasks.get(dep_id)
        return dep is not None and dep.status == TaskStatus.COMPLETED

    def get_ready_tasks(self) -> list[Task]:
        """Pending tasks whose every dependency exists and is completed."""
        return [
            task
            for task in self.get_pending_tasks()
            if all(self._dependency_completed(dep_id) for dep_id in task.dependencies)
        ]

    def get_blocked_tasks(self) -> list[Task]:
        """Pending tasks that can never become ready.

        A task is blocked when a dependency is missing, failed, or itself
        blocked.
        """
        blocked: set[str] = set()
        changed = True
        while changed:
            changed = False
            for task in self.get_pending_tasks():
                if task.id in blocked:
                    continue
                for dep_id in task.dependencies:
                    dep = self._tasks.get(dep_id)
                    if dep is None or dep.status == TaskStatus.FAILED or dep_id in blocked:
                        blocked.add(task.id)
                        changed = True
                        break
        return [task for task in self.get_pending_tasks() if task.id in blocked]

    def get_completion_order(self) -> list[str]:
        return list(self._completion_order)

    @property
    def is_complete(self) -> bool:
        """All tasks are in a terminal state."""
        return all(task.is_terminal() for task in self._tasks.values())

    def get_summary(self) -> dict[str, int]:
        """Compact status summary."""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        counts["total"] = len(self._tasks)
        return counts
