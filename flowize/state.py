"""Persistence of the workflow state (tasks and slot bindings).

The core never touches storage directly; it hands a ``WorkflowState`` to a
``StateStore`` after every committed or rolled-back transition.

``YamlStateStore`` uses file locking to prevent races when several CLI
processes act on the same session at once (e.g., two agents finishing
together).
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional, Protocol

import yaml
from filelock import FileLock
from pydantic import BaseModel, Field

from flowize.slots import WorktreeSlot
from flowize.tasks import Task

# Lock timeout in seconds - prevents deadlocks if a process crashes while holding lock
_LOCK_TIMEOUT = 5.0


class WorkflowState(BaseModel):
    """Everything that survives between runs."""

    tasks: list[Task] = Field(default_factory=list)
    slots: list[WorktreeSlot] = Field(default_factory=list)
    # Slot count chosen with `slots resize`; overrides config.max_worktrees once set
    slot_count: Optional[int] = None

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def clear_session(self) -> None:
        """Forget all tasks and slot bindings."""
        self.tasks = []
        for slot in self.slots:
            slot.task_id = None


class StateStore(Protocol):
    def load_state(self) -> WorkflowState: ...

    def save_state(self, state: WorkflowState) -> None: ...


class MemoryStateStore:
    """Keeps state in memory; used by tests and embedders."""

    def __init__(self, state: Optional[WorkflowState] = None) -> None:
        self.state = state or WorkflowState()
        self.saves = 0

    def load_state(self) -> WorkflowState:
        return self.state.model_copy(deep=True)

    def save_state(self, state: WorkflowState) -> None:
        self.state = state.model_copy(deep=True)
        self.saves += 1


class YamlStateStore:
    """Stores state as YAML at ``path`` (usually ``_flowize/state.yaml``)."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @property
    def lock_path(self) -> Path:
        """The lock file is a sibling of the state file."""
        return self.path.parent / f"{self.path.name}.lock"

    @contextmanager
    def lock(self) -> Generator[None, None, None]:
        """Exclusive access to the state file.

        Raises:
            Timeout: If lock cannot be acquired within _LOCK_TIMEOUT seconds
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with FileLock(self.lock_path, timeout=_LOCK_TIMEOUT):
            yield

    def load_state(self) -> WorkflowState:
        with self.lock():
            if not self.path.exists():
                return WorkflowState()
            with open(self.path) as f:
                data = yaml.safe_load(f) or {}
        return WorkflowState.model_validate(data)

    def save_state(self, state: WorkflowState) -> None:
        data = state.model_dump(mode="json")
        with self.lock():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False)
