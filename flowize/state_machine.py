"""State machine for the Flowize task lifecycle.

This module provides a formal state machine implementation using the transitions library
to validate task status transitions. Each transition that wraps an external call is
driven by the workflow in two phases (reserve, then commit or roll back), and the
machine only ever sees the outcome.

Happy path:
    FORMATTED -> ISSUE_CREATED -> WORKTREE_INITIALIZING -> WORKTREE_ACTIVE
    -> IMPLEMENTED -> PUSHED -> PR_CREATED -> PR_MERGED
"""

from __future__ import annotations

import logging
from typing import Optional

from transitions import Machine, MachineError

from flowize.errors import FlowizeError
from flowize.tasks import LOCAL_WORKTREE_STATUSES, Task, TaskStatus

logger = logging.getLogger(__name__)

S = TaskStatus


class InvalidTransitionError(FlowizeError):
    """Raised when an invalid status transition is attempted."""

    def __init__(self, source: str, dest: str, message: Optional[str] = None) -> None:
        self.source = source
        self.dest = dest
        if message:
            super().__init__(message)
        else:
            super().__init__(f"Invalid transition from '{source}' to '{dest}'")


class TaskStateMachine:
    """Validates and applies status transitions for a single task.

    The machine is bound to a Task and writes the new status back to it after
    every successful transition.

    Example usage:
        >>> sm = TaskStateMachine(task)
        >>> sm.fire("promote")
        >>> task.status
        <TaskStatus.ISSUE_CREATED: 'ISSUE_CREATED'>
    """

    STATES = [s.value for s in TaskStatus]

    # Transitions are tried in order; the first whose conditions pass wins.
    TRANSITIONS = [
        {"trigger": "promote", "source": S.FORMATTED.value, "dest": S.ISSUE_CREATED.value},
        # Optimistic slot reservation, before the worktree command is dispatched
        {"trigger": "reserve_worktree", "source": S.ISSUE_CREATED.value, "dest": S.WORKTREE_INITIALIZING.value},
        # Conflict workspace reopened for an open PR
        {"trigger": "reserve_worktree", "source": S.PR_CREATED.value, "dest": S.WORKTREE_INITIALIZING.value,
         "conditions": "_has_branch"},
        {"trigger": "worktree_ready", "source": S.WORKTREE_INITIALIZING.value, "dest": S.WORKTREE_ACTIVE.value},
        {"trigger": "worktree_failed", "source": S.WORKTREE_INITIALIZING.value, "dest": S.PR_CREATED.value,
         "conditions": "_has_pr"},
        {"trigger": "worktree_failed", "source": S.WORKTREE_INITIALIZING.value, "dest": S.ISSUE_CREATED.value},
        {"trigger": "implemented", "source": S.WORKTREE_ACTIVE.value, "dest": S.IMPLEMENTED.value,
         "conditions": "_has_output"},
        {"trigger": "request_changes", "source": [S.IMPLEMENTED.value, S.WORKTREE_ACTIVE.value, S.PUSHED.value],
         "dest": S.WORKTREE_ACTIVE.value},
        {"trigger": "pushed", "source": [S.IMPLEMENTED.value, S.WORKTREE_ACTIVE.value], "dest": S.PUSHED.value,
         "conditions": "_has_branch"},
        {"trigger": "pr_created", "source": [S.PUSHED.value, S.IMPLEMENTED.value], "dest": S.PR_CREATED.value,
         "conditions": "_has_pr"},
        {"trigger": "merged", "source": S.PR_CREATED.value, "dest": S.PR_MERGED.value},
        # Slot cleanup detaches the task and sends it back to the issue backlog
        {"trigger": "cleanup",
         "source": [S.WORKTREE_INITIALIZING.value, S.WORKTREE_ACTIVE.value, S.IMPLEMENTED.value, S.PUSHED.value],
         "dest": S.ISSUE_CREATED.value},
    ]

    TERMINAL_STATES = frozenset({S.PR_MERGED.value})

    def __init__(self, task: Task) -> None:
        self.task = task
        self.machine = Machine(
            model=self,
            states=self.STATES,
            transitions=self.TRANSITIONS,
            initial=task.status.value,
            auto_transitions=False,  # Only allow explicitly defined transitions
            send_event=False,
            after_state_change="_sync_task_status",
        )

    # Guards

    def _has_branch(self) -> bool:
        return bool(self.task.branch_name)

    def _has_pr(self) -> bool:
        return self.task.pr_number is not None

    def _has_output(self) -> bool:
        return bool(self.task.implementation_details and self.task.implementation_details.strip())

    def _sync_task_status(self) -> None:
        self.task.status = TaskStatus(self.state)

    @property
    def current_state(self) -> str:
        """Get the current state."""
        return str(getattr(self, "state"))

    def fire(self, trigger: str) -> TaskStatus:
        """Fire ``trigger`` and return the task's new status.

        Raises:
            InvalidTransitionError: If the trigger is not valid from the current
                state, or its guard rejected it.
        """
        source = self.current_state
        try:
            moved = self.trigger(trigger)
        except (MachineError, AttributeError) as e:
            raise InvalidTransitionError(
                source, trigger, f"Cannot '{trigger}' task {self.task.id} from '{source}': {e}"
            ) from e

        if not moved:
            raise InvalidTransitionError(
                source, trigger, f"Guard rejected '{trigger}' for task {self.task.id} in '{source}'"
            )

        logger.debug("Task %s: %s -> %s via %s", self.task.id, source, self.current_state, trigger)
        return self.task.status

    def can_transition_to(self, target_state: str) -> bool:
        """Check if any transition leads from the current state to ``target_state``.

        Guards are not evaluated.
        """
        if target_state not in self.STATES:
            return False

        for t in self.TRANSITIONS:
            sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
            if self.current_state in sources and t["dest"] == target_state:
                return True
        return False

    def get_valid_triggers(self) -> list[str]:
        """Get all triggers defined from the current state."""
        return sorted(self.machine.get_triggers(self.current_state))

    def is_terminal(self) -> bool:
        return self.current_state in self.TERMINAL_STATES


def transition(task: Task, trigger: str) -> TaskStatus:
    """Apply ``trigger`` to ``task`` without keeping a machine around."""
    return TaskStateMachine(task).fire(trigger)


def resolve_external_status(task: Task, external: TaskStatus) -> TaskStatus:
    """Decide which status a task should have given an external PR observation.

    Local progress always wins over a stale remote snapshot:
    - a merged task never goes back to PR_CREATED
    - a task in a local worktree keeps its status, even when the PR is merged
    - an open-PR observation never overwrites a pending merge conflict
    """
    if task.status == S.PR_MERGED and external != S.PR_MERGED:
        return task.status

    if task.status in LOCAL_WORKTREE_STATUSES:
        return task.status

    if external == S.PR_CREATED and task.merge_conflict:
        return task.status

    return external


def get_all_states() -> list[str]:
    return list(TaskStateMachine.STATES)


def get_all_transitions() -> list[dict]:
    return list(TaskStateMachine.TRANSITIONS)


def generate_diagram(title: str = "Flowize Task Lifecycle") -> str:
    """Generate a Graphviz DOT source for the lifecycle.

    Returns:
        The Graphviz DOT source as a string
    """
    lines = [
        "digraph {",
        f'    label="{title}";',
        "    labelloc=t;",
        "    rankdir=TB;",
        "    node [shape=box, style=rounded];",
        "",
    ]

    for state in TaskStateMachine.STATES:
        if state in TaskStateMachine.TERMINAL_STATES:
            lines.append(f'    "{state}" [shape=doublecircle];')
        else:
            lines.append(f'    "{state}";')

    lines.append("")
    seen: set[tuple[str, str, str]] = set()
    for t in TaskStateMachine.TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            edge = (source, t["dest"], t["trigger"])
            if edge in seen:
                continue
            seen.add(edge)
            lines.append(f'    "{source}" -> "{t["dest"]}" [label="{t["trigger"]}"];')

    lines.append("}")
    return "\n".join(lines)
